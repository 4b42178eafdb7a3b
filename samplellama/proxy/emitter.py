"""Ollama response bodies for chat and generate.

The upstream sampling call returns a complete result, so "streaming" is
two NDJSON frames: the full text with ``done: false``, then an empty
terminal frame carrying ``done_reason`` and the counters.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from datetime import datetime, timezone

from fastapi.responses import JSONResponse, StreamingResponse

from ..types import TranslatedResult

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def format_timestamp(ts: datetime) -> str:
    """RFC 3339 in UTC with a ``Z`` suffix, as Ollama emits it."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _terminal_fields(result: TranslatedResult) -> dict:
    fields: dict = {
        "done": True,
        "done_reason": result.done_reason,
        "eval_count": result.eval_count,
    }
    # Sampling is a single round trip, so eval time is the whole call.
    if result.total_duration:
        fields["total_duration"] = result.total_duration
        fields["eval_duration"] = result.total_duration
    return fields


def _frames(result: TranslatedResult, stream: bool, key: str, payload) -> list[dict]:
    base = {"model": result.model, "created_at": format_timestamp(result.created_at)}
    if not stream:
        return [{**base, key: payload(result.text), **_terminal_fields(result)}]
    return [
        {**base, key: payload(result.text), "done": False},
        {**base, key: payload(""), **_terminal_fields(result)},
    ]


def chat_frames(result: TranslatedResult, stream: bool) -> list[dict]:
    """Response objects for ``/api/chat`` (one, or two when streaming)."""
    return _frames(
        result, stream, "message",
        lambda text: {"role": "assistant", "content": text},
    )


def generate_frames(result: TranslatedResult, stream: bool) -> list[dict]:
    """Response objects for ``/api/generate`` (one, or two when streaming)."""
    return _frames(result, stream, "response", lambda text: text)


def ndjson_response(frames: list[dict]) -> StreamingResponse:
    """Stream *frames* as newline-delimited JSON.

    Each frame is its own body chunk; the ASGI server writes and flushes
    every chunk before pulling the next one.
    """
    async def frame_generator() -> AsyncIterator[bytes]:
        for frame in frames:
            yield (json.dumps(frame) + "\n").encode()

    return StreamingResponse(frame_generator(), media_type=NDJSON_MEDIA_TYPE)


def json_response(frame: dict) -> JSONResponse:
    return JSONResponse(content=frame)
