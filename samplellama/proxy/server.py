"""Ollama-compatible HTTP API backed by MCP sampling.

Each POST is decoded, translated into a sampling request, sent to the
registry's current endpoint, and the result is emitted as Ollama JSON or
two-frame NDJSON.

Usage:
    samplellama serve --port 11434 --mcp-transport stdio
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .. import VERSION
from ..core.registry import EndpointRegistry
from ..core.translator import (
    PRELOAD_DONE_REASON,
    chat_to_sampling,
    generate_to_sampling,
    is_preload,
    parse_chat_request,
    parse_generate_request,
    to_done_reason,
)
from ..types import (
    BridgeConfig,
    BridgeError,
    EndpointUnavailableError,
    RequestDecodeError,
    SamplingError,
    SamplingRequest,
    SamplingResult,
    TranslatedResult,
)
from .emitter import (
    chat_frames,
    format_timestamp,
    generate_frames,
    json_response,
    ndjson_response,
)

logger = logging.getLogger(__name__)

HEALTH_TEXT = "Ollama is running"

# How often a waiting handler checks whether its client went away.
_DISCONNECT_POLL_SECONDS = 0.25
# nginx convention; the client is gone, so nobody reads it.
_CLIENT_CLOSED_REQUEST = 499


class _ClientDisconnected(Exception):
    """The inbound request was abandoned while sampling was in flight."""


# ---------------------------------------------------------------------------
# Pure helpers (unit-testable, no side effects)
# ---------------------------------------------------------------------------

def _error_response(exc: BridgeError) -> JSONResponse:
    return JSONResponse(content={"error": exc.message}, status_code=exc.status_code)


def _reject_constant(name: str):
    raise ValueError(f"invalid number literal {name!r}")


def _decode_body(body_bytes: bytes):
    # ValueError covers JSONDecodeError, UnicodeDecodeError and NaN/Infinity.
    try:
        return json.loads(body_bytes, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        raise RequestDecodeError(f"invalid JSON: {e}") from e


def _model_info(name: str, modified_at: str) -> dict:
    return {
        "name": name,
        "model": name,
        "modified_at": modified_at,
        "size": 0,
        "digest": "",
        "details": {
            "format": "",
            "family": "",
            "parameter_size": "",
            "quantization_level": "",
        },
    }


def _preload_result(model: str) -> TranslatedResult:
    return TranslatedResult(text="", done_reason=PRELOAD_DONE_REASON, model=model)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def _sample_until_disconnect(
    request: Request,
    registry: EndpointRegistry,
    sampling: SamplingRequest,
) -> tuple[SamplingResult, int]:
    """Run one sampling call on the current endpoint.

    Returns ``(result, elapsed_ns)``.  The call is cancelled as soon as the
    HTTP client disconnects; it is never retried.
    """
    endpoint = registry.current()
    if endpoint is None:
        raise EndpointUnavailableError()

    started = time.monotonic_ns()
    task = asyncio.ensure_future(endpoint.sample(sampling))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                break
            if await request.is_disconnected():
                logger.info(
                    "Client disconnected, cancelling sampling on %s",
                    endpoint.endpoint_id[:12],
                )
                raise _ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()

    try:
        result = task.result()
    except SamplingError:
        raise
    except Exception as e:
        raise SamplingError(f"sampling failed: {e}") from e
    return result, time.monotonic_ns() - started


async def _translate_and_sample(
    request: Request,
    registry: EndpointRegistry,
    sampling: SamplingRequest,
    model: str,
) -> TranslatedResult:
    if is_preload(sampling):
        logger.debug("Preload request for %s answered locally", model)
        return _preload_result(model)

    sampled, elapsed_ns = await _sample_until_disconnect(request, registry, sampling)
    return TranslatedResult(
        text=sampled.text,
        done_reason=to_done_reason(sampled.stop_reason),
        model=model,
        created_at=datetime.now(timezone.utc),
        total_duration=elapsed_ns,
    )


def _emit(frames: list[dict]) -> Response:
    if len(frames) == 1:
        return json_response(frames[0])
    return ndjson_response(frames)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(registry: EndpointRegistry, config: BridgeConfig | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        registry: Endpoint registry shared with the MCP server side.
        config: Bridge configuration; defaults apply when omitted.
    """
    config = config or BridgeConfig()
    app = FastAPI(title="samplellama")
    app.state.registry = registry

    @app.api_route("/", methods=["GET", "HEAD"])
    async def health() -> PlainTextResponse:
        return PlainTextResponse(HEALTH_TEXT)

    @app.get("/api/version")
    async def version() -> dict:
        return {"version": VERSION}

    @app.get("/api/tags")
    async def tags() -> dict:
        modified_at = format_timestamp(datetime.now(timezone.utc))
        return {"models": [_model_info(m, modified_at) for m in config.models]}

    @app.post("/api/chat")
    async def chat(request: Request) -> Response:
        try:
            req = parse_chat_request(_decode_body(await request.body()))
            sampling = chat_to_sampling(req, config.default_max_tokens)
            result = await _translate_and_sample(
                request, registry, sampling, req.model or config.default_model,
            )
        except _ClientDisconnected:
            return Response(status_code=_CLIENT_CLOSED_REQUEST)
        except BridgeError as e:
            _log_failure("/api/chat", e)
            return _error_response(e)

        stream = req.stream is None or req.stream
        if result.done_reason == PRELOAD_DONE_REASON:
            stream = False
        return _emit(chat_frames(result, stream))

    @app.post("/api/generate")
    async def generate(request: Request) -> Response:
        try:
            req = parse_generate_request(_decode_body(await request.body()))
            sampling = generate_to_sampling(req, config.default_max_tokens)
            result = await _translate_and_sample(
                request, registry, sampling, req.model or config.default_model,
            )
        except _ClientDisconnected:
            return Response(status_code=_CLIENT_CLOSED_REQUEST)
        except BridgeError as e:
            _log_failure("/api/generate", e)
            return _error_response(e)

        stream = req.stream is None or req.stream
        if result.done_reason == PRELOAD_DONE_REASON:
            stream = False
        return _emit(generate_frames(result, stream))

    return app


def _log_failure(path: str, exc: BridgeError) -> None:
    if exc.status_code >= 500:
        logger.warning("%s failed (%d): %s", path, exc.status_code, exc.message)
    else:
        logger.info("%s rejected (%d): %s", path, exc.status_code, exc.message)
