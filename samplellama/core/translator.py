"""Translation between Ollama request/response bodies and sampling calls.

Pure functions, no I/O.  Inbound bodies are decoded into dataclasses,
then mapped onto a :class:`SamplingRequest`; sampling results are mapped
back onto Ollama's ``done_reason`` vocabulary.

Unknown roles, unknown stop reasons and non-text content are not errors:
they fall back to ``user``, ``stop`` and ``""`` respectively.
"""

from __future__ import annotations

from typing import Any

from mcp.types import TextContent

from ..types import (
    ChatMessage,
    ChatRequest,
    GenerateRequest,
    GenerationOptions,
    RequestDecodeError,
    SamplingRequest,
)

_STOP_REASONS = {
    "endTurn": "stop",
    "maxTokens": "length",
}
DEFAULT_DONE_REASON = "stop"
PRELOAD_DONE_REASON = "load"


# ---------------------------------------------------------------------------
# Body decoding
# ---------------------------------------------------------------------------

def _invalid(detail: str) -> RequestDecodeError:
    return RequestDecodeError(f"invalid JSON: {detail}")


def _opt_str(body: dict, key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise _invalid(f"field {key!r} must be a string, got {type(value).__name__}")
    return value


def _opt_bool(body: dict, key: str) -> bool | None:
    value = body.get(key)
    if value is not None and not isinstance(value, bool):
        raise _invalid(f"field {key!r} must be a boolean, got {type(value).__name__}")
    return value


def _parse_options(raw: Any) -> GenerationOptions | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise _invalid(f"field 'options' must be an object, got {type(raw).__name__}")

    num_predict = raw.get("num_predict")
    if num_predict is None:
        num_predict = 0
    elif isinstance(num_predict, bool) or not isinstance(num_predict, int):
        raise _invalid("field 'options.num_predict' must be an integer")

    temperature = raw.get("temperature")
    if temperature is not None:
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise _invalid("field 'options.temperature' must be a number")
        temperature = float(temperature)

    return GenerationOptions(num_predict=num_predict, temperature=temperature)


def _parse_message(raw: Any, index: int) -> ChatMessage:
    if not isinstance(raw, dict):
        raise _invalid(f"messages[{index}] must be an object")
    try:
        return ChatMessage(role=_opt_str(raw, "role"), content=_opt_str(raw, "content"))
    except RequestDecodeError as e:
        raise _invalid(f"messages[{index}]: {e.message.removeprefix('invalid JSON: ')}") from e


def _require_object(body: Any) -> dict:
    if not isinstance(body, dict):
        raise _invalid(f"request body must be an object, got {type(body).__name__}")
    return body


def parse_chat_request(body: Any) -> ChatRequest:
    """Decode an ``/api/chat`` body. Raises RequestDecodeError on type errors."""
    body = _require_object(body)
    raw_messages = body.get("messages")
    if raw_messages is None:
        raw_messages = []
    if not isinstance(raw_messages, list):
        raise _invalid("field 'messages' must be an array")

    return ChatRequest(
        model=_opt_str(body, "model"),
        messages=[_parse_message(m, i) for i, m in enumerate(raw_messages)],
        stream=_opt_bool(body, "stream"),
        options=_parse_options(body.get("options")),
    )


def parse_generate_request(body: Any) -> GenerateRequest:
    """Decode an ``/api/generate`` body. Raises RequestDecodeError on type errors."""
    body = _require_object(body)
    return GenerateRequest(
        model=_opt_str(body, "model"),
        prompt=_opt_str(body, "prompt"),
        system=_opt_str(body, "system"),
        stream=_opt_bool(body, "stream"),
        options=_parse_options(body.get("options")),
    )


# ---------------------------------------------------------------------------
# Ollama → sampling
# ---------------------------------------------------------------------------

def _max_tokens(options: GenerationOptions | None, default_max_tokens: int) -> int:
    if options is not None and options.num_predict > 0:
        return options.num_predict
    return default_max_tokens


def _temperature(options: GenerationOptions | None) -> float | None:
    return options.temperature if options is not None else None


def _model_hints(model: str) -> list[str] | None:
    return [model] if model else None


def _outbound_role(role: str) -> str:
    return "assistant" if role == "assistant" else "user"


def chat_to_sampling(request: ChatRequest, default_max_tokens: int) -> SamplingRequest:
    """Map a multi-turn chat request onto a sampling request.

    System messages are pulled out and newline-joined (in order) into the
    system prompt; every other message keeps its relative order.
    """
    system_parts: list[str] = []
    messages: list[ChatMessage] = []
    for msg in request.messages:
        if msg.role == "system":
            system_parts.append(msg.content)
            continue
        messages.append(ChatMessage(role=_outbound_role(msg.role), content=msg.content))

    return SamplingRequest(
        messages=messages,
        max_tokens=_max_tokens(request.options, default_max_tokens),
        system_prompt="\n".join(system_parts) if system_parts else None,
        temperature=_temperature(request.options),
        model_hints=_model_hints(request.model),
    )


def generate_to_sampling(request: GenerateRequest, default_max_tokens: int) -> SamplingRequest:
    """Map a single-prompt generate request onto a sampling request.

    An empty prompt yields an empty message list, i.e. a preload.
    """
    messages = [ChatMessage(role="user", content=request.prompt)] if request.prompt else []
    return SamplingRequest(
        messages=messages,
        max_tokens=_max_tokens(request.options, default_max_tokens),
        system_prompt=request.system or None,
        temperature=_temperature(request.options),
        model_hints=_model_hints(request.model),
    )


def is_preload(request: SamplingRequest) -> bool:
    """True for capability probes that must not reach an endpoint."""
    return not request.messages


# ---------------------------------------------------------------------------
# Sampling → Ollama
# ---------------------------------------------------------------------------

def to_done_reason(stop_reason: str | None) -> str:
    """``endTurn`` → ``stop``, ``maxTokens`` → ``length``, else ``stop``."""
    return _STOP_REASONS.get(stop_reason or "", DEFAULT_DONE_REASON)


def extract_text_content(content: Any) -> str:
    """Return the text of the first text content unit in *content*.

    *content* is a single MCP content block or a list of them.  Image,
    audio and any other kinds yield ``""``.
    """
    if isinstance(content, list):
        for block in content:
            if isinstance(block, TextContent):
                return block.text
        return ""
    if isinstance(content, TextContent):
        return content.text
    return ""
