"""All dataclasses, Protocols, and exceptions for samplellama."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Ollama requests (inbound schema)
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    role: str  # inbound: any string; outbound: "user" or "assistant"
    content: str


@dataclass
class GenerationOptions:
    num_predict: int = 0  # <= 0 means "use the configured default"
    temperature: float | None = None


@dataclass
class ChatRequest:
    model: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    stream: bool | None = None  # None (omitted) means streaming
    options: GenerationOptions | None = None


@dataclass
class GenerateRequest:
    model: str = ""
    prompt: str = ""
    system: str = ""
    stream: bool | None = None
    options: GenerationOptions | None = None


# ---------------------------------------------------------------------------
# Sampling (outbound schema)
# ---------------------------------------------------------------------------

@dataclass
class SamplingRequest:
    """A model sampling call, independent of the MCP SDK types.

    ``messages`` never contains a ``system`` role; system text lives in
    ``system_prompt``.
    """
    messages: list[ChatMessage]
    max_tokens: int
    system_prompt: str | None = None
    temperature: float | None = None
    model_hints: list[str] | None = None


@dataclass
class SamplingResult:
    """What an endpoint returns after a sampling call."""
    text: str
    stop_reason: str | None = None  # raw upstream value, e.g. "endTurn"
    model: str | None = None


@dataclass
class TranslatedResult:
    """A sampling result expressed in Ollama terms, ready for emission."""
    text: str
    done_reason: str  # "stop", "length" or "load"
    model: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_duration: int = 0  # nanoseconds, 0 = unknown

    @property
    def eval_count(self) -> int:
        # Characters, not tokens: the upstream call reports no usage.
        return len(self.text)


@runtime_checkable
class Endpoint(Protocol):
    """An attached peer able to perform a sampling call."""

    endpoint_id: str

    async def sample(self, request: SamplingRequest) -> SamplingResult: ...

    async def wait_closed(self) -> None: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BridgeError(Exception):
    """Terminal per-request failure, rendered as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RequestDecodeError(BridgeError):
    status_code = 400


class EndpointUnavailableError(BridgeError):
    status_code = 503

    def __init__(self, message: str = "MCP host not connected"):
        super().__init__(message)


class SamplingError(BridgeError):
    status_code = 502


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ServerConfig:
    """Ollama-compatible HTTP listener."""
    host: str = "127.0.0.1"
    port: int = 11434


@dataclass
class McpConfig:
    transport: str = "stdio"  # "stdio" or "http"
    host: str = "127.0.0.1"
    port: int = 8081
    path: str = "/mcp"


@dataclass
class BridgeConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    mcp: McpConfig = field(default_factory=McpConfig)
    models: list[str] = field(default_factory=lambda: ["default"])
    default_max_tokens: int = 4096
    default_model: str = "default"
    log_level: str = "info"
