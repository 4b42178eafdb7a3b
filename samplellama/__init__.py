"""samplellama: an Ollama-compatible API served by MCP sampling."""

__version__ = "0.1.0"
VERSION = f"samplellama-{__version__}"

from .config import load_config  # noqa: E402
from .core.registry import EndpointRegistry  # noqa: E402
from .types import (  # noqa: E402
    BridgeConfig,
    ChatMessage,
    Endpoint,
    SamplingRequest,
    SamplingResult,
    TranslatedResult,
)

__all__ = [
    "EndpointRegistry",
    "load_config",
    "BridgeConfig",
    "ChatMessage",
    "Endpoint",
    "SamplingRequest",
    "SamplingResult",
    "TranslatedResult",
]
