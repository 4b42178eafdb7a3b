"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import BridgeConfig, McpConfig, ServerConfig

CONFIG_FILENAMES = [
    "samplellama.yaml",
    "samplellama.yml",
    "samplellama.json",
]

MCP_TRANSPORTS = ("stdio", "http")
LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def parse_models(value: str | list[str] | None) -> list[str]:
    """Split a comma-separated model list, dropping blanks.

    >>> parse_models("llama3, ,codellama")
    ['llama3', 'codellama']
    """
    if value is None:
        return []
    parts = value.split(",") if isinstance(value, str) else value
    return [str(p).strip() for p in parts if str(p).strip()]


def _build_config(raw: dict[str, Any]) -> BridgeConfig:
    """Build a BridgeConfig from a raw dict."""
    mcp_raw = raw.get("mcp", {}) or {}
    mcp_config = McpConfig(
        transport=mcp_raw.get("transport", "stdio"),
        host=mcp_raw.get("host", "127.0.0.1"),
        port=mcp_raw.get("port", 8081),
        path=mcp_raw.get("path", "/mcp"),
    )
    server_config = ServerConfig(
        host=raw.get("host", "127.0.0.1"),
        port=raw.get("port", 11434),
    )

    models = parse_models(raw["models"]) if "models" in raw else ["default"]

    return BridgeConfig(
        server=server_config,
        mcp=mcp_config,
        models=models,
        default_max_tokens=raw.get("default_max_tokens", 4096),
        default_model=raw.get("default_model", "default"),
        log_level=str(raw.get("log_level", "info")).lower(),
    )


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if config.mcp.transport not in MCP_TRANSPORTS:
        errors.append(
            f"Unknown MCP transport: {config.mcp.transport} "
            f"(use {' or '.join(repr(t) for t in MCP_TRANSPORTS)})"
        )

    if not isinstance(config.default_max_tokens, int) or config.default_max_tokens <= 0:
        errors.append(
            f"default_max_tokens must be a positive integer, got {config.default_max_tokens!r}"
        )

    for label, port in (("port", config.server.port), ("mcp.port", config.mcp.port)):
        if not isinstance(port, int) or not 0 < port < 65536:
            errors.append(f"{label} must be between 1 and 65535, got {port!r}")

    if (
        config.mcp.transport == "http"
        and config.mcp.port == config.server.port
        and config.mcp.host == config.server.host
    ):
        errors.append(f"mcp.port ({config.mcp.port}) collides with the Ollama port")

    if not config.mcp.path.startswith("/"):
        errors.append(f"mcp.path must start with '/', got {config.mcp.path!r}")

    if not config.models:
        errors.append("At least one model name must be advertised")

    if config.log_level not in LOG_LEVELS:
        errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> BridgeConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
