"""CLI: samplellama serve, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import LOG_LEVELS, MCP_TRANSPORTS, load_config, parse_models, validate_config
from ..types import BridgeConfig

LOG_FORMAT = "[samplellama] %(asctime)s %(levelname)s %(name)s: %(message)s"


class _SuppressCancelled(logging.Filter):
    """Drop CancelledError tracebacks uvicorn logs on forced shutdown."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info:
            exc_type = record.exc_info[0]
            if exc_type is asyncio.CancelledError:
                return False
        return True


def _configure_logging(level: str) -> None:
    # stderr only: stdout carries MCP messages in stdio mode.
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())


def _apply_overrides(config: BridgeConfig, args) -> BridgeConfig:
    """Command-line flags win over config file values."""
    if args.port is not None:
        config.server.port = args.port
    if args.host is not None:
        config.server.host = args.host
    if args.models is not None:
        config.models = parse_models(args.models)
    if args.default_max_tokens is not None:
        config.default_max_tokens = args.default_max_tokens
    if args.mcp_transport is not None:
        config.mcp.transport = args.mcp_transport
    if args.mcp_port is not None:
        config.mcp.port = args.mcp_port
    if args.log_level is not None:
        config.log_level = args.log_level
    return config


def cmd_serve(args):
    """Start the Ollama API and the MCP transport."""
    from ..proxy.runner import run_bridge

    try:
        config = _apply_overrides(load_config(config_path=args.config), args)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"Error: {err}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(config.log_level)
    try:
        asyncio.run(run_bridge(config))
    except KeyboardInterrupt:
        pass


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation failed:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)

    print("Config is valid.")
    print(f"  Ollama API:  {config.server.host}:{config.server.port}")
    if config.mcp.transport == "http":
        print(f"  MCP:         http {config.mcp.host}:{config.mcp.port}{config.mcp.path}")
    else:
        print("  MCP:         stdio")
    print(f"  Models:      {', '.join(config.models)}")
    print(f"  Max tokens:  {config.default_max_tokens}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="samplellama",
        description="Ollama-compatible API backed by MCP sampling",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the bridge")
    serve_parser.add_argument("--port", "-p", type=int, help="Ollama HTTP listen port (default 11434)")
    serve_parser.add_argument("--host", help="Ollama HTTP listen host (default 127.0.0.1)")
    serve_parser.add_argument(
        "--models", "-m",
        help="Comma-separated model names to advertise (default: default)",
    )
    serve_parser.add_argument(
        "--default-max-tokens", type=int,
        help="Max tokens for sampling when a request sets no num_predict (default 4096)",
    )
    serve_parser.add_argument(
        "--mcp-transport", choices=MCP_TRANSPORTS,
        help="MCP transport: stdio or http (default stdio)",
    )
    serve_parser.add_argument("--mcp-port", type=int, help="Port for MCP Streamable HTTP (default 8081)")
    serve_parser.add_argument(
        "--log-level", choices=LOG_LEVELS,
    )

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: samplellama config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
