"""Run the Ollama HTTP listener and the MCP transport in one event loop."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from ..core.registry import EndpointRegistry
from ..mcp.server import SamplingServer
from ..types import BridgeConfig
from .server import create_app

logger = logging.getLogger(__name__)


def _uvicorn_server(app, host: str, port: int, log_level: str) -> uvicorn.Server:
    # log_config=None: uvicorn's default config writes access logs to
    # stdout, which is the MCP channel in stdio mode.
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level,
        log_config=None,
        timeout_graceful_shutdown=2,
    )
    return uvicorn.Server(config)


async def run_bridge(
    config: BridgeConfig,
    registry: EndpointRegistry | None = None,
) -> None:
    """Serve until the MCP transport ends or a shutdown signal arrives.

    Args:
        config: Bridge configuration (listen addresses, transport, models).
        registry: Registry shared by both sides.  Created if None.

    In stdio mode the bridge lives as long as the host keeps stdin open.
    In http mode both listeners run until interrupted.
    """
    if registry is None:
        registry = EndpointRegistry()

    app = create_app(registry, config)
    sampling_server = SamplingServer(registry)

    ollama_server = _uvicorn_server(app, config.server.host, config.server.port, config.log_level)
    servers = [ollama_server]
    tasks = [asyncio.create_task(ollama_server.serve(), name="ollama-http")]
    logger.info(
        "Ollama-compatible API listening on %s:%d", config.server.host, config.server.port,
    )

    if config.mcp.transport == "stdio":
        tasks.append(asyncio.create_task(sampling_server.serve_stdio(), name="mcp-stdio"))
    else:
        mcp_server = _uvicorn_server(
            sampling_server.streamable_http_app(config.mcp.path),
            config.mcp.host,
            config.mcp.port,
            config.log_level,
        )
        servers.append(mcp_server)
        tasks.append(asyncio.create_task(mcp_server.serve(), name="mcp-http"))
        logger.info(
            "MCP Streamable HTTP transport on %s:%d%s",
            config.mcp.host, config.mcp.port, config.mcp.path,
        )

    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in done:
        logger.info("%s finished, shutting down", task.get_name())

    for server in servers:
        server.should_exit = True
    for task in pending:
        if task.get_name() == "mcp-stdio":
            task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    logger.info("Shutdown complete")
