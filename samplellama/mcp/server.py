"""MCP server that lends the connected host's model to the Ollama API.

The server exposes no tools or resources.  Its only job is to hold MCP
sessions open: every host that completes the initialize handshake is
attached to the :class:`EndpointRegistry` as an :class:`McpEndpoint`, and
detached again when its session ends.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import anyio
from anyio.abc import TaskGroup
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server.session import ServerSession
from mcp.server.stdio import stdio_server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.shared.exceptions import McpError
from starlette.applications import Starlette
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from .. import __version__
from ..core.registry import EndpointRegistry, watch_endpoint
from ..core.translator import extract_text_content
from ..types import SamplingError, SamplingRequest, SamplingResult

logger = logging.getLogger(__name__)

_INSTRUCTIONS = (
    "Bridges Ollama-compatible HTTP clients to this host's model via "
    "sampling/createMessage. Keep the session open to serve requests."
)
_SAMPLING_CAPABILITY = types.ClientCapabilities(sampling=types.SamplingCapability())


def sampling_kwargs(request: SamplingRequest) -> dict[str, Any]:
    """Keyword arguments for ``ServerSession.create_message``."""
    kwargs: dict[str, Any] = {
        "messages": [
            types.SamplingMessage(
                role=m.role,
                content=types.TextContent(type="text", text=m.content),
            )
            for m in request.messages
        ],
        "max_tokens": request.max_tokens,
    }
    if request.system_prompt is not None:
        kwargs["system_prompt"] = request.system_prompt
    if request.temperature is not None:
        kwargs["temperature"] = request.temperature
    if request.model_hints:
        kwargs["model_preferences"] = types.ModelPreferences(
            hints=[types.ModelHint(name=name) for name in request.model_hints],
        )
    return kwargs


class McpEndpoint:
    """Adapts an MCP ``ServerSession`` to the registry's Endpoint protocol.

    The Python SDK gives sessions no stable id, so each endpoint gets a
    random one.
    """

    def __init__(self, session: ServerSession, endpoint_id: str | None = None) -> None:
        self.session = session
        self.endpoint_id = endpoint_id or uuid.uuid4().hex
        self._closed = anyio.Event()

    def mark_closed(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def sample(self, request: SamplingRequest) -> SamplingResult:
        try:
            result = await self.session.create_message(**sampling_kwargs(request))
        except McpError as e:
            raise SamplingError(f"sampling failed: {e.error.message}") from e
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as e:
            raise SamplingError("sampling failed: MCP session closed") from e

        return SamplingResult(
            text=extract_text_content(result.content),
            stop_reason=result.stopReason,
            model=result.model,
        )


def _is_initialized(message: Any) -> bool:
    return isinstance(message, types.ClientNotification) and isinstance(
        message.root, types.InitializedNotification
    )


class SamplingServer(Server):
    """Low-level MCP server that registers each initialized session."""

    def __init__(self, registry: EndpointRegistry) -> None:
        super().__init__("samplellama", version=__version__, instructions=_INSTRUCTIONS)
        self.registry = registry

    async def run(
        self,
        read_stream,
        write_stream,
        initialization_options: InitializationOptions,
        raise_exceptions: bool = False,
        stateless: bool = False,
    ) -> None:
        async with AsyncExitStack() as stack:
            lifespan_context = await stack.enter_async_context(self.lifespan(self))
            session = await stack.enter_async_context(
                ServerSession(
                    read_stream,
                    write_stream,
                    initialization_options,
                    stateless=stateless,
                )
            )
            endpoint = McpEndpoint(session)
            attached = False

            async with anyio.create_task_group() as tg:
                if stateless:
                    self._attach(endpoint, tg)
                    attached = True
                try:
                    async for message in session.incoming_messages:
                        if not attached and _is_initialized(message):
                            self._attach(endpoint, tg)
                            attached = True
                        tg.start_soon(
                            self._handle_message,
                            message,
                            session,
                            lifespan_context,
                            raise_exceptions,
                        )
                finally:
                    endpoint.mark_closed()

            if attached:
                logger.info("MCP session closed: %s", endpoint.endpoint_id[:12])

    def _attach(self, endpoint: McpEndpoint, tg: TaskGroup) -> None:
        if not endpoint.session.check_client_capability(_SAMPLING_CAPABILITY):
            logger.warning(
                "MCP session %s did not declare sampling support; requests will likely fail",
                endpoint.endpoint_id[:12],
            )
        self.registry.attach(endpoint)
        logger.info("MCP session initialized: %s", endpoint.endpoint_id[:12])
        tg.start_soon(watch_endpoint, self.registry, endpoint)

    async def serve_stdio(self) -> None:
        """Serve a single host over stdin/stdout until it disconnects."""
        logger.info("Starting MCP stdio transport")
        async with stdio_server() as (read_stream, write_stream):
            await self.run(read_stream, write_stream, self.create_initialization_options())

    def streamable_http_app(self, path: str = "/mcp") -> Starlette:
        """ASGI app serving MCP Streamable HTTP at *path*."""
        manager = StreamableHTTPSessionManager(app=self)

        @asynccontextmanager
        async def lifespan(app: Starlette):
            async with manager.run():
                yield

        return Starlette(
            routes=[Route(path, endpoint=_StreamableHTTPEndpoint(manager), methods=["GET", "POST", "DELETE"])],
            lifespan=lifespan,
        )


class _StreamableHTTPEndpoint:
    """Raw ASGI endpoint; Starlette passes instances through untouched."""

    def __init__(self, manager: StreamableHTTPSessionManager) -> None:
        self.manager = manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.manager.handle_request(scope, receive, send)
