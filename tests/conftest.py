"""Shared fixtures for samplellama tests."""

from __future__ import annotations

import asyncio

import pytest

from samplellama.config import load_config
from samplellama.core.registry import EndpointRegistry
from samplellama.types import BridgeConfig, SamplingRequest, SamplingResult


class FakeEndpoint:
    """In-memory endpoint that returns a canned result (no MCP session)."""

    def __init__(
        self,
        endpoint_id: str = "fake-endpoint",
        result: SamplingResult | None = None,
        error: Exception | None = None,
    ):
        self.endpoint_id = endpoint_id
        self.result = result or SamplingResult(text="Hello! I'm a test assistant.", stop_reason="endTurn")
        self.error = error
        self.calls: list[SamplingRequest] = []
        self._closed = asyncio.Event()

    async def sample(self, request: SamplingRequest) -> SamplingResult:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close(self) -> None:
        self._closed.set()


class SlowEndpoint(FakeEndpoint):
    """Endpoint whose sampling call never finishes on its own."""

    def __init__(self, endpoint_id: str = "slow-endpoint"):
        super().__init__(endpoint_id)
        self.cancelled = False

    async def sample(self, request: SamplingRequest) -> SamplingResult:
        self.calls.append(request)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return self.result


@pytest.fixture
def registry() -> EndpointRegistry:
    return EndpointRegistry()


@pytest.fixture
def endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest.fixture
def bridge_config() -> BridgeConfig:
    return load_config(config_dict={
        "models": ["llama3", "codellama"],
        "default_max_tokens": 4096,
    })
