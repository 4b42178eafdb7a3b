"""Tests for samplellama.proxy.server."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp import types
from starlette.testclient import TestClient

from conftest import FakeEndpoint, SlowEndpoint
from samplellama import VERSION
from samplellama.mcp.server import McpEndpoint
from samplellama.proxy import server as server_mod
from samplellama.proxy.server import _ClientDisconnected, _sample_until_disconnect, create_app
from samplellama.types import ChatMessage, SamplingError, SamplingRequest, SamplingResult


@pytest.fixture
def client(registry, bridge_config):
    app = create_app(registry, bridge_config)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def attached(registry, endpoint):
    registry.attach(endpoint)
    return endpoint


def _ndjson(text: str) -> list[dict]:
    return [json.loads(line) for line in text.splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# Informational routes
# ---------------------------------------------------------------------------


class TestInfoRoutes:
    def test_health(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.text == "Ollama is running"

    def test_health_head(self, client):
        resp = client.head("/")
        assert resp.status_code == 200

    def test_version(self, client):
        resp = client.get("/api/version")
        assert resp.status_code == 200
        assert resp.json() == {"version": VERSION}

    def test_tags(self, client):
        resp = client.get("/api/tags")
        assert resp.status_code == 200
        models = resp.json()["models"]
        assert [m["name"] for m in models] == ["llama3", "codellama"]
        first = models[0]
        assert first["model"] == "llama3"
        assert first["size"] == 0
        assert first["digest"] == ""
        assert first["modified_at"].endswith("Z")
        assert set(first["details"]) == {"format", "family", "parameter_size", "quantization_level"}

    def test_unknown_route(self, client):
        assert client.get("/api/ps").status_code == 404


# ---------------------------------------------------------------------------
# /api/chat
# ---------------------------------------------------------------------------


class TestChat:
    def test_streaming_by_default(self, client, attached):
        attached.result = SamplingResult(text="hi", stop_reason="endTurn")
        resp = client.post("/api/chat", json={
            "model": "llama3",
            "messages": [{"role": "user", "content": "Hello"}],
        })

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")
        frames = _ndjson(resp.text)
        assert len(frames) == 2

        first, second = frames
        assert first["done"] is False
        assert first["message"] == {"role": "assistant", "content": "hi"}
        assert "done_reason" not in first
        assert second["done"] is True
        assert second["done_reason"] == "stop"
        assert second["message"]["content"] == ""
        assert second["eval_count"] == 2
        assert first["model"] == second["model"] == "llama3"

    def test_non_streaming(self, client, attached):
        attached.result = SamplingResult(text="Hello there", stop_reason="maxTokens")
        resp = client.post("/api/chat", json={
            "model": "llama3",
            "messages": [{"role": "user", "content": "Hello"}],
            "stream": False,
        })

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/json")
        data = resp.json()
        assert data["done"] is True
        assert data["done_reason"] == "length"
        assert data["message"] == {"role": "assistant", "content": "Hello there"}
        assert data["eval_count"] == len("Hello there")
        assert data["total_duration"] > 0

    def test_translates_request_for_endpoint(self, client, attached):
        client.post("/api/chat", json={
            "model": "codellama",
            "messages": [
                {"role": "system", "content": "a"},
                {"role": "system", "content": "b"},
                {"role": "user", "content": "Write code"},
                {"role": "tool", "content": "result"},
            ],
            "stream": False,
            "options": {"num_predict": 128, "temperature": 0.2},
        })

        (sent,) = attached.calls
        assert sent == SamplingRequest(
            messages=[
                ChatMessage(role="user", content="Write code"),
                ChatMessage(role="user", content="result"),
            ],
            max_tokens=128,
            system_prompt="a\nb",
            temperature=0.2,
            model_hints=["codellama"],
        )

    def test_configured_default_max_tokens(self, client, attached):
        client.post("/api/chat", json={"messages": [{"role": "user", "content": "x"}], "stream": False})
        assert attached.calls[0].max_tokens == 4096

    def test_missing_model_echoes_default(self, client, attached):
        resp = client.post("/api/chat", json={
            "messages": [{"role": "user", "content": "x"}],
            "stream": False,
        })
        assert resp.json()["model"] == "default"
        assert attached.calls[0].model_hints is None

    def test_invalid_json(self, client, attached):
        resp = client.post(
            "/api/chat",
            content=b'{"model": "llama3", "messa',
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400
        body = resp.json()
        assert set(body) == {"error"}
        assert body["error"].startswith("invalid JSON")
        assert attached.calls == []

    def test_deeply_nested_body_is_bad_request(self, client, attached):
        resp = client.post("/api/chat", content=b"[" * 200_000)
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("invalid JSON")
        assert attached.calls == []

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_number_literals_rejected(self, client, attached, literal):
        body = (
            '{"messages": [{"role": "user", "content": "x"}], '
            f'"options": {{"temperature": {literal}}}}}'
        )
        resp = client.post("/api/chat", content=body.encode())
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("invalid JSON")
        assert attached.calls == []

    def test_wrong_schema(self, client, attached):
        resp = client.post("/api/chat", json={"messages": "hello"})
        assert resp.status_code == 400
        assert "messages" in resp.json()["error"]

    def test_no_endpoint_attached(self, client):
        resp = client.post("/api/chat", json={
            "model": "llama3",
            "messages": [{"role": "user", "content": "Hello"}],
        })
        assert resp.status_code == 503
        assert resp.json() == {"error": "MCP host not connected"}

    def test_sampling_error(self, client, registry):
        registry.attach(FakeEndpoint(error=SamplingError("sampling failed: user rejected sampling request")))
        resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hello"}]})
        assert resp.status_code == 502
        assert "user rejected sampling request" in resp.json()["error"]

    def test_unexpected_endpoint_error_is_bad_gateway(self, client, registry):
        registry.attach(FakeEndpoint(error=RuntimeError("connection reset")))
        resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hello"}]})
        assert resp.status_code == 502
        assert resp.json()["error"] == "sampling failed: connection reset"

    def test_preload_skips_endpoint(self, client, registry):
        resp = client.post("/api/chat", json={"model": "llama3", "messages": []})
        assert resp.status_code == 200
        data = resp.json()
        assert data["done"] is True
        assert data["done_reason"] == "load"
        assert data["message"]["content"] == ""

    def test_system_only_is_preload(self, client, attached):
        resp = client.post("/api/chat", json={
            "model": "llama3",
            "messages": [{"role": "system", "content": "be nice"}],
        })
        assert resp.status_code == 200
        assert resp.json()["done_reason"] == "load"
        assert attached.calls == []

    def test_uses_most_recent_endpoint(self, client, registry):
        old, new = FakeEndpoint("old"), FakeEndpoint("new")
        registry.attach(old)
        registry.attach(new)
        client.post("/api/chat", json={"messages": [{"role": "user", "content": "x"}]})
        assert old.calls == []
        assert len(new.calls) == 1

    def test_non_text_content_yields_empty_text(self, client, registry):
        session = MagicMock()
        session.create_message = AsyncMock(return_value=types.CreateMessageResult(
            role="assistant",
            content=types.ImageContent(type="image", data="aGVsbG8=", mimeType="image/png"),
            model="host-model",
            stopReason="endTurn",
        ))
        registry.attach(McpEndpoint(session, endpoint_id="image-host"))

        resp = client.post("/api/chat", json={
            "messages": [{"role": "user", "content": "draw"}],
            "stream": False,
        })
        assert resp.status_code == 200
        assert resp.json()["message"]["content"] == ""
        assert resp.json()["eval_count"] == 0


# ---------------------------------------------------------------------------
# /api/generate
# ---------------------------------------------------------------------------


class TestGenerate:
    def test_streaming(self, client, attached):
        attached.result = SamplingResult(text="Rayleigh scattering.", stop_reason="endTurn")
        resp = client.post("/api/generate", json={"model": "llama3", "prompt": "Why is the sky blue?"})

        frames = _ndjson(resp.text)
        assert len(frames) == 2
        assert frames[0]["response"] == "Rayleigh scattering."
        assert frames[0]["done"] is False
        assert frames[1]["response"] == ""
        assert frames[1]["done"] is True
        assert frames[1]["done_reason"] == "stop"

    def test_non_streaming_with_system(self, client, attached):
        resp = client.post("/api/generate", json={
            "model": "llama3",
            "prompt": "Hello",
            "system": "Be brief",
            "stream": False,
        })
        data = resp.json()
        assert data["response"] == attached.result.text
        assert data["done"] is True
        (sent,) = attached.calls
        assert sent.system_prompt == "Be brief"
        assert sent.messages == [ChatMessage(role="user", content="Hello")]

    def test_empty_prompt_is_preload(self, client, registry):
        resp = client.post("/api/generate", json={"model": "llama3"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["done"] is True
        assert data["response"] == ""

    def test_invalid_json(self, client):
        resp = client.post("/api/generate", content=b"not json")
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_no_endpoint_attached(self, client):
        resp = client.post("/api/generate", json={"prompt": "Hello"})
        assert resp.status_code == 503

    def test_sampling_error(self, client, registry):
        registry.attach(FakeEndpoint(error=SamplingError("sampling failed: timeout")))
        resp = client.post("/api/generate", json={"prompt": "Hello"})
        assert resp.status_code == 502
        assert "timeout" in resp.json()["error"]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class _FakeRequest:
    def __init__(self, disconnected: bool):
        self.disconnected = disconnected

    async def is_disconnected(self) -> bool:
        return self.disconnected


class TestSampleUntilDisconnect:
    @pytest.mark.asyncio
    async def test_returns_result(self, registry, endpoint):
        registry.attach(endpoint)
        sampling = SamplingRequest(messages=[ChatMessage("user", "x")], max_tokens=10)
        result, elapsed = await _sample_until_disconnect(_FakeRequest(False), registry, sampling)
        assert result is endpoint.result
        assert elapsed >= 0

    @pytest.mark.asyncio
    async def test_disconnect_cancels_sampling(self, registry, monkeypatch):
        monkeypatch.setattr(server_mod, "_DISCONNECT_POLL_SECONDS", 0.01)
        slow = SlowEndpoint()
        registry.attach(slow)
        sampling = SamplingRequest(messages=[ChatMessage("user", "x")], max_tokens=10)

        with pytest.raises(_ClientDisconnected):
            await _sample_until_disconnect(_FakeRequest(True), registry, sampling)

        await asyncio.sleep(0.01)
        assert slow.cancelled

    @pytest.mark.asyncio
    async def test_no_endpoint_raises_before_calling(self, registry):
        from samplellama.types import EndpointUnavailableError

        sampling = SamplingRequest(messages=[ChatMessage("user", "x")], max_tokens=10)
        with pytest.raises(EndpointUnavailableError):
            await _sample_until_disconnect(_FakeRequest(False), registry, sampling)
