"""Tests for the HTTP API: routing, auth, validation and response shapes."""

import json

import pytest
from fastapi.testclient import TestClient

from llm_relay_proxy import api
from llm_relay_proxy.errors import UpstreamHTTPError

from conftest import FakeUpstreamClient, record

GATEWAY_ENV = (
    "UPSTREAM_BASE_URL",
    "REQUEST_TIMEOUT_MS",
    "STREAMING_TIMEOUT_MULTIPLIER",
    "MIN_STREAMING_TIMEOUT_MS",
    "RELAY_TIMEOUT_RATIO",
    "DEFAULT_MODEL",
    "DEFAULT_TEMPERATURE",
    "API_KEY_MODE",
    "OVERRIDE_API_KEY",
    "MODEL_BINDINGS_FILE",
)

AUTH = {"Authorization": "Bearer caller-key"}


@pytest.fixture
def upstream():
    """Fake upstream shared by every request of a test."""
    return FakeUpstreamClient(chat_response={"output": "Hello!", "promptTokens": 5, "completionTokens": 2})


@pytest.fixture
def used_keys():
    return []


@pytest.fixture
def make_client(monkeypatch, upstream, used_keys):
    """Start the app with the given env and route upstream calls to the fake."""
    clients = []

    def factory(**env):
        for name in GATEWAY_ENV:
            monkeypatch.delenv(name, raising=False)
        for name, value in env.items():
            monkeypatch.setenv(name, value)

        client = TestClient(api.app)
        client.__enter__()
        clients.append(client)

        def client_factory(api_key):
            used_keys.append(api_key)
            return upstream

        api.gateway.client_factory = client_factory
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def chat_body(**kwargs):
    body = {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}]}
    body.update(kwargs)
    return body


class TestInfoEndpoints:
    """Test informational endpoints."""

    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"

    def test_api_root(self, client):
        assert "/v1/chat/completions" in client.get("/v1").json()["endpoints"]

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        health = resp.json()
        assert health["status"] == "healthy"
        assert health["active_requests"] == 0
        assert health["upstream_reachable"] is None

    def test_health_with_upstream_probe(self, client, used_keys):
        resp = client.get("/health", params={"check_upstream": "true"}, headers=AUTH)
        assert resp.json()["upstream_reachable"] is True
        assert used_keys == ["caller-key"]

    def test_health_probe_without_key(self, client):
        resp = client.get("/health", params={"check_upstream": "true"})
        assert resp.json()["upstream_reachable"] is False

    def test_models(self, client):
        data = client.get("/v1/models").json()
        assert data["object"] == "list"
        assert "gpt-4o-mini" in [m["id"] for m in data["data"]]


class TestChatCompletions:
    """Test POST /v1/chat/completions."""

    def test_unary_completion(self, client, upstream, used_keys):
        resp = client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)

        assert resp.status_code == 200
        body = resp.json()
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"]["content"] == "Hello!"
        assert body["usage"] == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}
        assert used_keys == ["caller-key"]
        assert upstream.payloads[0].last_user_query == "Hi"

    def test_streaming_completion(self, client, upstream):
        upstream.stream_chunks = [record("Hel"), record("lo"), record(None, 3, 2)]

        resp = client.post("/v1/chat/completions", json=chat_body(stream=True), headers=AUTH)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        blocks = [b for b in resp.text.split("\n\n") if b]
        assert blocks[-1] == "data: [DONE]"
        events = [json.loads(b[len("data: "):]) for b in blocks[:-1]]
        assert "".join(e["choices"][0]["delta"].get("content", "") for e in events) == "Hello"
        assert events[-1]["usage"]["total_tokens"] == 5

    def test_upstream_error_envelope(self, client, upstream):
        upstream.chat_error = UpstreamHTTPError(500, "internal")

        resp = client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)

        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["type"] == "upstream_error"
        assert error["upstream_status"] == 500
        assert error["request_id"]

    def test_missing_api_key(self, client, upstream):
        resp = client.post("/v1/chat/completions", json=chat_body())

        assert resp.status_code == 401
        assert resp.json()["error"]["type"] == "authentication_error"
        assert upstream.payloads == []

    def test_non_bearer_authorization_rejected(self, client):
        resp = client.post("/v1/chat/completions", json=chat_body(), headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    def test_override_key_mode(self, make_client, used_keys):
        client = make_client(API_KEY_MODE="override", OVERRIDE_API_KEY="fixed-key")

        resp = client.post("/v1/chat/completions", json=chat_body())

        assert resp.status_code == 200
        assert used_keys == ["fixed-key"]

    @pytest.mark.parametrize("body", [
        {"model": "gpt-4o-mini", "messages": []},
        {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}], "temperature": 3},
        {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}], "max_tokens": 0},
    ])
    def test_invalid_request(self, client, upstream, body):
        resp = client.post("/v1/chat/completions", json=body, headers=AUTH)

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["type"] == "invalid_request_error"
        assert error["code"] == "invalid_request"
        assert upstream.payloads == []

    def test_model_defaults_when_omitted(self, client, upstream):
        resp = client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hi"}]},
            headers=AUTH,
        )

        assert resp.status_code == 200
        assert resp.json()["model"] == "gpt-4.1-mini-2025-04-14"
        assert upstream.payloads[0].llm_model == "gpt-4.1-mini-2025-04-14"

    def test_image_message_forwarded(self, client, upstream):
        body = chat_body(messages=[{
            "role": "user",
            "content": [{"type": "image_url", "image_url": {"url": "https://img.test/cat.png"}}],
        }])

        resp = client.post("/v1/chat/completions", json=body, headers=AUTH)

        assert resp.status_code == 200
        payload = upstream.payloads[0]
        assert payload.image_analyze is True
        assert payload.history[0].content["image_data"][0]["url"] == "https://img.test/cat.png"

    def test_stats_updated(self, client):
        client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)

        stats = client.get("/stats").json()
        assert stats["total_requests"] == 1
        assert stats["completed_requests"] == 1
        assert stats["active_requests"] == 0


class TestToolEndpoint:
    """Test POST /v1/chat/completions/tools."""

    def test_tool_call(self, client, upstream):
        upstream.chat_response = {
            "output": '<tool name="search"><query>cats</query></tool>',
            "promptTokens": 8,
            "completionTokens": 6,
        }

        resp = client.post(
            "/v1/chat/completions/tools",
            json={"tool_name": "search", "parameters": {"query": "cats"}},
            headers=AUTH,
        )

        assert resp.status_code == 200
        choice = resp.json()["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["tool_calls"][0]["function"]["name"] == "search"

        payload = upstream.payloads[0]
        assert payload.temperature == 0.1
        assert payload.max_tokens == 4000
        assert payload.stream is False
        assert payload.last_user_query.startswith('<tool name="search">')

    def test_tool_call_requires_name(self, client):
        resp = client.post("/v1/chat/completions/tools", json={"parameters": {}}, headers=AUTH)
        assert resp.status_code == 400
