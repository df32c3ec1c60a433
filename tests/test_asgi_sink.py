"""Tests for the ASGI response sink and CoordinatedResponse."""

import asyncio

import pytest

from llm_relay_proxy.asgi_sink import ASGIResponseSink, CoordinatedResponse
from llm_relay_proxy.gateway import ChatGateway
from llm_relay_proxy.models import ChatRequest, GatewayConfig, ResponsePhase

from conftest import FakeUpstreamClient, record


class SendRecorder:
    """Collects ASGI messages."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)


class TestASGIResponseSink:
    """Test ASGI message framing."""

    @pytest.mark.asyncio
    async def test_header_body_end(self):
        send = SendRecorder()
        sink = ASGIResponseSink(send)

        await sink.write_header(200, {"Content-Type": "text/event-stream"})
        await sink.write_chunk(b"data: 1\n\n")
        await sink.end(b"data: [DONE]\n\n")

        assert send.messages == [
            {"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"text/event-stream")]},
            {"type": "http.response.body", "body": b"data: 1\n\n", "more_body": True},
            {"type": "http.response.body", "body": b"data: [DONE]\n\n", "more_body": False},
        ]
        assert sink.ended
        assert not sink.writable

    @pytest.mark.asyncio
    async def test_headers_only_once(self):
        sink = ASGIResponseSink(SendRecorder())
        await sink.write_header(200, {})
        with pytest.raises(RuntimeError):
            await sink.write_header(500, {})

    @pytest.mark.asyncio
    async def test_no_writes_after_abort(self):
        send = SendRecorder()
        sink = ASGIResponseSink(send)
        await sink.write_header(200, {})
        sink.abort()

        await sink.write_chunk(b"x")
        await sink.end(b"y")

        assert len(send.messages) == 1
        assert not sink.ended

    @pytest.mark.asyncio
    async def test_chunk_before_headers_dropped(self):
        send = SendRecorder()
        sink = ASGIResponseSink(send)
        await sink.write_chunk(b"x")
        assert send.messages == []


class TestCoordinatedResponse:
    """Test the response class driving one request."""

    @pytest.mark.asyncio
    async def test_runs_request(self):
        upstream = FakeUpstreamClient(chat_response={"output": "ok", "promptTokens": 1, "completionTokens": 1})
        gateway = ChatGateway(GatewayConfig(), client_factory=lambda key: upstream)
        request = ChatRequest(model="gpt-4o-mini", messages=[{"role": "user", "content": "hi"}])
        response = CoordinatedResponse(gateway, request, "req-1", "key")
        send = SendRecorder()
        disconnected = asyncio.Event()

        async def receive():
            await disconnected.wait()
            return {"type": "http.disconnect"}

        await response({"type": "http"}, receive, send)

        assert response.coordinator.phase == ResponsePhase.COMPLETED
        assert send.messages[0]["status"] == 200
        assert send.messages[-1]["more_body"] is False

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels(self):
        upstream = FakeUpstreamClient(stream_chunks=[record("a")] * 100, stream_delay=0.01)
        gateway = ChatGateway(GatewayConfig(), client_factory=lambda key: upstream)
        request = ChatRequest(model="gpt-4o-mini", messages=[{"role": "user", "content": "hi"}], stream=True)
        response = CoordinatedResponse(gateway, request, "req-1", "key")

        async def receive():
            await asyncio.sleep(0.05)
            return {"type": "http.disconnect"}

        await response({"type": "http"}, receive, SendRecorder())

        assert response.coordinator.phase == ResponsePhase.CANCELLED
        assert gateway.stats.cancelled_requests == 1
