"""Shared fixtures for relay proxy tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from llm_relay_proxy.models import ChatRequest, GatewayConfig
from llm_relay_proxy.response_coordinator import ResponseSink


class RecordingSink(ResponseSink):
    """In-memory ResponseSink that records everything written to it."""

    def __init__(self, fail_on_header: bool = False, fail_on_chunk: bool = False):
        self.status: Optional[int] = None
        self.headers: Dict[str, str] = {}
        self.chunks: List[bytes] = []
        self.tail: bytes = b""
        self.header_writes = 0
        self.aborted = False
        self.fail_on_header = fail_on_header
        self.fail_on_chunk = fail_on_chunk
        self._headers_sent = False
        self._ended = False

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def writable(self) -> bool:
        return self._headers_sent and not self._ended and not self.aborted

    async def write_header(self, status: int, headers: Dict[str, str]):
        self.header_writes += 1
        if self.fail_on_header:
            raise ConnectionResetError("client went away")
        self._headers_sent = True
        self.status = status
        self.headers = dict(headers)

    async def write_chunk(self, data: bytes):
        if self.fail_on_chunk:
            raise ConnectionResetError("client went away")
        self.chunks.append(data)

    async def end(self, data: bytes = b""):
        self._ended = True
        self.tail = data

    def abort(self):
        self.aborted = True

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks) + self.tail

    def json(self) -> Any:
        return json.loads(self.body)

    def sse_events(self) -> List[Any]:
        """Decoded `data:` payloads, with `[DONE]` kept as a string."""
        events = []
        for block in self.body.decode("utf-8").split("\n\n"):
            if not block.startswith("data: "):
                continue
            data = block[len("data: "):]
            events.append(data if data == "[DONE]" else json.loads(data))
        return events


async def byte_stream(chunks: List[bytes], delay: float = 0.0, error: Optional[BaseException] = None):
    """Async iterator over raw upstream body chunks."""
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk
    if error is not None:
        raise error


def record(output: Any, prompt_tokens: Optional[int] = None, completion_tokens: Optional[int] = None) -> bytes:
    """One upstream line, newline-terminated."""
    data: Dict[str, Any] = {"output": output}
    if prompt_tokens is not None:
        data["promptTokens"] = prompt_tokens
    if completion_tokens is not None:
        data["completionTokens"] = completion_tokens
    return (json.dumps(data) + "\n").encode("utf-8")


class FakeUpstreamClient:
    """Stands in for UpstreamClient in gateway tests."""

    def __init__(
        self,
        stream_chunks: Optional[List[bytes]] = None,
        stream_delay: float = 0.0,
        stream_error: Optional[BaseException] = None,
        chat_response: Optional[Dict[str, Any]] = None,
        chat_error: Optional[BaseException] = None,
        chat_delay: float = 0.0,
    ):
        self.stream_chunks = stream_chunks or []
        self.stream_delay = stream_delay
        self.stream_error = stream_error
        self.chat_response = chat_response or {"output": "", "promptTokens": 0, "completionTokens": 0}
        self.chat_error = chat_error
        self.chat_delay = chat_delay
        self.payloads = []
        self.chat_cancelled = False

    def stream_chat(self, payload):
        self.payloads.append(payload)
        return byte_stream(self.stream_chunks, self.stream_delay, self.stream_error)

    async def chat(self, payload, timeout_seconds=None):
        self.payloads.append(payload)
        try:
            if self.chat_delay:
                await asyncio.sleep(self.chat_delay)
        except asyncio.CancelledError:
            self.chat_cancelled = True
            raise
        if self.chat_error is not None:
            raise self.chat_error
        return self.chat_response

    async def get_status(self, timeout_seconds=5.0):
        return {"status": "ok"}


@pytest.fixture
def default_config():
    """Create default gateway config."""
    return GatewayConfig()


@pytest.fixture
def fast_config():
    """Config with short timeouts for timing tests."""
    return GatewayConfig(
        request_timeout_ms=200,
        streaming_timeout_multiplier=1.0,
        min_streaming_timeout_ms=200,
        relay_timeout_ratio=0.5,
    )


@pytest.fixture
def chat_request():
    """A simple non-streaming chat request."""
    return ChatRequest(
        model="gpt-4o-mini",
        messages=[
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "Hello"},
        ],
    )


@pytest.fixture
def streaming_request():
    """A simple streaming chat request."""
    return ChatRequest(
        model="gpt-4o-mini",
        messages=[{"role": "user", "content": "Hello"}],
        stream=True,
    )
