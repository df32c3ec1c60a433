"""
ASGI binding for coordinated responses.

`ASGIResponseSink` writes through the raw ASGI `send` callable so the
coordinator sees exactly what has gone out. `CoordinatedResponse` is returned
from a FastAPI route and runs one chat request under its coordinator while
watching for the client going away.
"""

import asyncio
import logging
from typing import Dict, Optional

from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from .models import CancellationReason, ChatRequest
from .response_coordinator import ResponseCoordinator, ResponseSink

logger = logging.getLogger(__name__)


class ASGIResponseSink(ResponseSink):
    """ResponseSink over an ASGI send callable."""

    def __init__(self, send: Send):
        self._send = send
        self._headers_sent = False
        self._ended = False
        self.aborted = False

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
        if self._headers_sent:
            raise RuntimeError("Response headers already sent")
        # Flag first: observers must never see a half-started response as unstarted
        self._headers_sent = True
        await self._send({
            "type": "http.response.start",
            "status": status,
            "headers": [
                (name.lower().encode("latin-1"), value.encode("latin-1"))
                for name, value in headers.items()
            ],
        })

    async def write_chunk(self, data: bytes):
        if not self.writable:
            return
        await self._send({
            "type": "http.response.body",
            "body": data,
            "more_body": True,
        })

    async def end(self, data: bytes = b""):
        if self._ended or self.aborted:
            return
        self._ended = True
        await self._send({
            "type": "http.response.body",
            "body": data,
            "more_body": False,
        })

    def abort(self):
        # The server drops the connection when the app returns with the response incomplete
        self.aborted = True


class CoordinatedResponse(Response):
    """A FastAPI response whose body is produced by the chat gateway."""

    def __init__(
        self,
        gateway,
        chat_request: ChatRequest,
        request_id: str,
        api_key: str,
    ):
        super().__init__(status_code=200)
        self.gateway = gateway
        self.chat_request = chat_request
        self.request_id = request_id
        self.api_key = api_key
        self.coordinator: Optional[ResponseCoordinator] = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sink = ASGIResponseSink(send)
        self.coordinator = self.gateway.create_coordinator(sink, self.chat_request, self.request_id)

        watcher = asyncio.ensure_future(self._watch_disconnect(receive, self.coordinator))
        try:
            await self.gateway.process(self.chat_request, self.coordinator, self.api_key)
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

        if sink.aborted:
            logger.info(f"Request {self.request_id}: connection closed with incomplete response")

    async def _watch_disconnect(self, receive: Receive, coordinator: ResponseCoordinator):
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                if coordinator.cancel_all(CancellationReason.CLIENT_DISCONNECTED):
                    logger.info(f"Request {self.request_id}: client disconnected")
                return
