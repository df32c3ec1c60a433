"""
Response coordinator: the single authority over one request's client response.

Exactly one of {clean completion, timeout, client disconnect, upstream error}
gets to perform the terminal write; every other path observes the terminal
phase and does nothing.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .errors import FinalizeWriteError, timeout_envelope
from .models import TERMINAL_PHASES, CancellationReason, ResponsePhase
from .translator import SSE_HEADERS

logger = logging.getLogger(__name__)

CancelHandler = Callable[[CancellationReason], None]


class ResponseSink(ABC):
    """Where a coordinated response is written."""

    @property
    @abstractmethod
    def headers_sent(self) -> bool:
        """True once the status line and headers have gone out."""

    @property
    @abstractmethod
    def ended(self) -> bool:
        """True once the response body has been completed."""

    @property
    @abstractmethod
    def writable(self) -> bool:
        """True while body bytes can still be written."""

    @abstractmethod
    async def write_header(self, status: int, headers: Dict[str, str]):
        """Send the status line and headers."""

    @abstractmethod
    async def write_chunk(self, data: bytes):
        """Send part of the body."""

    @abstractmethod
    async def end(self, data: bytes = b""):
        """Send the last part of the body and complete the response."""

    @abstractmethod
    def abort(self):
        """Forcibly close the underlying connection."""


class ResponseCoordinator:
    """
    Owns the client response for the lifetime of one request.

    Phases: idle -> active -> {completed | timed_out | cancelled | errored}.
    Every terminal transition is a synchronous check-and-set, so a timer
    callback can never interleave with it.
    """

    def __init__(
        self,
        sink: ResponseSink,
        request_id: str,
        timeout_ms: int,
        streaming: bool = False,
    ):
        """
        Initialize coordinator.

        Args:
            sink: Response sink for this request
            request_id: Request ID for logging and error bodies
            timeout_ms: Request timeout, armed on activate()
            streaming: Whether this is a streaming response
        """
        self.sink = sink
        self.request_id = request_id
        self.timeout_ms = timeout_ms
        self.streaming = streaming

        self.phase = ResponsePhase.IDLE
        self.termination_reason: Optional[CancellationReason] = None
        self.error: Optional[BaseException] = None

        self.cancel_handlers: List[CancelHandler] = []
        self.timeout_handle: Optional[asyncio.TimerHandle] = None
        self._timeout_task: Optional[asyncio.Task] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def headers_sent(self) -> bool:
        return self.sink.headers_sent

    @property
    def ended(self) -> bool:
        return self.sink.ended

    def snapshot(self) -> Dict[str, Any]:
        """Response state for diagnostics."""
        return {
            "phase": self.phase.value,
            "headers_sent": self.sink.headers_sent,
            "ended": self.sink.ended,
            "writable": self.sink.writable,
            "streaming": self.streaming,
            "handlers": len(self.cancel_handlers),
        }

    # State transitions

    def activate(self) -> bool:
        """Enter the active phase and arm the request timer."""
        if self.phase != ResponsePhase.IDLE:
            return False

        self.phase = ResponsePhase.ACTIVE
        loop = asyncio.get_running_loop()
        self.timeout_handle = loop.call_later(self.timeout_ms / 1000.0, self.on_timeout)

        logger.debug(
            f"Request {self.request_id}: response active "
            f"(timeout={self.timeout_ms}ms, streaming={self.streaming})"
        )
        return True

    def register_cancel_handler(self, handler: CancelHandler) -> bool:
        """
        Register a callback invoked with the reason on any terminal transition.

        Returns:
            False (and does nothing) once the response is terminal
        """
        if self.is_terminal:
            return False
        self.cancel_handlers.append(handler)
        return True

    def cancel_all(self, reason: CancellationReason) -> bool:
        """
        Cancel the response and notify every registered handler.

        Returns:
            True if this call performed the cancellation, False if the
            response was not active
        """
        if reason == CancellationReason.REQUEST_TIMEOUT:
            target = ResponsePhase.TIMED_OUT
        else:
            target = ResponsePhase.CANCELLED
        return self._terminate(target, reason)

    def complete(self) -> bool:
        """Claim the clean-completion terminal transition."""
        return self._terminate(ResponsePhase.COMPLETED, CancellationReason.REQUEST_COMPLETED)

    def fail(self, error: BaseException) -> bool:
        """Claim the error terminal transition."""
        if self.phase != ResponsePhase.ACTIVE:
            return False
        self.error = error
        return self._terminate(ResponsePhase.ERRORED, CancellationReason.UPSTREAM_ERROR)

    def _terminate(self, target: ResponsePhase, reason: CancellationReason) -> bool:
        if self.phase != ResponsePhase.ACTIVE:
            logger.debug(
                f"Request {self.request_id}: {target.value} ignored, "
                f"phase is {self.phase.value}"
            )
            return False

        # Check-and-set: nothing below may await before the phase is written
        self.phase = target
        self.termination_reason = reason
        self._disarm_timer()

        handlers, self.cancel_handlers = self.cancel_handlers, []
        for handler in handlers:
            try:
                handler(reason)
            except Exception as e:
                logger.error(
                    f"Request {self.request_id}: cancel handler failed ({reason.value}): {e}",
                    exc_info=True,
                )

        logger.debug(f"Request {self.request_id}: response {target.value} ({reason.value})")
        return True

    # Timer

    def on_timeout(self):
        """Request timer expiry."""
        self.timeout_handle = None

        if not self.cancel_all(CancellationReason.REQUEST_TIMEOUT):
            # Resolved through another path first
            logger.debug(f"Request {self.request_id}: timer fired after response was resolved")
            return

        logger.warning(
            f"Request {self.request_id}: timed out after {self.timeout_ms}ms "
            f"(streaming={self.streaming}, headers_sent={self.sink.headers_sent})"
        )
        self._timeout_task = asyncio.get_running_loop().create_task(self._deliver_timeout())

    async def _deliver_timeout(self):
        await self.finalize(
            "timeout",
            408,
            timeout_envelope(self.request_id, self.timeout_ms, self.streaming),
        )
        self.force_close_if_unhealthy()

    def _disarm_timer(self):
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None

    async def close(self):
        """Disarm the timer and wait for a pending timeout response."""
        self._disarm_timer()
        if self._timeout_task is not None:
            await self._timeout_task

    # Writes

    async def start_stream(self, headers: Optional[Dict[str, str]] = None) -> bool:
        """Send streaming headers, if still active and not yet sent."""
        if self.phase != ResponsePhase.ACTIVE or self.sink.headers_sent:
            return False
        await self.sink.write_header(200, headers or SSE_HEADERS)
        return True

    async def write(self, data: bytes) -> bool:
        """
        Write a streaming body chunk.

        Returns:
            False (dropping the data) once the response is terminal
        """
        if self.phase != ResponsePhase.ACTIVE or not self.sink.writable:
            return False
        try:
            await self.sink.write_chunk(data)
        except Exception as e:
            logger.warning(f"Request {self.request_id}: client write failed, cancelling: {e}")
            self.cancel_all(CancellationReason.CLIENT_DISCONNECTED)
            self.force_close_if_unhealthy()
            return False
        return True

    async def finish_stream(self, trailer: bytes) -> bool:
        """Write the stream trailer and end the response; only after complete()."""
        if self.phase != ResponsePhase.COMPLETED or self.sink.ended:
            logger.debug(
                f"Request {self.request_id}: not finishing stream, state={self.snapshot()}"
            )
            return False

        try:
            if not self.sink.headers_sent:
                await self.sink.write_header(200, SSE_HEADERS)
            await self.sink.end(trailer)
        except Exception as e:
            self._report_write_failure("stream trailer", e)
            return False
        return True

    async def finalize(self, kind: str, status: int, payload: Dict[str, Any]) -> bool:
        """
        Write a complete JSON response (success, timeout or error body).

        A no-op when headers were already sent or the response has ended;
        the client connection may be closing on its own.

        Returns:
            True if the body was written
        """
        if self.sink.headers_sent or self.sink.ended:
            logger.debug(
                f"Request {self.request_id}: skipping {kind} response, state={self.snapshot()}"
            )
            return False

        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        try:
            await self.sink.write_header(status, {
                "Content-Type": "application/json",
                "Content-Length": str(len(body)),
            })
            await self.sink.end(body)
        except Exception as e:
            self._report_write_failure(f"{kind} response", e)
            return False

        logger.debug(f"Request {self.request_id}: wrote {kind} response ({status})")
        return True

    def force_close_if_unhealthy(self) -> bool:
        """Abort the connection if a non-clean terminal left a half-sent response."""
        if not self.is_terminal or self.phase == ResponsePhase.COMPLETED:
            return False

        if self.sink.headers_sent and not self.sink.ended:
            logger.warning(
                f"Request {self.request_id}: closing half-sent response after "
                f"{self.phase.value}"
            )
            self.sink.abort()
            return True
        return False

    def _report_write_failure(self, what: str, error: Exception):
        failure = FinalizeWriteError(f"Failed to write {what}: {error}")
        logger.error(
            f"Request {self.request_id}: {failure} state={self.snapshot()}",
            exc_info=error,
        )
        self.sink.abort()
