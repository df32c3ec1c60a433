"""
Main chat gateway.

Coordinates model routing, translation, the upstream client, the streaming
relay and the response coordinator for each request.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import aiohttp

from .errors import GatewayError, RelayCancelled, UpstreamHTTPError, UpstreamStreamError, error_envelope
from .models import (
    ApiKeyMode,
    ChatRequest,
    ClientStreamChunk,
    GatewayConfig,
    GatewayStats,
    HealthCheck,
    ResponsePhase,
)
from .response_coordinator import ResponseCoordinator, ResponseSink
from .router import ModelRouter
from .stream_relay import StreamRelay
from .translator import SSE_DONE, final_chunk, format_sse, from_upstream_unary, to_upstream_payload
from .upstream_client import UpstreamClient

logger = logging.getLogger(__name__)


class ChatGateway:
    """
    Relays OpenAI-style chat requests to the upstream.

    `process` is the supervisor boundary for one request: whatever happens
    inside it is caught there and resolved through that request's
    coordinator, independently of every other in-flight request.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client_factory: Optional[Callable[[str], UpstreamClient]] = None,
    ):
        """
        Initialize gateway.

        Args:
            config: Gateway configuration
            client_factory: Builds an upstream client for an API key
        """
        self.config = config or GatewayConfig()
        self.router = ModelRouter(self.config)
        self.client_factory = client_factory or self._default_client

        # Shared upstream connection pool, opened by start()
        self.session: Optional[aiohttp.ClientSession] = None

        # State
        self.is_running = False
        self.start_time: Optional[datetime] = None

        # Statistics
        self.stats = GatewayStats()

    async def start(self):
        """Start gateway."""
        if self.is_running:
            return

        logger.info(f"Starting chat gateway (upstream: {self.config.upstream_base_url})")
        self.session = aiohttp.ClientSession()
        self.is_running = True
        self.start_time = datetime.utcnow()

    async def stop(self):
        """Stop gateway."""
        if not self.is_running:
            return

        logger.info("Stopping chat gateway...")
        self.is_running = False

        if self.session:
            await self.session.close()
            self.session = None

        logger.info("Chat gateway stopped")

    def _default_client(self, api_key: str) -> UpstreamClient:
        return UpstreamClient(self.config.upstream_base_url, api_key, session=self.session)

    def resolve_api_key(self, bearer_token: Optional[str]) -> Optional[str]:
        """Pick the upstream API key for a caller."""
        if self.config.api_key_mode == ApiKeyMode.OVERRIDE:
            return self.config.override_api_key
        return bearer_token or None

    def create_coordinator(
        self,
        sink: ResponseSink,
        request: ChatRequest,
        request_id: str,
    ) -> ResponseCoordinator:
        """Create the coordinator owning one request's response."""
        return ResponseCoordinator(
            sink,
            request_id,
            timeout_ms=self.config.timeout_ms_for(request.stream),
            streaming=request.stream,
        )

    async def process(
        self,
        request: ChatRequest,
        coordinator: ResponseCoordinator,
        api_key: str,
    ):
        """
        Handle one chat request end to end.

        Never raises for request-level failures: they become that request's
        error response.
        """
        request_id = coordinator.request_id
        started = time.monotonic()

        self.stats.total_requests += 1
        self.stats.active_requests += 1
        if request.stream:
            self.stats.streaming_requests += 1

        logger.info(
            f"Chat request {request_id}: model={request.model} stream={request.stream} "
            f"messages={len(request.messages)}"
        )

        try:
            if not coordinator.activate():
                logger.info(f"Request {request_id} resolved before processing started")
                return

            if not self.router.is_known(request.model):
                self.stats.fallback_bindings += 1
            binding = self.router.resolve(request.model)
            payload = to_upstream_payload(request, binding, self.config.default_temperature)
            client = self.client_factory(api_key)

            if request.stream:
                await self._relay_stream(request, payload, client, coordinator)
            else:
                await self._relay_unary(request, payload, client, coordinator)

            if not coordinator.is_terminal:
                raise GatewayError("Request finished without a response")

        except Exception as e:
            logger.error(f"Error processing request {request_id}: {e}", exc_info=True)
            await self._fail(coordinator, e)

        finally:
            await coordinator.close()
            self.stats.active_requests -= 1
            self._record_outcome(coordinator)

            logger.info(
                f"Chat request {request_id} {coordinator.phase.value} "
                f"in {(time.monotonic() - started) * 1000:.0f}ms"
            )

    async def _relay_stream(
        self,
        request: ChatRequest,
        payload,
        client: UpstreamClient,
        coordinator: ResponseCoordinator,
    ):
        """Streaming path: relay upstream records as SSE events."""
        relay = StreamRelay(
            coordinator.request_id,
            request.model,
            prompt_text=request.prompt_text(),
            timeout_seconds=self.config.relay_timeout_seconds_for(True),
        )
        coordinator.register_cancel_handler(relay.cancel)

        async def emit(chunk: ClientStreamChunk):
            # Headers go out with the first chunk so early upstream failures can still be a 502
            if not coordinator.headers_sent:
                await coordinator.start_stream()
            await coordinator.write(format_sse(chunk))

        try:
            result = await relay.run(client.stream_chat(payload), emit)
        except RelayCancelled:
            logger.debug(f"Request {coordinator.request_id}: relay stopped, response already resolved")
            return
        except UpstreamStreamError as e:
            logger.warning(f"Request {coordinator.request_id}: stream failed: {e}")
            await self._fail(coordinator, e)
            return
        finally:
            self.stats.discarded_lines += relay.discarded_lines

        if result.usage.estimated:
            self.stats.estimated_usage_responses += 1

        if not coordinator.complete():
            logger.info(f"Request {coordinator.request_id}: stream finished after response was resolved")
            return

        trailer = format_sse(final_chunk(relay.completion_id, request.model, result.usage)) + SSE_DONE
        await coordinator.finish_stream(trailer)

        logger.info(
            f"Request {coordinator.request_id}: streamed {result.chunk_count} chunks, "
            f"{len(result.aggregated_output)} chars"
        )

    async def _relay_unary(
        self,
        request: ChatRequest,
        payload,
        client: UpstreamClient,
        coordinator: ResponseCoordinator,
    ):
        """Non-streaming path: one upstream call, one JSON body."""
        call = asyncio.ensure_future(
            client.chat(payload, timeout_seconds=self.config.relay_timeout_seconds_for(False))
        )
        coordinator.register_cancel_handler(lambda reason: call.cancel())

        try:
            await asyncio.wait({call})
        finally:
            if not call.done():
                call.cancel()

        if call.cancelled():
            logger.debug(f"Request {coordinator.request_id}: upstream call cancelled, response already resolved")
            return

        error = call.exception()
        if isinstance(error, GatewayError):
            logger.warning(f"Request {coordinator.request_id}: upstream call failed: {error}")
            await self._fail(coordinator, error)
            return
        if error is not None:
            raise error

        completion = from_upstream_unary(call.result(), request.model)

        if not coordinator.complete():
            logger.info(f"Request {coordinator.request_id}: upstream answered after response was resolved")
            return

        await coordinator.finalize("success", 200, completion.model_dump(mode="json"))

    async def _fail(self, coordinator: ResponseCoordinator, error: BaseException):
        """Resolve a request with an error response, if nothing else resolved it."""
        if not coordinator.fail(error):
            logger.debug(f"Request {coordinator.request_id}: error after response was resolved: {error}")
            return

        if isinstance(error, GatewayError):
            status = error.status_code
            extra: Dict[str, Any] = {"streaming": coordinator.streaming}
            if isinstance(error, UpstreamHTTPError):
                extra["upstream_status"] = error.status
            body = error.envelope(request_id=coordinator.request_id, **extra)
        else:
            status = 500
            body = error_envelope(
                "Internal server error",
                request_id=coordinator.request_id,
                streaming=coordinator.streaming,
            )

        await coordinator.finalize("error", status, body)
        coordinator.force_close_if_unhealthy()

    def _record_outcome(self, coordinator: ResponseCoordinator):
        phase = coordinator.phase
        if phase == ResponsePhase.COMPLETED:
            self.stats.completed_requests += 1
        elif phase == ResponsePhase.TIMED_OUT:
            self.stats.timed_out_requests += 1
        elif phase == ResponsePhase.CANCELLED:
            self.stats.cancelled_requests += 1
        elif phase == ResponsePhase.ERRORED:
            self.stats.failed_requests += 1

    async def check_upstream(self, api_key: str) -> bool:
        """Probe the upstream status endpoint."""
        try:
            await self.client_factory(api_key).get_status()
            return True
        except (GatewayError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Upstream status check failed: {e}")
            return False

    def get_stats(self) -> GatewayStats:
        """Get gateway statistics."""
        return self.stats

    def get_health(self, upstream_reachable: Optional[bool] = None) -> HealthCheck:
        """Get health check info."""
        uptime = 0.0
        if self.start_time:
            uptime = (datetime.utcnow() - self.start_time).total_seconds()

        return HealthCheck(
            status="healthy" if self.is_running else "stopped",
            uptime_seconds=uptime,
            active_requests=self.stats.active_requests,
            upstream_base_url=self.config.upstream_base_url,
            upstream_reachable=upstream_reachable,
        )
