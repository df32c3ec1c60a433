"""
Upstream client for the LLM aggregation API.

Issues unary and streaming chat calls; no translation happens here.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from .errors import RelayTimeoutError, UpstreamHTTPError, UpstreamStreamError
from .models import UpstreamPayload

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 30


class UpstreamClient:
    """Executes chat calls against the upstream API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize upstream client.

        Args:
            base_url: Upstream API root, e.g. https://host/api/v1/studio
            api_key: Bearer token for the upstream
            session: Shared session; a short-lived one is opened per call if omitted
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session

    def _headers(self, streaming: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if streaming:
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
        return headers

    @staticmethod
    def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
        sanitized = dict(headers)
        if "Authorization" in sanitized:
            sanitized["Authorization"] = "Bearer [REDACTED]"
        return sanitized

    @asynccontextmanager
    async def _session_scope(self):
        if self.session is not None:
            yield self.session
            return
        async with aiohttp.ClientSession() as session:
            yield session

    async def chat(
        self,
        payload: UpstreamPayload,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Execute a unary chat call.

        Args:
            payload: Translated upstream payload
            timeout_seconds: Total time allowed for the call

        Returns:
            Response data dict with output, promptTokens, completionTokens
        """
        url = f"{self.base_url}/chat"
        headers = self._headers()
        start = time.monotonic()

        logger.debug(f"Upstream request POST {url} headers={self.sanitize_headers(headers)}")

        try:
            async with self._session_scope() as session:
                async with session.post(
                    url,
                    headers=headers,
                    json=payload.model_dump(exclude_none=True),
                    timeout=aiohttp.ClientTimeout(total=timeout_seconds),
                ) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        logger.warning(f"Upstream /chat returned {resp.status}: {text[:500]}")
                        raise UpstreamHTTPError(resp.status, text)

                    try:
                        data = await resp.json(content_type=None)
                    except ValueError as e:
                        raise UpstreamStreamError(f"Unexpected upstream /chat body: {e}") from e

        except asyncio.TimeoutError as e:
            raise RelayTimeoutError(f"Upstream /chat timed out after {timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise UpstreamStreamError(f"Upstream /chat transport error: {e}") from e

        logger.info(
            f"Upstream POST /chat completed in {(time.monotonic() - start) * 1000:.0f}ms"
        )
        if not isinstance(data, dict):
            raise UpstreamStreamError(f"Unexpected upstream /chat body: {type(data).__name__}")

        return {
            "output": data.get("output"),
            "promptTokens": data.get("promptTokens"),
            "completionTokens": data.get("completionTokens"),
        }

    async def stream_chat(self, payload: UpstreamPayload) -> AsyncIterator[bytes]:
        """
        Open a streaming chat call and yield raw body chunks as they arrive.

        Chunk boundaries are arbitrary. HTTP errors before the body starts
        raise UpstreamHTTPError; transport errors while reading propagate
        unchanged so the relay can decide what they mean. Closing the
        generator closes the connection.
        """
        url = f"{self.base_url}/streamChat"
        headers = self._headers(streaming=True)
        start = time.monotonic()
        received = 0

        logger.debug(f"Upstream request POST {url} headers={self.sanitize_headers(headers)}")

        async with self._session_scope() as session:
            async with session.post(
                url,
                headers=headers,
                json=payload.model_dump(exclude_none=True),
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT_SECONDS),
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    logger.warning(f"Upstream /streamChat returned {resp.status}: {text[:500]}")
                    raise UpstreamHTTPError(resp.status, text)

                try:
                    async for chunk in resp.content.iter_any():
                        if not chunk:
                            continue
                        received += len(chunk)
                        yield chunk
                finally:
                    logger.info(
                        f"Upstream POST /streamChat closed after "
                        f"{(time.monotonic() - start) * 1000:.0f}ms ({received} bytes)"
                    )

    async def get_status(self, timeout_seconds: float = 5.0) -> Dict[str, Any]:
        """Query the upstream status endpoint."""
        async with self._session_scope() as session:
            async with session.get(
                f"{self.base_url}/get-status",
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=timeout_seconds),
            ) as resp:
                if resp.status >= 400:
                    raise UpstreamHTTPError(resp.status, await resp.text())
                return await resp.json(content_type=None)
