"""
Streaming relay for upstream incremental responses.

Reassembles line-delimited JSON records from arbitrarily split byte chunks,
detects the upstream's end-of-stream sentinel and emits OpenAI stream chunks
in arrival order.
"""

import asyncio
import codecs
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import aiohttp
from pydantic import ValidationError

from .errors import (
    DecodeError,
    IncompleteStream,
    RelayCancelled,
    RelayTimeoutError,
    UpstreamStreamError,
)
from .models import CancellationReason, ClientStreamChunk, RelayResult, UpstreamRecord, UsageStats
from .translator import estimate_usage, generate_completion_id, to_client_chunk

logger = logging.getLogger(__name__)

ChunkEmitter = Callable[[ClientStreamChunk], Awaitable[None]]

# Transport failures while reading the upstream body
TRANSPORT_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)


def decode_record(line: str) -> UpstreamRecord:
    """
    Decode one complete upstream line.

    Raises:
        DecodeError: If the line is not a JSON object with a valid record shape
    """
    try:
        data = json.loads(line)
    except ValueError as e:
        raise DecodeError(f"Invalid JSON: {e}", line) from e

    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object, got {type(data).__name__}", line)

    try:
        return UpstreamRecord.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"Invalid record: {e.errors()[0]['msg']}", line) from e


class StreamAccumulator:
    """Per-request carryover state between byte chunks."""

    def __init__(self):
        self.partial_line = ""
        self.terminated = False
        self._parts: List[str] = []
        # Multi-byte characters may be split across chunks
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def aggregated_output(self) -> str:
        return "".join(self._parts)

    @property
    def has_output(self) -> bool:
        return any(self._parts)

    def append_output(self, text: str):
        self._parts.append(text)

    def push(self, data: bytes) -> List[str]:
        """Add bytes and return the lines completed by them."""
        text = self.partial_line + self._decoder.decode(data)
        lines = text.split("\n")
        self.partial_line = lines.pop()
        return lines

    def drain(self) -> List[str]:
        """Return whatever is left once the input has ended."""
        text = self.partial_line + self._decoder.decode(b"", final=True)
        self.partial_line = ""
        return [text] if text.strip() else []


class StreamRelay:
    """
    Relays one upstream stream to the client.

    `feed`/`close_input`/`finish` are the synchronous core and do no I/O;
    `run` drives them from the upstream chunk iterator with a relay-local
    timeout and cooperative cancellation.
    """

    def __init__(
        self,
        request_id: str,
        model: str,
        completion_id: Optional[str] = None,
        prompt_text: str = "",
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize relay.

        Args:
            request_id: Request ID for logging
            model: Client-facing model name put on emitted chunks
            completion_id: Shared id for all chunks of this completion
            prompt_text: Prompt text, used only for usage estimates
            timeout_seconds: Relay-local bound on the whole upstream call
        """
        self.request_id = request_id
        self.model = model
        self.completion_id = completion_id or generate_completion_id()
        self.prompt_text = prompt_text
        self.timeout_seconds = timeout_seconds

        self.accumulator = StreamAccumulator()
        self.sequence_index = 0
        self.discarded_lines = 0
        self.result: Optional[RelayResult] = None

        self.cancel_reason: Optional[CancellationReason] = None
        self._cancel_event = asyncio.Event()

    @property
    def terminated(self) -> bool:
        return self.accumulator.terminated

    # Synchronous core

    def feed(self, data: bytes) -> List[ClientStreamChunk]:
        """Process one byte chunk and return the client chunks it completes."""
        if self.accumulator.terminated:
            return []

        chunks = []
        for line in self.accumulator.push(data):
            chunk = self._process_line(line)
            if chunk is not None:
                chunks.append(chunk)
            if self.accumulator.terminated:
                # Anything after the sentinel is discarded
                break
        return chunks

    def close_input(self) -> List[ClientStreamChunk]:
        """Process a trailing line left without a newline when the input ends."""
        if self.accumulator.terminated:
            return []

        chunks = []
        for line in self.accumulator.drain():
            chunk = self._process_line(line)
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def finish(self) -> RelayResult:
        """
        Resolve the relay once the input has ended.

        Raises:
            IncompleteStream: If no sentinel and no output were received
        """
        if self.result is not None:
            return self.result

        if not self.accumulator.has_output:
            raise IncompleteStream("Upstream closed the stream without output or end-of-stream marker")

        output = self.accumulator.aggregated_output
        logger.warning(
            f"Request {self.request_id}: upstream closed without end-of-stream marker, "
            f"using estimated usage ({len(output)} chars)"
        )
        self.result = RelayResult(
            aggregated_output=output,
            usage=estimate_usage(output, self.prompt_text),
            chunk_count=self.sequence_index,
            discarded_lines=self.discarded_lines,
            terminated_by_sentinel=False,
        )
        return self.result

    def _process_line(self, line: str) -> Optional[ClientStreamChunk]:
        line = line.strip()
        if not line:
            return None

        try:
            record = decode_record(line)
        except DecodeError as e:
            self.discarded_lines += 1
            logger.warning(f"Request {self.request_id}: discarding upstream line: {e} ({line[:100]!r})")
            return None

        if record.is_sentinel:
            self._terminate(record)
            return None

        chunk = to_client_chunk(record, self.sequence_index, self.completion_id, self.model)
        if chunk is None:
            return None  # Heartbeat

        self.accumulator.append_output(record.output)
        self.sequence_index += 1
        return chunk

    def _terminate(self, record: UpstreamRecord):
        self.accumulator.terminated = True
        output = self.accumulator.aggregated_output

        if record.has_usage:
            usage = UsageStats.from_counts(record.prompt_tokens, record.completion_tokens)
        else:
            usage = estimate_usage(output, self.prompt_text)
            logger.info(f"Request {self.request_id}: upstream sent no token counts, usage is estimated")

        self.result = RelayResult(
            aggregated_output=output,
            usage=usage,
            chunk_count=self.sequence_index,
            discarded_lines=self.discarded_lines,
            terminated_by_sentinel=True,
        )
        logger.debug(
            f"Request {self.request_id}: end-of-stream after {self.sequence_index} chunks"
        )

    # Async driver

    def cancel(self, reason: CancellationReason):
        """
        Cancel handler for the response coordinator.

        Idempotent and never raises; stops emission and makes `run` fail with
        RelayCancelled unless it already finished.
        """
        if self.cancel_reason is not None:
            return
        self.cancel_reason = reason
        self._cancel_event.set()

        if reason != CancellationReason.REQUEST_COMPLETED:
            logger.info(f"Request {self.request_id}: relay cancelled ({reason.value})")

    async def run(self, chunks: AsyncIterator[bytes], emit: ChunkEmitter) -> RelayResult:
        """
        Relay the upstream chunk iterator to `emit`.

        Args:
            chunks: Raw upstream body chunks
            emit: Awaited once per client chunk, in order

        Returns:
            RelayResult

        Raises:
            IncompleteStream: Connection closed with no sentinel and no output
            RelayTimeoutError: The relay-local timeout expired
            RelayCancelled: The coordinator cancelled this response
            UpstreamStreamError: Transport failure before termination
        """
        if self.cancel_reason is not None:
            await self._close_source(chunks)
            raise RelayCancelled(self.cancel_reason.value)

        consume = asyncio.ensure_future(self._consume(chunks, emit))
        stop = asyncio.ensure_future(self._cancel_event.wait())

        try:
            done, _ = await asyncio.wait(
                {consume, stop},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (consume, stop):
                if not task.done():
                    task.cancel()
            # Let the consumer close the upstream connection
            await asyncio.gather(consume, stop, return_exceptions=True)

        if consume in done:
            return consume.result()

        if stop in done:
            raise RelayCancelled(self.cancel_reason.value)

        logger.warning(
            f"Request {self.request_id}: relay timeout after {self.timeout_seconds}s, aborting upstream"
        )
        raise RelayTimeoutError(f"Upstream stream did not finish within {self.timeout_seconds}s")

    async def _consume(self, chunks: AsyncIterator[bytes], emit: ChunkEmitter) -> RelayResult:
        try:
            async for data in chunks:
                for chunk in self.feed(data):
                    if self.cancel_reason is not None:
                        raise RelayCancelled(self.cancel_reason.value)
                    await emit(chunk)
                if self.accumulator.terminated:
                    break
            else:
                for chunk in self.close_input():
                    await emit(chunk)

        except TRANSPORT_ERRORS as e:
            if not self.accumulator.terminated:
                raise UpstreamStreamError(f"Upstream stream failed: {e}") from e
            logger.debug(f"Request {self.request_id}: ignoring transport error after end-of-stream: {e}")

        finally:
            await self._close_source(chunks)

        return self.finish()

    async def _close_source(self, chunks: AsyncIterator[bytes]):
        aclose = getattr(chunks, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Request {self.request_id}: error closing upstream stream: {e}")
