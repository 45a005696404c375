"""
Caller-facing, single-pass, cancellable view over one streamed response.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
import structlog

from ..exceptions import OllamaError
from .models import AggregateResult, EndpointFamily, RawChunk, StreamDelta
from .parser import ChunkAggregator, ChunkDecoder

logger = structlog.get_logger(__name__)


def _cancelling() -> int:
    """Pending cancel requests against the current task."""
    task = asyncio.current_task()
    return task.cancelling() if task is not None else 0


class ResponseStream:
    """
    Lazy chunk sequence for one logical request.

    Pull with ``next_chunk()`` or ``async for``; watch per-chunk deltas with
    ``deltas()``; drain with ``collect()``; drop early with ``aclose()``.

    The stream is single pass. Once exhausted every pull returns None; once
    failed every pull and ``collect()`` re-raise the same error instance.
    The byte source is released as soon as the terminal chunk is seen, an
    error occurs, or the stream is closed.
    """

    def __init__(
        self,
        source: AsyncIterable[bytes],
        family: EndpointFamily,
        *,
        require_terminal: bool = False,
        on_close: Callable[[], Awaitable[Any]] | None = None,
        model: str | None = None,
    ):
        self.family = family
        self.model = model
        self.decoder = ChunkDecoder(
            family, require_terminal=require_terminal, model=model
        )
        self.aggregator = ChunkAggregator(family)
        self._source = source
        self._chunks = self.decoder.decode(source)
        self._on_close = on_close
        self._error: OllamaError | None = None
        self._exhausted = False
        self._closed = False
        self._last_delta: StreamDelta | None = None
        self._pending: asyncio.Task[RawChunk | None] | None = None
        self._opened_at = time.perf_counter()
        self._log = logger.bind(family=family.value, model=model)
        self._log.debug("Stream opened")

    @classmethod
    def from_response(
        cls, response: httpx.Response, family: EndpointFamily, **kwargs: Any
    ) -> ResponseStream:
        """Bind to an httpx streaming response; closing the stream closes it."""
        return cls(
            response.aiter_bytes(), family, on_close=response.aclose, **kwargs
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> OllamaError | None:
        return self._error

    async def next_chunk(self) -> RawChunk | None:
        """
        Pull the next chunk.

        Returns:
            The next chunk, or None once the sequence has ended

        Raises:
            OllamaError: The classified failure (the same instance on every
                later pull)
        """
        if self._error is not None:
            raise self._error
        if self._exhausted:
            return None

        # The pull runs as a task so aclose() from another task can cancel it
        self._pending = asyncio.create_task(self._pull())
        try:
            chunk = await self._pending
            if chunk is None:
                await self._finish()
                return None
            delta = self.aggregator.process_chunk(chunk)
        except asyncio.CancelledError:
            if self._closed and not _cancelling():
                return None
            self._exhausted = True
            await self._release()
            raise
        except OllamaError as e:
            await self._fail(e)
            raise
        finally:
            self._pending = None

        self._last_delta = delta
        if delta.index == 0:
            self._log.debug(
                "First chunk received",
                latency_ms=round((time.perf_counter() - self._opened_at) * 1000, 2),
            )
        if chunk.done:
            await self._finish()
        return chunk

    async def _pull(self) -> RawChunk | None:
        try:
            return await anext(self._chunks)
        except StopAsyncIteration:
            return None

    def __aiter__(self) -> ResponseStream:
        return self

    async def __anext__(self) -> RawChunk:
        chunk = await self.next_chunk()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def deltas(self) -> AsyncIterator[StreamDelta]:
        """Iterate the aggregator's per-chunk deltas while pulling chunks."""
        while await self.next_chunk() is not None:
            if self._last_delta is not None:
                yield self._last_delta

    async def collect(self) -> AggregateResult:
        """
        Drain the stream and return the aggregate.

        Chunks already pulled are included. Raises the first error instead of
        returning a partial result.
        """
        while await self.next_chunk() is not None:
            pass
        return self.aggregator.result()

    def result(self) -> AggregateResult:
        """Aggregate of the chunks pulled so far."""
        return self.aggregator.result()

    async def _finish(self) -> None:
        self._exhausted = True
        result = self.aggregator.result()
        self._log.info(
            "Stream completed",
            chunks=result.chunk_count,
            done=result.done,
            tokens_per_second=result.tokens_per_second,
        )
        await self._release()

    async def _fail(self, error: OllamaError) -> None:
        self._error = error
        self._exhausted = True
        self._log.warning(
            "Stream failed",
            error_kind=error.kind.value,
            retryable=error.retryable,
            error_message=error.message,
            chunks=self.aggregator.state.chunk_count,
        )
        await self._release()

    async def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait([pending])
        try:
            await self._chunks.aclose()
            source_close = getattr(self._source, "aclose", None)
            if source_close is not None:
                await source_close()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def aclose(self) -> None:
        """Stop the stream without reading the rest of the body."""
        if self._closed:
            return
        if not self._exhausted:
            self._log.debug(
                "Stream closed early", chunks=self.aggregator.state.chunk_count
            )
        self._exhausted = True
        await self._release()

    async def __aenter__(self) -> ResponseStream:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
