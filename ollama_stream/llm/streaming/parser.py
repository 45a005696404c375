"""
Newline-delimited JSON stream decoding and chunk aggregation.

``ChunkDecoder`` turns raw response bytes into validated chunk records;
``ChunkAggregator`` folds those records into one ``AggregateResult``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator, Iterator
from typing import Any

import httpx
from pydantic import ValidationError

from ..classifier import ErrorClassifier
from ..exceptions import MalformedResponseError
from ..models import ChatMessage, MessageRole
from .models import (
    CHUNK_MODELS,
    AccumulatorState,
    AggregateResult,
    ChatChunk,
    EmbedChunk,
    EmbeddingChunk,
    EndpointFamily,
    GenerateChunk,
    ProgressChunk,
    RawChunk,
    StreamChunkType,
    StreamDelta,
)

LINE_TERMINATOR = b"\n"
CARRIAGE_RETURN = b"\r"


class LineBuffer:
    """Unterminated byte suffix carried between reads."""

    def __init__(self) -> None:
        # Reads since the last newline; joined only once a line completes
        self._parts: list[bytes] = []
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    def feed(self, data: bytes) -> list[bytes]:
        """Append bytes and return every line they complete, in order."""
        if LINE_TERMINATOR not in data:
            if data:
                self._parts.append(data)
                self._pending += len(data)
            return []
        head, *lines, tail = data.split(LINE_TERMINATOR)
        lines.insert(0, b"".join([*self._parts, head]))
        self._parts = [tail] if tail else []
        self._pending = len(tail)
        return [line.removesuffix(CARRIAGE_RETURN) for line in lines]

    def flush(self) -> bytes:
        """Return and clear the unterminated tail."""
        tail = b"".join(self._parts)
        self._parts = []
        self._pending = 0
        return tail.removesuffix(CARRIAGE_RETURN)


class ChunkDecoder:
    """
    Decode a newline-delimited JSON byte stream into typed chunks.

    Features:
    - Lines split across reads are reassembled
    - Blank lines skipped, CRLF tolerated
    - Each line validated against the endpoint family's chunk model
    - Stops pulling from the source once the terminal chunk is seen
    - Optional truncation check when the source ends early
    """

    def __init__(
        self,
        family: EndpointFamily,
        *,
        require_terminal: bool = False,
        model: str | None = None,
    ):
        self.family = family
        self.require_terminal = require_terminal
        self.model = model
        self._chunk_model = CHUNK_MODELS[family]
        self._buffer = LineBuffer()
        self._line_number = 0
        self._terminal_seen = False
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            'bytes_received': 0,
            'lines': 0,
            'blank_lines': 0,
            'chunks': 0,
            'error_chunks': 0,
        }

    def _malformed(self, raw: bytes | str, reason: str) -> MalformedResponseError:
        self.stats['error_chunks'] += 1
        return ErrorClassifier.classify_payload(
            raw, reason, line_number=self._line_number, model=self.model
        )

    def decode_line(self, line: bytes) -> RawChunk | None:
        """
        Decode one complete line.

        Returns:
            The validated chunk, or None for a blank line

        Raises:
            MalformedResponseError: Line is not valid UTF-8 JSON of the
                expected shape, or reports an in-band server error
        """
        self._line_number += 1
        self.stats['lines'] += 1
        if not line.strip():
            self.stats['blank_lines'] += 1
            return None

        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise self._malformed(line, f"invalid UTF-8: {e.reason}") from e

        try:
            data: Any = json.loads(text)
        except json.JSONDecodeError as e:
            raise self._malformed(text, f"invalid JSON: {e.msg}") from e

        if not isinstance(data, dict):
            raise self._malformed(text, "expected a JSON object")
        if "error" in data:
            message = ErrorClassifier.error_message(text)
            raise self._malformed(text, f"server reported error: {message}")

        try:
            chunk = self._chunk_model.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(part) for part in err["loc"]) for err in e.errors()
            )
            raise self._malformed(
                text, f"not a valid {self.family.value} chunk ({fields})"
            ) from e

        self.stats['chunks'] += 1
        if chunk.done:
            self._terminal_seen = True
        return chunk

    def feed(self, data: bytes) -> Iterator[RawChunk]:
        """
        Feed one read of bytes, yielding chunks for the lines it completes.

        Chunks are yielded lazily; a bad line raises only once every chunk
        before it has been consumed. Nothing is yielded after the terminal
        chunk.
        """
        if self._terminal_seen:
            return
        self.stats['bytes_received'] += len(data)
        for line in self._buffer.feed(data):
            chunk = self.decode_line(line)
            if chunk is None:
                continue
            yield chunk
            if chunk.done:
                return

    def finish(self) -> Iterator[RawChunk]:
        """
        Signal end of source: decode the unterminated tail, then apply the
        truncation policy.
        """
        if self._terminal_seen:
            return
        tail = self._buffer.flush()
        if tail:
            chunk = self.decode_line(tail)
            if chunk is not None:
                yield chunk
        if self.require_terminal and not self._terminal_seen:
            raise self._malformed(
                tail, "stream ended before the terminal chunk (done=true)"
            )

    async def decode(self, source: AsyncIterable[bytes]) -> AsyncIterator[RawChunk]:
        """
        Decode an async byte source into chunks.

        Transport failures raised by the source are classified; the
        decoder never retries.
        """
        try:
            async for data in source:
                for chunk in self.feed(data):
                    yield chunk
                if self._terminal_seen:
                    return
        except (httpx.TransportError, httpx.StreamError, OSError) as e:
            self.stats['error_chunks'] += 1
            raise ErrorClassifier.classify_transport(e, model=self.model) from e

        for chunk in self.finish():
            yield chunk

    def get_stats(self) -> dict[str, int]:
        """Get decoding statistics for monitoring."""
        return self.stats.copy()

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        self.stats = self._empty_stats()


class ChunkAggregator:
    """
    Fold a chunk sequence into one result, publishing a delta per chunk.

    Content and thinking are concatenated in arrival order, chat tool calls
    appended, and statistics copied from the terminal chunk.
    """

    def __init__(self, family: EndpointFamily):
        self.family = family
        self.reset()

    def reset(self) -> None:
        self.state = AccumulatorState()
        self._terminal: RawChunk | None = None
        self._last: RawChunk | None = None
        self._embeddings: list[list[float]] = []

    @property
    def done(self) -> bool:
        return self._terminal is not None

    def process_chunk(self, chunk: RawChunk) -> StreamDelta:  # noqa: PLR0912
        """
        Fold one chunk into the running state.

        Raises:
            MalformedResponseError: Chunk arrives after the terminal chunk or
                belongs to another endpoint family
        """
        if self._terminal is not None:
            raise ErrorClassifier.classify_payload(
                chunk.model_dump_json(),
                "chunk received after the terminal chunk",
                model=self.state.model or None,
            )
        if not isinstance(chunk, CHUNK_MODELS[self.family]):
            raise ErrorClassifier.classify_payload(
                chunk.model_dump_json(),
                f"{type(chunk).__name__} in a {self.family.value} stream",
                model=self.state.model or None,
            )

        self.state.chunk_count += 1
        index = self.state.chunk_count - 1
        if chunk.model and not self.state.model:
            self.state.model = chunk.model
        self._last = chunk
        if chunk.done:
            self._terminal = chunk

        content: str | None = None
        thinking: str | None = None
        new_tool_calls = []
        chunk_type = StreamChunkType.CONTENT

        if isinstance(chunk, GenerateChunk):
            content = chunk.response
            thinking = chunk.thinking
        elif isinstance(chunk, ChatChunk):
            message = chunk.message
            content = message.content
            thinking = message.thinking
            new_tool_calls = list(message.tool_calls or [])
            if self.state.role is None:
                self.state.role = message.role
            if message.images:
                self.state.images = list(message.images)
        elif isinstance(chunk, EmbedChunk):
            self._embeddings = [list(vector) for vector in chunk.embeddings]
            chunk_type = StreamChunkType.EMBEDDING
        elif isinstance(chunk, EmbeddingChunk):
            self._embeddings = [list(chunk.embedding)]
            chunk_type = StreamChunkType.EMBEDDING
        elif isinstance(chunk, ProgressChunk):
            chunk_type = StreamChunkType.PROGRESS

        if content:
            self.state.content_parts.append(content)
        if thinking:
            self.state.thinking_parts.append(thinking)
        self.state.tool_calls.extend(new_tool_calls)

        if chunk_type is StreamChunkType.CONTENT:
            if new_tool_calls:
                chunk_type = StreamChunkType.TOOL_CALLS
            elif thinking and not content:
                chunk_type = StreamChunkType.THINKING
            elif chunk.done and not content:
                chunk_type = StreamChunkType.COMPLETION

        return StreamDelta(
            chunk_type=chunk_type,
            content=content or None,
            accumulated_content=self.state.content,
            chunk=chunk,
            index=index,
            thinking=thinking or None,
            tool_calls=list(self.state.tool_calls),
            done=chunk.done,
        )

    def result(self) -> AggregateResult:
        """
        Build the aggregate from everything folded so far.

        Without a terminal chunk, ``statistics`` is None and ``done`` False.
        """
        terminal = self._terminal
        message = None
        if self.family is EndpointFamily.CHAT and self.state.chunk_count:
            message = ChatMessage(
                role=self.state.role or MessageRole.ASSISTANT,
                content=self.state.content,
                thinking=self.state.thinking or None,
                images=self.state.images,
                tool_calls=list(self.state.tool_calls) or None,
            )

        return AggregateResult(
            family=self.family,
            model=self.state.model,
            content=self.state.content,
            thinking=self.state.thinking,
            message=message,
            tool_calls=list(self.state.tool_calls),
            context=getattr(terminal, "context", None),
            embeddings=list(self._embeddings),
            statistics=terminal.statistics() if terminal else None,
            done=terminal is not None,
            done_reason=terminal.done_reason if terminal else None,
            created_at=self._last.created_at if self._last else None,
            chunk_count=self.state.chunk_count,
            record=terminal or self._last,
        )
