#!/usr/bin/env python3
"""
Tests for ResponseStream: pull, collect, cancellation and resource release.
"""

import asyncio
import json

import httpx
import pytest

from ollama_stream.llm.exceptions import MalformedResponseError, UnreachableError
from ollama_stream.llm.streaming.models import EndpointFamily, StreamChunkType
from ollama_stream.llm.streaming.stream import ResponseStream


def generate_line(text: str, done: bool = False, **extra) -> bytes:
    record = {"model": "llama3", "response": text, "done": done, **extra}
    return json.dumps(record).encode() + b"\n"


class TrackedSource:
    """Byte source that records how much was pulled and whether it was closed."""

    def __init__(self, lines: list[bytes], fail_after: int | None = None):
        self.lines = lines
        self.fail_after = fail_after
        self.pulled = 0
        self.finalized = False
        self._iterator = None

    async def _iterate(self):
        try:
            for index, line in enumerate(self.lines):
                if self.fail_after is not None and index == self.fail_after:
                    raise httpx.RemoteProtocolError("peer closed connection")
                self.pulled += 1
                yield line
        finally:
            self.finalized = True

    def __aiter__(self):
        self._iterator = self._iterate()
        return self._iterator

    async def aclose(self):
        if self._iterator is not None:
            await self._iterator.aclose()


def numbered_stream(count: int) -> list[bytes]:
    lines = [generate_line(str(i)) for i in range(1, count)]
    lines.append(generate_line(str(count), done=True, eval_count=count,
                               eval_duration=1_000_000_000))
    return lines


class TestPulling:
    """next_chunk / async iteration semantics."""

    @pytest.mark.asyncio
    async def test_pull_until_exhausted(self):
        stream = ResponseStream(TrackedSource(numbered_stream(3)), EndpointFamily.GENERATE)
        responses = []
        while (chunk := await stream.next_chunk()) is not None:
            responses.append(chunk.response)
        assert responses == ["1", "2", "3"]
        assert await stream.next_chunk() is None
        assert stream.closed is True

    @pytest.mark.asyncio
    async def test_async_iteration_is_single_pass(self):
        stream = ResponseStream(TrackedSource(numbered_stream(2)), EndpointFamily.GENERATE)
        first = [chunk.response async for chunk in stream]
        second = [chunk.response async for chunk in stream]
        assert first == ["1", "2"]
        assert second == []

    @pytest.mark.asyncio
    async def test_released_on_terminal_chunk(self):
        source = TrackedSource(numbered_stream(2))
        closed = []

        async def on_close():
            closed.append(True)

        stream = ResponseStream(source, EndpointFamily.GENERATE, on_close=on_close)
        await stream.next_chunk()
        assert not closed
        terminal = await stream.next_chunk()
        assert terminal.done is True
        assert closed == [True]
        assert source.finalized is True

    @pytest.mark.asyncio
    async def test_deltas_side_channel(self):
        stream = ResponseStream(TrackedSource(numbered_stream(3)), EndpointFamily.GENERATE)
        deltas = [delta async for delta in stream.deltas()]
        assert [d.accumulated_content for d in deltas] == ["1", "12", "123"]
        assert deltas[-1].done is True
        assert deltas[0].chunk_type is StreamChunkType.CONTENT


class TestCollect:
    """Draining into an aggregate."""

    @pytest.mark.asyncio
    async def test_collect_includes_already_pulled_chunks(self):
        stream = ResponseStream(TrackedSource(numbered_stream(4)), EndpointFamily.GENERATE)
        await stream.next_chunk()
        result = await stream.collect()
        assert result.content == "1234"
        assert result.eval_count == 4
        assert result.tokens_per_second == 4.0

    @pytest.mark.asyncio
    async def test_collect_empty_stream(self):
        stream = ResponseStream(TrackedSource([]), EndpointFamily.GENERATE)
        result = await stream.collect()
        assert result.content == ""
        assert result.statistics is None

    @pytest.mark.asyncio
    async def test_collect_truncated_stream_with_required_terminal(self):
        source = TrackedSource([generate_line("a"), generate_line("b")])
        stream = ResponseStream(source, EndpointFamily.GENERATE, require_terminal=True)
        with pytest.raises(MalformedResponseError):
            await stream.collect()


class TestErrors:
    """Errors surface at the failing pull and stick."""

    @pytest.mark.asyncio
    async def test_invalid_line_at_k(self):
        lines = numbered_stream(6)
        lines[3] = b"{broken\n"  # line k = 4
        stream = ResponseStream(TrackedSource(lines), EndpointFamily.GENERATE)

        observed = [await stream.next_chunk() for _ in range(3)]
        assert [c.response for c in observed] == ["1", "2", "3"]

        with pytest.raises(MalformedResponseError) as first:
            await stream.next_chunk()
        assert first.value.line_number == 4

        with pytest.raises(MalformedResponseError) as second:
            await stream.next_chunk()
        assert second.value is first.value

        with pytest.raises(MalformedResponseError) as third:
            await stream.collect()
        assert third.value is first.value
        assert stream.error is first.value

    @pytest.mark.asyncio
    async def test_transport_error_mid_stream(self):
        source = TrackedSource(numbered_stream(5), fail_after=2)
        stream = ResponseStream(source, EndpointFamily.GENERATE, model="llama3")
        assert (await stream.next_chunk()).response == "1"
        assert (await stream.next_chunk()).response == "2"
        with pytest.raises(UnreachableError) as exc_info:
            await stream.next_chunk()
        assert exc_info.value.retryable is True
        assert stream.closed is True


class TestCancellation:
    """Dropping a stream early."""

    @pytest.mark.asyncio
    async def test_close_after_first_of_hundred(self):
        source = TrackedSource(numbered_stream(100))
        closed = []

        async def on_close():
            closed.append(True)

        stream = ResponseStream(source, EndpointFamily.GENERATE, on_close=on_close)
        first = await stream.next_chunk()
        assert first.response == "1"
        await stream.aclose()

        assert source.pulled == 1
        assert source.finalized is True
        assert closed == [True]
        assert await stream.next_chunk() is None

    @pytest.mark.asyncio
    async def test_close_from_another_task_while_pull_waits(self):
        waiting = asyncio.Event()
        finalized = []
        closed = []

        async def stalled_source():
            try:
                yield generate_line("a")
                waiting.set()
                await asyncio.Event().wait()
                yield generate_line("b", done=True)
            finally:
                finalized.append(True)

        async def on_close():
            closed.append(True)

        stream = ResponseStream(
            stalled_source(), EndpointFamily.GENERATE, on_close=on_close
        )
        assert (await stream.next_chunk()).response == "a"

        pull = asyncio.create_task(stream.next_chunk())
        await waiting.wait()
        await stream.aclose()

        assert await pull is None
        assert stream.closed is True
        assert finalized == [True]
        assert closed == [True]
        assert stream.result().content == "a"

    @pytest.mark.asyncio
    async def test_cancelled_pull_releases_stream(self):
        waiting = asyncio.Event()
        closed = []

        async def stalled_source():
            yield generate_line("a")
            waiting.set()
            await asyncio.Event().wait()

        async def on_close():
            closed.append(True)

        stream = ResponseStream(
            stalled_source(), EndpointFamily.GENERATE, on_close=on_close
        )
        pull = asyncio.create_task(stream.collect())
        await waiting.wait()
        pull.cancel()

        with pytest.raises(asyncio.CancelledError):
            await pull
        assert stream.closed is True
        assert closed == [True]
        assert await stream.next_chunk() is None

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        source = TrackedSource(numbered_stream(10))
        async with ResponseStream(source, EndpointFamily.GENERATE) as stream:
            await stream.next_chunk()
        assert stream.closed is True
        assert source.pulled == 1

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        closed = []

        async def on_close():
            closed.append(True)

        stream = ResponseStream(
            TrackedSource(numbered_stream(3)), EndpointFamily.GENERATE, on_close=on_close
        )
        await stream.aclose()
        await stream.aclose()
        assert closed == [True]


class TestConcurrency:
    """Independent streams share no state."""

    @pytest.mark.asyncio
    async def test_concurrent_streams(self):
        async def slow_source(prefix: str):
            for i in range(5):
                await asyncio.sleep(0)
                yield generate_line(f"{prefix}{i}", done=(i == 4))

        streams = [
            ResponseStream(slow_source(prefix), EndpointFamily.GENERATE)
            for prefix in ("a", "b", "c")
        ]
        results = await asyncio.gather(*(stream.collect() for stream in streams))
        assert [r.content for r in results] == [
            "a0a1a2a3a4", "b0b1b2b3b4", "c0c1c2c3c4"
        ]


class TestFromResponse:
    """Binding to an httpx streaming response."""

    @pytest.mark.asyncio
    async def test_from_httpx_response(self):
        body = b"".join(numbered_stream(3))

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            request = client.build_request("POST", "http://test/api/generate")
            response = await client.send(request, stream=True)
            stream = ResponseStream.from_response(response, EndpointFamily.GENERATE)
            result = await stream.collect()
            assert result.content == "123"
            assert response.is_closed
