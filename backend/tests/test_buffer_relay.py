"""Tests for the bounded relay between encoder output and the client."""

from __future__ import annotations

import asyncio

import pytest

from softfmweb.relay import (
    MAX_BUFFER_BYTES,
    BoundedBuffer,
    BufferRelay,
    QueueSink,
    buffer_bytes_for,
)


class ChunkSource:
    """Byte source serving fixed chunks, optionally slowly."""

    def __init__(self, chunks: list[bytes], delay: float = 0.0) -> None:
        self._chunks = list(chunks)
        self._delay = delay
        self.reads = 0

    async def read(self, n: int = -1) -> bytes:
        if self._delay:
            await asyncio.sleep(self._delay)
        self.reads += 1
        if not self._chunks:
            return b""
        chunk = self._chunks[0]
        if 0 < n < len(chunk):
            self._chunks[0] = chunk[n:]
            return chunk[:n]
        self._chunks.pop(0)
        return chunk


class RecordingSink:
    def __init__(self, delay: float = 0.0, fail_after: int | None = None) -> None:
        self.data = bytearray()
        self.flushes = 0
        self.writes: list[bytes] = []
        self._delay = delay
        self._fail_after = fail_after

    async def write(self, data: bytes) -> None:
        if self._fail_after is not None and len(self.data) >= self._fail_after:
            raise ConnectionResetError("client went away")
        if self._delay:
            await asyncio.sleep(self._delay)
        self.writes.append(data)
        self.data += data

    async def flush(self) -> None:
        self.flushes += 1


def test_buffer_bytes_for() -> None:
    assert buffer_bytes_for(2.0, 192) == 48_000
    assert buffer_bytes_for(0.0, 192) == 0
    assert buffer_bytes_for(60.0, 100_000) == MAX_BUFFER_BYTES


def test_bounded_buffer_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        BoundedBuffer(0)


@pytest.mark.anyio
async def test_relay_copies_everything_in_order() -> None:
    chunks = [bytes([i]) * 5000 for i in range(40)]
    sink = RecordingSink()
    stats = await BufferRelay(64 * 1024).run(ChunkSource(chunks), sink)
    assert bytes(sink.data) == b"".join(chunks)
    assert stats.bytes_in == stats.bytes_out == 200_000
    assert stats.sink_closed is False
    # Flushed every 32 KiB plus once at the end
    assert stats.flushes == sink.flushes >= 200_000 // (32 * 1024)


@pytest.mark.anyio
async def test_relay_never_exceeds_capacity_with_slow_sink() -> None:
    capacity = 40_000
    chunks = [b"x" * 8192 for _ in range(60)]
    sink = RecordingSink(delay=0.002)
    stats = await BufferRelay(capacity, read_size=8192).run(ChunkSource(chunks), sink)
    assert len(sink.data) == 60 * 8192
    assert 0 < stats.high_water <= capacity


@pytest.mark.anyio
async def test_relay_without_buffer_forwards_each_read() -> None:
    chunks = [b"a" * 100, b"b" * 200, b"c" * 300]
    source = ChunkSource(chunks)
    sink = RecordingSink()
    stats = await BufferRelay(0).run(source, sink)
    assert sink.writes == chunks
    assert sink.flushes == 3
    assert stats.flushes == 3
    assert stats.high_water == 300


@pytest.mark.anyio
async def test_relay_reports_closed_sink() -> None:
    chunks = [b"z" * 4096 for _ in range(50)]
    sink = RecordingSink(fail_after=16_384)
    stats = await BufferRelay(32 * 1024, read_size=4096).run(ChunkSource(chunks), sink)
    assert stats.sink_closed is True
    assert stats.bytes_out == 16_384


@pytest.mark.anyio
async def test_relay_stops_waiting_on_stalled_source_when_sink_fails() -> None:
    class StalledSource:
        def __init__(self) -> None:
            self.sent = False

        async def read(self, n: int = -1) -> bytes:
            if not self.sent:
                self.sent = True
                return b"q" * 1000
            await asyncio.Event().wait()
            return b""

    stats = await asyncio.wait_for(
        BufferRelay(8192).run(StalledSource(), RecordingSink(fail_after=0)),
        timeout=2.0,
    )
    assert stats.sink_closed is True


@pytest.mark.anyio
async def test_queue_sink_delivers_writes_without_flush() -> None:
    sink = QueueSink()
    await sink.write(b"ab")
    # Readable before any flush
    assert await asyncio.wait_for(sink.__anext__(), timeout=1.0) == b"ab"
    await sink.write(b"cd")
    await sink.write(b"")
    await sink.flush()
    sink.finish()
    assert [chunk async for chunk in sink] == [b"cd"]


@pytest.mark.anyio
async def test_relay_first_bytes_reach_reader_before_flush_cadence() -> None:
    class StallAfterFirst:
        def __init__(self) -> None:
            self.sent = False

        async def read(self, n: int = -1) -> bytes:
            if not self.sent:
                self.sent = True
                return b"x" * 100
            await asyncio.Event().wait()
            return b""

    sink = QueueSink()
    relay = BufferRelay(50_000, flush_every=1_000_000)
    task = asyncio.create_task(relay.run(StallAfterFirst(), sink))
    try:
        assert await asyncio.wait_for(sink.__anext__(), timeout=2.0) == b"x" * 100
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@pytest.mark.anyio
async def test_queue_sink_applies_backpressure() -> None:
    sink = QueueSink(max_chunks=2)
    for i in range(2):
        await sink.write(bytes([i]))
    blocked = asyncio.create_task(sink.write(b"\x02"))
    await asyncio.sleep(0.01)
    assert not blocked.done()

    assert await sink.__anext__() == b"\x00"
    await asyncio.wait_for(blocked, timeout=1.0)
    sink.finish()
    assert [chunk async for chunk in sink] == [b"\x01", b"\x02"]


@pytest.mark.anyio
async def test_queue_sink_abort_fails_writer() -> None:
    sink = QueueSink(max_chunks=1)
    await sink.write(b"1")
    blocked = asyncio.create_task(sink.write(b"2"))
    await asyncio.sleep(0.01)
    sink.abort()
    with pytest.raises(ConnectionResetError):
        await blocked
    with pytest.raises(ConnectionResetError):
        await sink.write(b"3")
    with pytest.raises(ConnectionResetError):
        await sink.flush()
    assert [chunk async for chunk in sink] == []


@pytest.mark.anyio
async def test_relay_into_queue_sink_end_to_end() -> None:
    sink = QueueSink()
    chunks = [b"m" * 10_000 for _ in range(10)]

    async def produce() -> None:
        await BufferRelay(50_000).run(ChunkSource(chunks, delay=0.001), sink)
        sink.finish()

    task = asyncio.create_task(produce())
    received = b"".join([chunk async for chunk in sink])
    await task
    assert received == b"".join(chunks)
