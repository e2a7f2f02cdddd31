"""Bounded relay between the encoder's stdout and an HTTP response.

The producer reads encoder output into a FIFO of at most ``capacity`` bytes;
the consumer writes it to the client. When free space drops below a minimum
segment the producer pauses until the buffer has drained to half capacity, so
a slow client costs a bounded amount of memory and the encoder is simply not
read while it catches up.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

MAX_BUFFER_BYTES = 8 * 1024 * 1024
MIN_SEGMENT_BYTES = 16 * 1024
FLUSH_EVERY_BYTES = 32 * 1024
READ_CHUNK_BYTES = 64 * 1024


class ByteSource(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class ByteSink(Protocol):
    async def write(self, data: bytes) -> None: ...

    async def flush(self) -> None: ...


def buffer_bytes_for(buffer_seconds: float, bitrate_kbps: int) -> int:
    """Bytes covering ``buffer_seconds`` of a stream at ``bitrate_kbps``."""
    if buffer_seconds <= 0 or bitrate_kbps <= 0:
        return 0
    size = buffer_seconds * bitrate_kbps * 1000.0 / 8.0
    return int(min(max(size, 0.0), MAX_BUFFER_BYTES))


@dataclass
class RelayStats:
    bytes_in: int = 0
    bytes_out: int = 0
    flushes: int = 0
    high_water: int = 0
    # Set when the sink failed, i.e. the client went away
    sink_closed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytesIn": self.bytes_in,
            "bytesOut": self.bytes_out,
            "flushes": self.flushes,
            "highWater": self.high_water,
            "sinkClosed": self.sink_closed,
        }


class BoundedBuffer:
    """Single-producer single-consumer byte FIFO with pause/resume hysteresis."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.min_free = min(MIN_SEGMENT_BYTES, max(1, capacity // 2))
        self.resume_at = capacity // 2
        self.high_water = 0
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._completed = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()

    @property
    def size(self) -> int:
        return self._size

    @property
    def free(self) -> int:
        return self.capacity - self._size

    @property
    def completed(self) -> bool:
        return self._completed

    async def wait_for_space(self) -> bool:
        """Wait until a read of at least ``min_free`` bytes fits.

        Returns False once the buffer is completed.
        """
        if self.free < self.min_free:
            while not self._completed and self._size > self.resume_at:
                self._writable.clear()
                await self._writable.wait()
        return not self._completed

    def put(self, data: bytes) -> None:
        if self._completed:
            return
        if len(data) > self.free:
            raise ValueError("write exceeds buffer capacity")
        self._chunks.append(data)
        self._size += len(data)
        self.high_water = max(self.high_water, self._size)
        self._readable.set()

    async def get(self, max_bytes: int = READ_CHUNK_BYTES) -> bytes:
        """Take up to ``max_bytes`` (at least one chunk). Returns b"" once completed and empty."""
        while not self._chunks:
            if self._completed:
                return b""
            self._readable.clear()
            await self._readable.wait()
        parts = [self._chunks.popleft()]
        taken = len(parts[0])
        while self._chunks and taken + len(self._chunks[0]) <= max_bytes:
            chunk = self._chunks.popleft()
            parts.append(chunk)
            taken += len(chunk)
        self._size -= taken
        if self._size <= self.resume_at:
            self._writable.set()
        return b"".join(parts)

    def complete(self) -> None:
        self._completed = True
        self._readable.set()
        self._writable.set()


class BufferRelay:
    """Copy a byte source to a sink through a :class:`BoundedBuffer`.

    ``capacity == 0`` disables buffering: every read is written and flushed
    before the next read.
    """

    def __init__(
        self,
        capacity: int,
        *,
        flush_every: int = FLUSH_EVERY_BYTES,
        read_size: int = READ_CHUNK_BYTES,
    ) -> None:
        self.capacity = max(0, int(capacity))
        self.flush_every = flush_every
        self.read_size = read_size

    async def run(self, source: ByteSource, sink: ByteSink) -> RelayStats:
        stats = RelayStats()
        if self.capacity == 0:
            await self._copy_direct(source, sink, stats)
            return stats

        buffer = BoundedBuffer(self.capacity)
        producer = asyncio.create_task(self._produce(source, buffer, stats))
        consumer = asyncio.create_task(self._consume(buffer, sink, stats))
        try:
            await consumer
        finally:
            # Nothing is sent once the consumer stops; a stalled source must not keep us here
            producer.cancel()
            consumer.cancel()
            results = await asyncio.gather(producer, consumer, return_exceptions=True)
            stats.high_water = buffer.high_water
        for result in results:
            if isinstance(result, Exception):
                raise result
        return stats

    async def _produce(self, source: ByteSource, buffer: BoundedBuffer, stats: RelayStats) -> None:
        try:
            while await buffer.wait_for_space():
                data = await source.read(min(buffer.free, self.read_size))
                if not data:
                    break
                stats.bytes_in += len(data)
                buffer.put(data)
        except OSError as e:
            logger.debug(f"Relay source failed: {e}")
        finally:
            buffer.complete()

    async def _consume(self, buffer: BoundedBuffer, sink: ByteSink, stats: RelayStats) -> None:
        unflushed = 0
        try:
            while True:
                data = await buffer.get(self.read_size)
                if not data:
                    break
                await sink.write(data)
                stats.bytes_out += len(data)
                unflushed += len(data)
                if unflushed >= self.flush_every:
                    await sink.flush()
                    stats.flushes += 1
                    unflushed = 0
            await sink.flush()
            stats.flushes += 1
        except OSError as e:
            stats.sink_closed = True
            logger.debug(f"Relay sink closed: {e}")
        finally:
            buffer.complete()

    async def _copy_direct(self, source: ByteSource, sink: ByteSink, stats: RelayStats) -> None:
        while True:
            try:
                data = await source.read(self.read_size)
            except OSError as e:
                logger.debug(f"Relay source failed: {e}")
                return
            if not data:
                return
            stats.bytes_in += len(data)
            try:
                await sink.write(data)
                await sink.flush()
            except OSError as e:
                stats.sink_closed = True
                logger.debug(f"Relay sink closed: {e}")
                return
            stats.bytes_out += len(data)
            stats.flushes += 1
            stats.high_water = max(stats.high_water, len(data))


class QueueSink:
    """Sink whose written chunks are read back by iterating over it.

    Bridges :class:`BufferRelay` to an async generator feeding a
    ``StreamingResponse``. Every write is handed to the reader at once, so
    the first audio does not wait for the relay's flush cadence. At most
    ``max_chunks`` chunks wait for the reader; further writes block. After
    :meth:`abort` (reader gone) writes raise ConnectionResetError; after
    :meth:`finish` (writer done) the reader drains what is left and stops.
    """

    def __init__(self, max_chunks: int = 16) -> None:
        self.max_chunks = max_chunks
        self._chunks: deque[bytes] = deque()
        self._finished = False
        self._aborted = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()

    def _check_open(self) -> None:
        if self._aborted:
            raise ConnectionResetError("stream reader went away")

    async def write(self, data: bytes) -> None:
        self._check_open()
        if not data:
            return
        while len(self._chunks) >= self.max_chunks and not self._aborted:
            self._writable.clear()
            await self._writable.wait()
        self._check_open()
        self._chunks.append(bytes(data))
        self._readable.set()

    async def flush(self) -> None:
        # Writes are already visible to the reader
        self._check_open()

    def finish(self) -> None:
        self._finished = True
        self._readable.set()

    def abort(self) -> None:
        self._aborted = True
        self._chunks.clear()
        self._readable.set()
        self._writable.set()

    def __aiter__(self) -> QueueSink:
        return self

    async def __anext__(self) -> bytes:
        while not self._chunks:
            if self._finished or self._aborted:
                raise StopAsyncIteration
            self._readable.clear()
            await self._readable.wait()
        chunk = self._chunks.popleft()
        self._writable.set()
        return chunk
