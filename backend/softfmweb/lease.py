"""Single-owner leases for live streams.

Only one live stream may drive the tuner. Every new stream bumps the stream
generation and cancels the previous lease; the new pipeline waits (bounded)
until the previous one reports it has closed, so two softfm processes never
fight over the device.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .state import RadioState

logger = logging.getLogger(__name__)

HANDOFF_TIMEOUT_S = 5.0


@dataclass(eq=False)
class StreamLease:
    generation: int
    previous: StreamLease | None = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def cancel(self) -> None:
        self.cancelled.set()

    def mark_closed(self) -> None:
        self.closed.set()
        self.previous = None

    async def wait_for_previous(self, timeout: float = HANDOFF_TIMEOUT_S) -> bool:
        """Wait for the lease this one replaced to close. Returns False on timeout."""
        previous, self.previous = self.previous, None
        if previous is None or previous.closed.is_set():
            return True
        try:
            await asyncio.wait_for(previous.closed.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Stream {previous.generation} did not close within {timeout:.1f}s; starting {self.generation} anyway"
            )
            return False
        return True


class LeaseManager:
    """Hands out stream leases and tracks which generation is current."""

    def __init__(self, state: RadioState) -> None:
        self._state = state
        self._current: StreamLease | None = None

    @property
    def current_generation(self) -> int:
        with self._state.lock:
            return self._state.stream_generation

    def acquire(self) -> StreamLease:
        """Cancel the current lease and return a new one with the next generation."""
        with self._state.lock:
            previous = self._current
            if previous is not None:
                previous.cancel()
            self._state.stream_generation += 1
            self._state.is_streaming = True
            lease = StreamLease(generation=self._state.stream_generation, previous=previous)
            self._current = lease
        logger.info(f"Stream lease {lease.generation} acquired")
        return lease

    def release(self, generation: int) -> bool:
        """Mark streaming stopped if ``generation`` is still current. Stale releases are ignored."""
        with self._state.lock:
            if generation != self._state.stream_generation:
                return False
            self._state.is_streaming = False
            self._current = None
        logger.info(f"Stream lease {generation} released")
        return True

    def cancel_current(self) -> StreamLease | None:
        """Cancel the current lease and clear the streaming flag.

        The lease stays referenced so the next :meth:`acquire` still waits for it to close.
        """
        with self._state.lock:
            lease = self._current
            self._state.is_streaming = False
        if lease is not None:
            lease.cancel()
        return lease
