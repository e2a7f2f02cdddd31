"""Tests for single-listener stream leases."""

from __future__ import annotations

import asyncio

import pytest

from softfmweb.lease import LeaseManager
from softfmweb.state import RadioState


def test_generations_strictly_increase() -> None:
    state = RadioState()
    leases = LeaseManager(state)
    generations = [leases.acquire().generation for _ in range(5)]
    assert generations == [1, 2, 3, 4, 5]
    assert leases.current_generation == 5
    assert state.is_streaming is True


def test_acquire_cancels_previous_lease() -> None:
    leases = LeaseManager(RadioState())
    first = leases.acquire()
    second = leases.acquire()
    assert first.is_cancelled
    assert not second.is_cancelled
    assert second.previous is first


def test_stale_release_is_ignored() -> None:
    state = RadioState()
    leases = LeaseManager(state)
    first = leases.acquire()
    second = leases.acquire()

    assert leases.release(first.generation) is False
    assert state.is_streaming is True

    assert leases.release(second.generation) is True
    assert state.is_streaming is False


def test_cancel_current_keeps_handoff() -> None:
    state = RadioState()
    leases = LeaseManager(state)
    first = leases.acquire()

    assert leases.cancel_current() is first
    assert first.is_cancelled
    assert state.is_streaming is False

    # The next stream still waits for the cancelled one to close
    assert leases.acquire().previous is first


@pytest.mark.anyio
async def test_wait_for_previous_returns_when_closed() -> None:
    leases = LeaseManager(RadioState())
    first = leases.acquire()
    second = leases.acquire()

    async def close_later() -> None:
        await asyncio.sleep(0.05)
        first.mark_closed()

    closer = asyncio.create_task(close_later())
    assert await second.wait_for_previous(timeout=2.0) is True
    await closer
    assert second.previous is None


@pytest.mark.anyio
async def test_wait_for_previous_times_out() -> None:
    leases = LeaseManager(RadioState())
    leases.acquire()
    second = leases.acquire()
    assert await second.wait_for_previous(timeout=0.05) is False


@pytest.mark.anyio
async def test_first_lease_does_not_wait() -> None:
    lease = LeaseManager(RadioState()).acquire()
    assert await asyncio.wait_for(lease.wait_for_previous(), timeout=0.5) is True
