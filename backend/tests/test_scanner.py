"""Scan engine tests driving the stand-in softfm."""

from __future__ import annotations

import asyncio

import pytest

from softfmweb.config import AppConfig
from softfmweb.scanner import ScanEngine
from softfmweb.state import RadioState


async def _wait_until(predicate, timeout: float = 20.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class StopRecorder:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1


@pytest.mark.anyio
async def test_probe_reports_best_levels(app_config: AppConfig) -> None:
    app_config.demodulator.env = {"FAKE_SOFTFM_PEAKS": "88.1:22", "FAKE_SOFTFM_STEREO": "1"}
    state = RadioState()
    engine = ScanEngine(state, app_config, StopRecorder())

    sample = await engine.probe(state.settings(), 88_100_000, 0.3)
    assert sample.center_mhz == 88.1
    assert sample.if_db == 22.0
    assert sample.bb_db == 19.0
    assert sample.tuned_mhz == 88.1
    assert sample.stereo is True
    assert sample.pilot_level == 0.123456


@pytest.mark.anyio
async def test_scan_finds_stations(app_config: AppConfig) -> None:
    app_config.demodulator.env = {"FAKE_SOFTFM_PEAKS": "88.1:22,88.2:20,88.9:21"}
    state = RadioState()
    stop = StopRecorder()
    engine = ScanEngine(state, app_config, stop)

    assert engine.start(88.0, 89.0, 0.1, 400) is True
    await _wait_until(lambda: not engine.running)

    status = engine.status()
    assert stop.calls == 1
    assert status["total"] == 11
    assert status["done"] == 11
    assert status["error"] is None
    assert status["probeErrors"] == 0
    assert status["finishedAt"] >= status["startedAt"]
    assert status["noiseFloorIfDb"] == 5.0
    assert [r["freqMHz"] for r in status["results"]] == ["88.1", "88.9"]

    raw = engine.status(raw=True)
    assert raw["rawCount"] == 11
    assert raw["results"][0]["freqMHz"] == "88.1"


@pytest.mark.anyio
async def test_start_while_running_is_rejected(app_config: AppConfig) -> None:
    state = RadioState()
    engine = ScanEngine(state, app_config, StopRecorder())
    assert engine.start(88.0, 90.0, 0.1, 1000) is True
    await asyncio.sleep(0.05)
    before = engine.status()

    assert engine.start(76.0, 95.0, 0.1, 200) is False
    after = engine.status()
    assert after["total"] == before["total"] == 21
    assert after["startedAt"] == before["startedAt"]

    await engine.stop()
    assert not engine.running
    assert engine.status()["finishedAt"] is not None


@pytest.mark.anyio
async def test_stopped_scan_keeps_partial_results(app_config: AppConfig) -> None:
    app_config.demodulator.env = {"FAKE_SOFTFM_PEAKS": "88.1:22"}
    engine = ScanEngine(RadioState(), app_config, StopRecorder())
    assert engine.start(88.0, 89.0, 0.1, 300) is True
    await _wait_until(lambda: engine.status()["done"] >= 3)

    await engine.stop()
    status = engine.status(raw=True)
    assert status["running"] is False
    assert status["error"] is None
    assert 3 <= status["done"] < status["total"] == 11
    assert status["rawCount"] == status["done"]
    assert status["results"][0]["freqMHz"] == "88.1"
    assert status["finishedAt"] is not None


@pytest.mark.anyio
async def test_failed_probes_are_counted(app_config: AppConfig) -> None:
    app_config.demodulator.env = {"FAKE_SOFTFM_MODE": "fail"}
    engine = ScanEngine(RadioState(), app_config, StopRecorder())
    engine.start(88.0, 88.2, 0.1, 200)
    await _wait_until(lambda: not engine.running)

    status = engine.status()
    assert status["done"] == 3
    assert status["probeErrors"] == 3
    assert "softfm exited with code 3" in status["lastProbeError"]
    assert status["error"] is None
    assert status["results"] == []


@pytest.mark.anyio
async def test_missing_softfm_fails_scan(app_config: AppConfig) -> None:
    app_config.demodulator.program = "softfm-does-not-exist"
    engine = ScanEngine(RadioState(), app_config, StopRecorder())
    engine.start(88.0, 88.2, 0.1, 200)
    await _wait_until(lambda: not engine.running)

    status = engine.status()
    assert status["done"] == 0
    assert "softfm executable not found" in status["error"]
    assert status["finishedAt"] is not None
