"""
Spectrum scan: one short softfm probe per frequency, then peak detection.

A scan walks a quantized frequency list strictly in order. Each probe runs a
demodulator-only pipeline for the dwell time and keeps the best levels softfm
reported. The report either lists raw samples or a filtered set of peaks:

- Noise floor: upper median of the IF levels (needs at least 5 samples)
- Threshold: noise floor + offset for the selected level (weak/medium/strong)
- Peaks: samples above threshold, merged when within the cluster gap
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Sequence

import numpy as np

from .demodulator import softfm_spec
from .pipeline import Pipeline, PipelineError
from .stats_parser import parse_latest_stats, parse_stereo_status

if TYPE_CHECKING:
    from .config import AppConfig
    from .state import RadioSettings, RadioState

logger = logging.getLogger(__name__)

QUANTUM_HZ = 100_000
MAX_FREQUENCIES = 5000
PROBE_TAIL_CHARS = 16 * 1024

CLUSTER_GAP_MHZ = 0.25
MIN_NOISE_SAMPLES = 5
RAW_LIMIT = 500
FILTERED_LIMIT = 200
FALLBACK_LIMIT = 50


class ThresholdLevel(str, Enum):
    """How far above the noise floor a peak must be."""

    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"

    @property
    def offset_db(self) -> float:
        return _THRESHOLD_OFFSETS_DB[self]

    @classmethod
    def parse(cls, value: str | None) -> ThresholdLevel:
        key = (value or "").strip().lower()
        for level in cls:
            if level.value == key:
                return level
        return cls.MEDIUM


_THRESHOLD_OFFSETS_DB = {
    ThresholdLevel.WEAK: 6.0,
    ThresholdLevel.MEDIUM: 10.0,
    ThresholdLevel.STRONG: 14.0,
}


@dataclass(frozen=True)
class ScanSample:
    center_mhz: float
    tuned_mhz: float | None = None
    if_db: float | None = None
    bb_db: float | None = None
    audio_db: float | None = None
    stereo: bool = False
    pilot_level: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "freqMHz": f"{self.center_mhz:.1f}",
            "tunedMHz": self.tuned_mhz,
            "ifDb": self.if_db,
            "bbDb": self.bb_db,
            "audioDb": self.audio_db,
            "stereo": self.stereo,
            "pilotLevel": self.pilot_level,
        }


@dataclass
class ScanRun:
    started_at: float | None = None
    finished_at: float | None = None
    total: int = 0
    done: int = 0
    samples: list[ScanSample] = field(default_factory=list)
    error: str | None = None
    probe_errors: int = 0
    last_probe_error: str | None = None


@dataclass
class ScanReport:
    results: list[ScanSample]
    raw: bool
    level: ThresholdLevel
    raw_count: int
    noise_floor_if_db: float | None = None
    if_threshold_db: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw": self.raw,
            "thresholdLevel": self.level.value,
            "thresholdOffsetDb": self.level.offset_db,
            "rawCount": self.raw_count,
            "filteredCount": len(self.results),
            "noiseFloorIfDb": self.noise_floor_if_db,
            "ifThresholdDb": self.if_threshold_db,
            "clusterGapMHz": CLUSTER_GAP_MHZ,
            "results": [s.to_dict() for s in self.results],
        }


def _level(value: float | None) -> float:
    return -math.inf if value is None else value


def _rank_key(sample: ScanSample) -> tuple[float, float, float]:
    return (_level(sample.if_db), _level(sample.bb_db), _level(sample.audio_db))


def quantize_hz(mhz: float) -> int:
    """Round a MHz value to the nearest 100 kHz, as integer Hz."""
    return int(round(mhz * 1e6 / QUANTUM_HZ)) * QUANTUM_HZ


def build_frequency_list(start_mhz: float, end_mhz: float, step_mhz: float) -> list[int]:
    start_hz = quantize_hz(start_mhz)
    end_hz = quantize_hz(end_mhz)
    step_hz = quantize_hz(step_mhz)
    if step_hz <= 0:
        step_hz = QUANTUM_HZ

    freqs: list[int] = []
    freq = start_hz
    while freq <= end_hz and len(freqs) < MAX_FREQUENCIES:
        freqs.append(freq)
        freq += step_hz
    return freqs


def rank_samples(samples: Iterable[ScanSample]) -> list[ScanSample]:
    """Order by IF, then baseband, then audio level, strongest first."""
    return sorted(samples, key=_rank_key, reverse=True)


def estimate_noise_floor(samples: Sequence[ScanSample]) -> float | None:
    """Upper median of the IF levels, or None with fewer than 5 levels."""
    levels = np.sort(np.array([s.if_db for s in samples if s.if_db is not None], dtype=np.float64))
    if levels.size < MIN_NOISE_SAMPLES:
        return None
    return float(levels[levels.size // 2])


def cluster_peaks(candidates: Iterable[ScanSample], gap_mhz: float = CLUSTER_GAP_MHZ) -> list[ScanSample]:
    """Merge neighbouring candidates, keeping the strongest of each cluster.

    Candidates are visited in ascending frequency. A candidate joins the
    current cluster when it is within ``gap_mhz`` of the cluster's best sample
    so far; the best is the highest IF level, ties broken by baseband level.
    Peaks of the result are more than ``gap_mhz`` apart, so clustering the
    output again returns it unchanged.
    """
    peaks: list[ScanSample] = []
    best: ScanSample | None = None
    for sample in sorted(candidates, key=lambda s: s.center_mhz):
        if best is None:
            best = sample
            continue
        if abs(sample.center_mhz - best.center_mhz) <= gap_mhz + 1e-9:
            if (_level(sample.if_db), _level(sample.bb_db)) > (_level(best.if_db), _level(best.bb_db)):
                best = sample
            continue
        peaks.append(best)
        best = sample
    if best is not None:
        peaks.append(best)
    return peaks


def build_report(
    samples: Sequence[ScanSample],
    *,
    raw: bool = False,
    level: ThresholdLevel = ThresholdLevel.MEDIUM,
) -> ScanReport:
    if raw:
        return ScanReport(
            results=rank_samples(samples)[:RAW_LIMIT],
            raw=True,
            level=level,
            raw_count=len(samples),
        )

    noise_floor = estimate_noise_floor(samples)
    threshold = noise_floor + level.offset_db if noise_floor is not None else None

    peaks: list[ScanSample] = []
    if threshold is not None:
        peaks = cluster_peaks(s for s in samples if s.if_db is not None and s.if_db >= threshold)
    if not peaks:
        # Nothing stands out; show the strongest raw samples instead
        peaks = sorted(samples, key=lambda s: (_level(s.if_db), _level(s.bb_db)), reverse=True)[:FALLBACK_LIMIT]

    return ScanReport(
        results=rank_samples(peaks)[:FILTERED_LIMIT],
        raw=False,
        level=level,
        raw_count=len(samples),
        noise_floor_if_db=noise_floor,
        if_threshold_db=threshold,
    )


class ProbeCollector:
    """Best-of-dwell measurements from a probe's softfm diagnostics."""

    def __init__(self) -> None:
        self.tuned_mhz: float | None = None
        self.if_db: float | None = None
        self.bb_db: float | None = None
        self.audio_db: float | None = None
        self.stereo = False
        self.pilot_level: float | None = None
        # Feeds that carried at least one level
        self.updates = 0

    @staticmethod
    def _max(current: float | None, value: float | None) -> float | None:
        if value is None:
            return current
        if current is None:
            return value
        return max(current, value)

    def feed(self, text: str) -> None:
        stats = parse_latest_stats(text)
        if stats.if_db is not None or stats.bb_db is not None or stats.audio_db is not None:
            self.updates += 1
        if stats.tuned_freq_mhz is not None:
            self.tuned_mhz = stats.tuned_freq_mhz
        self.if_db = self._max(self.if_db, stats.if_db)
        self.bb_db = self._max(self.bb_db, stats.bb_db)
        self.audio_db = self._max(self.audio_db, stats.audio_db)
        status = parse_stereo_status(text)
        if status is not None:
            self.stereo = status.detected
            if status.pilot_level is not None:
                self.pilot_level = status.pilot_level

    def sample(self, center_mhz: float) -> ScanSample:
        return ScanSample(
            center_mhz=center_mhz,
            tuned_mhz=self.tuned_mhz,
            if_db=self.if_db,
            bb_db=self.bb_db,
            audio_db=self.audio_db,
            stereo=self.stereo,
            pilot_level=self.pilot_level,
        )


class ScanEngine:
    """Runs one scan at a time in a background task."""

    def __init__(
        self,
        state: RadioState,
        config: AppConfig,
        stop_streams: Callable[[], Awaitable[None]],
    ) -> None:
        self._state = state
        self._config = config
        self._stop_streams = stop_streams
        self._run = ScanRun()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        with self._state.lock:
            return self._task is not None and not self._task.done()

    def progress(self) -> dict[str, Any]:
        with self._state.lock:
            return {
                "running": self._task is not None and not self._task.done(),
                "done": self._run.done,
                "total": self._run.total,
            }

    def start(self, start_mhz: float, end_mhz: float, step_mhz: float, dwell_ms: int) -> bool:
        """Start a scan in the background. Returns False if one is still running."""
        freqs = build_frequency_list(start_mhz, end_mhz, step_mhz)
        with self._state.lock:
            if self._task is not None and not self._task.done():
                return False
            run = ScanRun(started_at=time.time(), total=len(freqs))
            self._run = run
            self._task = asyncio.get_running_loop().create_task(
                self._scan(run, freqs, dwell_ms / 1000.0), name="scan"
            )
        logger.info(
            f"Scan started: {len(freqs)} frequencies {start_mhz:.1f}-{end_mhz:.1f} MHz, "
            f"step {step_mhz:.1f} MHz, dwell {dwell_ms} ms"
        )
        return True

    async def stop(self) -> None:
        with self._state.lock:
            task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _scan(self, run: ScanRun, freqs: list[int], dwell_s: float) -> None:
        debug = self._config.scan.debug
        try:
            await self._stop_streams()
            await asyncio.sleep(self._config.scan.settle_s)
            settings = self._state.settings()

            for freq_hz in freqs:
                sample: ScanSample | None = None
                try:
                    sample = await self.probe(settings, freq_hz, dwell_s)
                except (PipelineError, OSError) as e:
                    logger.warning(f"Scan probe at {freq_hz / 1e6:.1f} MHz failed: {e}")
                    with self._state.lock:
                        run.probe_errors += 1
                        run.last_probe_error = str(e)
                with self._state.lock:
                    if sample is not None:
                        run.samples.append(sample)
                    run.done += 1
                if debug and sample is not None:
                    logger.info(
                        f"Scan {freq_hz / 1e6:.1f} MHz: tuned={sample.tuned_mhz} IF={sample.if_db} "
                        f"BB={sample.bb_db} audio={sample.audio_db} stereo={sample.stereo}"
                    )
            logger.info(f"Scan finished: {run.done}/{run.total} probes, {run.probe_errors} errors")
        except asyncio.CancelledError:
            logger.info(f"Scan cancelled after {run.done}/{run.total} probes")
            raise
        except Exception as e:
            logger.error(f"Scan failed: {e}", exc_info=True)
            with self._state.lock:
                run.error = str(e)
        finally:
            with self._state.lock:
                run.finished_at = time.time()

    async def probe(self, settings: RadioSettings, freq_hz: int, dwell_s: float) -> ScanSample:
        """Tune to ``freq_hz`` for ``dwell_s`` seconds and return the best levels seen."""
        collector = ProbeCollector()
        spec = softfm_spec(self._config.demodulator, settings, freq_hz=freq_hz)
        async with Pipeline(
            spec,
            on_demod_text=collector.feed,
            capture_output=False,
            tail_chars=PROBE_TAIL_CHARS,
            echo_stderr=self._config.scan.debug,
        ) as pipeline:
            # Hard timer: a silent softfm must not stretch the dwell
            await asyncio.sleep(dwell_s)
            error = pipeline.exit_error()
        if error is not None and collector.updates == 0:
            raise error
        return collector.sample(freq_hz / 1e6)

    def status(self, raw: bool = False, level: str | None = None) -> dict[str, Any]:
        with self._state.lock:
            run = self._run
            running = self._task is not None and not self._task.done()
            samples = list(run.samples)
            snapshot = {
                "running": running,
                "startedAt": run.started_at,
                "finishedAt": run.finished_at,
                "total": run.total,
                "done": run.done,
                "error": run.error,
                "probeErrors": run.probe_errors,
                "lastProbeError": run.last_probe_error,
            }
        report = build_report(samples, raw=raw, level=ThresholdLevel.parse(level))
        return {**snapshot, **report.to_dict()}
