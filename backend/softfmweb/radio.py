"""RadioService: the single owner of the tuner.

Composes the live stream path (lease -> pipeline -> relay), the HLS supervisor
and the scan engine around one :class:`RadioState`. Only one of them may hold
the demodulator at a time; a scan stops the other two before it probes and
neither starts again until the scan is over.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Iterable

from .config import AppConfig
from .demodulator import softfm_spec
from .encoders import create_encoder
from .lease import HANDOFF_TIMEOUT_S, LeaseManager, StreamLease
from .pipeline import LaunchError, Pipeline, PipelineError
from .presets import PresetStore
from .relay import BufferRelay, ByteSink, RelayStats, buffer_bytes_for
from .scanner import ScanEngine
from .segmenter import SegmentedOutputSupervisor
from .state import RadioState, StereoMode
from .stats_parser import parse_stereo_status
from .validation import (
    BAND_MAX_MHZ,
    BAND_MIN_MHZ,
    BUFFER_MAX_S,
    BUFFER_MIN_S,
    DELIVERIES,
    DWELL_MAX_MS,
    DWELL_MIN_MS,
    FORMATS,
    GAIN_MAX_DB,
    GAIN_MIN_DB,
    HLS_BITRATE_MAX_KBPS,
    HLS_BITRATE_MIN_KBPS,
    STEREO_MODES,
    normalize_choice,
    require,
    validate_choice,
    validate_float_range,
    validate_frequency_hz,
    validate_int_range,
    validate_scan_range,
)

logger = logging.getLogger(__name__)

# How long a finished encoder output may take to turn into a process exit
EXIT_GRACE_S = 2.0

SCAN_BUSY_MESSAGE = "Tuner busy: scan in progress"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RadioService:
    def __init__(self, config: AppConfig, *, presets: PresetStore | None = None) -> None:
        self.config = config
        self.state = RadioState.from_defaults(config.radio)
        self.leases = LeaseManager(self.state)
        self.scanner = ScanEngine(self.state, config, self.stop_streams)
        self.hls = SegmentedOutputSupervisor(
            self.state,
            config,
            on_demod_text=self._apply_demod_text,
            tuner_busy=lambda: self.scanner.running,
        )
        self.presets = presets if presets is not None else PresetStore(config.presets.path)
        self.presets.load()

    # ------------------------------------------------------------------
    # Snapshots

    def get_status(self) -> dict[str, Any]:
        hls_running = self.hls.is_running
        scan = self.scanner.progress()
        with self.state.lock:
            return {
                "freqHz": self.state.freq_hz,
                "streaming": self.state.is_streaming or hls_running,
                "hlsRunning": hls_running,
                "scanRunning": scan["running"],
                "scanDone": scan["done"],
                "scanTotal": scan["total"],
                "stereoDetected": self.state.stereo_detected,
                "pilotLevel": self.state.pilot_level,
                "stereoUpdatedAt": self.state.stereo_updated_at,
                "lastError": self.state.last_error,
                "delivery": self.state.delivery,
                "stereoMode": self.state.stereo_mode.value,
                "forceStereo": self.state.stereo_mode == StereoMode.STEREO,
                "streamGeneration": self.state.stream_generation,
            }

    def get_config(self) -> dict[str, Any]:
        with self.state.lock:
            return {
                "delivery": self.state.delivery,
                "format": self.state.format,
                "bufferSeconds": self.state.buffer_seconds,
                "hlsBitrateKbps": self.state.hls_bitrate_kbps,
                "rtlGainDb": self.state.gain_db,
                "rtlAgc": self.state.agc,
                "stereoMode": self.state.stereo_mode.value,
                "forceStereo": self.state.stereo_mode == StereoMode.STEREO,
            }

    # ------------------------------------------------------------------
    # Tuning and configuration

    def set_frequency(self, freq_hz: int, restart: bool = False) -> None:
        """Store a new frequency. With ``restart`` the running outputs retune."""
        require(validate_frequency_hz(freq_hz))
        with self.state.lock:
            self.state.freq_hz = freq_hz
            self.state.last_error = None
            self.state.stereo_detected = None
            self.state.pilot_level = None
            self.state.stereo_updated_at = None
        logger.info(f"Frequency set to {freq_hz} Hz")
        if restart:
            self._restart_outputs()

    def set_streaming_config(
        self,
        *,
        format: str | None = None,
        buffer_seconds: float | None = None,
        delivery: str | None = None,
        hls_bitrate_kbps: int | None = None,
        gain_db: float | None = None,
        clear_gain: bool = False,
        agc: bool | None = None,
        stereo_mode: str | None = None,
        force_stereo: bool | None = None,
        restart: bool = False,
    ) -> None:
        """Validate and apply streaming settings. Nothing changes if any value is invalid."""
        if format is not None:
            require(validate_choice(format, FORMATS, "format"))
        if delivery is not None:
            require(validate_choice(delivery, DELIVERIES, "delivery"))
        if stereo_mode is not None:
            require(validate_choice(stereo_mode, STEREO_MODES, "stereoMode"))
        if buffer_seconds is not None:
            require(validate_float_range(buffer_seconds, BUFFER_MIN_S, BUFFER_MAX_S, "bufferSeconds"))
        if hls_bitrate_kbps is not None:
            require(validate_int_range(hls_bitrate_kbps, HLS_BITRATE_MIN_KBPS, HLS_BITRATE_MAX_KBPS, "hlsBitrateKbps"))
        if gain_db is not None:
            require(validate_float_range(gain_db, GAIN_MIN_DB, GAIN_MAX_DB, "rtlGainDb"))

        with self.state.lock:
            if delivery is not None:
                self.state.delivery = normalize_choice(delivery)
            if format is not None:
                self.state.format = normalize_choice(format)
            if buffer_seconds is not None:
                self.state.buffer_seconds = _clamp(float(buffer_seconds), BUFFER_MIN_S, BUFFER_MAX_S)
            if hls_bitrate_kbps is not None:
                self.state.hls_bitrate_kbps = int(
                    _clamp(int(hls_bitrate_kbps), HLS_BITRATE_MIN_KBPS, HLS_BITRATE_MAX_KBPS)
                )
            if clear_gain:
                self.state.gain_db = None
            elif gain_db is not None:
                self.state.gain_db = _clamp(float(gain_db), GAIN_MIN_DB, GAIN_MAX_DB)
            if agc is not None:
                self.state.agc = bool(agc)
            if stereo_mode is not None:
                self.state.stereo_mode = StereoMode.parse(stereo_mode)
            elif force_stereo is not None:
                # Older clients only send the forceStereo flag
                self.state.stereo_mode = StereoMode.STEREO if force_stereo else StereoMode.AUTO
            self.state.last_error = None
        logger.info(f"Streaming config updated: {self.get_config()}")
        if restart:
            self._restart_outputs()

    def _restart_outputs(self) -> None:
        self.leases.cancel_current()
        with self.state.lock:
            hls_delivery = self.state.delivery == "hls"
        if hls_delivery:
            self.hls.restart()
        else:
            self.hls.cancel()

    def resolve_format(self, requested: str | None = None) -> str:
        """Return ``requested`` if it is a supported format, else the configured one."""
        key = normalize_choice(requested)
        if key in FORMATS:
            return key
        with self.state.lock:
            return self.state.format

    # ------------------------------------------------------------------
    # Live streaming

    def begin_streaming(self) -> StreamLease:
        return self.leases.acquire()

    def end_streaming(self, generation: int) -> None:
        self.leases.release(generation)

    def check_executables(self, format: str | None = None) -> None:
        """Raise LaunchError (and record it) if softfm or ffmpeg cannot be found."""
        settings = self.state.settings()
        encoder = create_encoder(self.resolve_format(format), channels=settings.input_channels)
        try:
            softfm_spec(self.config.demodulator, settings).resolve()
            encoder.process_spec(self.config.encoder).resolve()
        except LaunchError as e:
            self.state.record_error(str(e))
            raise

    async def stream_to(
        self,
        sink: ByteSink,
        lease: StreamLease,
        disconnected: asyncio.Event | None = None,
        requested_format: str | None = None,
    ) -> RelayStats | None:
        """Run softfm -> ffmpeg and relay the encoded bytes to ``sink``.

        Returns when the client disconnects, the lease is preempted or the
        pipeline fails. Runtime failures are recorded in the last error;
        a LaunchError is recorded and re-raised. Returns the relay statistics
        when the relay ran to completion.
        """
        try:
            fmt = self.resolve_format(requested_format)
            await lease.wait_for_previous()
            if lease.is_cancelled or (disconnected is not None and disconnected.is_set()):
                return None
            if self.scan_running:
                logger.warning(f"Live stream {lease.generation} refused: scan in progress")
                self.state.record_error(SCAN_BUSY_MESSAGE)
                return None

            settings = self.state.begin_pipeline()
            encoder = create_encoder(
                fmt,
                sample_rate=self.config.demodulator.audio_rate,
                channels=settings.input_channels,
            )
            capacity = buffer_bytes_for(settings.buffer_seconds, encoder.config.bitrate_kbps)
            pipeline = Pipeline(
                softfm_spec(self.config.demodulator, settings),
                encoder.process_spec(self.config.encoder),
                on_demod_text=self._apply_demod_text,
            )
            logger.info(
                f"Live stream {lease.generation}: {fmt} at {settings.freq_hz} Hz, buffer {capacity} bytes"
            )
            try:
                async with pipeline:
                    stats = await self._relay(pipeline, sink, capacity, lease, disconnected)
            except LaunchError as e:
                self.state.record_error(str(e))
                raise
            except PipelineError as e:
                logger.warning(f"Live stream {lease.generation} failed: {e}")
                self.state.record_error(str(e))
                return None
            if stats is not None:
                logger.info(f"Live stream {lease.generation} ended: {stats.to_dict()}")
            return stats
        finally:
            lease.mark_closed()

    async def _relay(
        self,
        pipeline: Pipeline,
        sink: ByteSink,
        capacity: int,
        lease: StreamLease,
        disconnected: asyncio.Event | None,
    ) -> RelayStats | None:
        relay_task = asyncio.create_task(BufferRelay(capacity).run(pipeline.stdout, sink))
        watchers = [asyncio.create_task(lease.cancelled.wait())]
        if disconnected is not None:
            watchers.append(asyncio.create_task(disconnected.wait()))
        try:
            await asyncio.wait([relay_task, *watchers], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for watcher in watchers:
                watcher.cancel()
            if not relay_task.done():
                relay_task.cancel()
                await asyncio.wait([relay_task])

        if relay_task.cancelled():
            logger.info(f"Live stream {lease.generation} stopped ({'preempted' if lease.is_cancelled else 'client gone'})")
            return None
        stats = relay_task.result()
        if not stats.sink_closed and not lease.is_cancelled:
            # Encoder output ended on its own: one of the processes died
            try:
                await asyncio.wait_for(pipeline.wait(), timeout=EXIT_GRACE_S)
            except asyncio.TimeoutError:
                raise PipelineError(f"{pipeline.encoder_name} output ended unexpectedly") from None
        return stats

    def _apply_demod_text(self, text: str) -> None:
        status = parse_stereo_status(text)
        if status is not None and self.state.apply_stereo_status(status):
            if status.detected:
                logger.info(f"Stereo lock acquired (pilot level {status.pilot_level})")
            else:
                logger.info("Stereo lock lost")

    # ------------------------------------------------------------------
    # Continuous (HLS) output

    def ensure_continuous_output_started(self) -> bool:
        return self.hls.ensure_started()

    def ensure_delivery_started(self) -> None:
        with self.state.lock:
            delivery = self.state.delivery
        if delivery == "hls":
            self.ensure_continuous_output_started()

    def is_hls_ready(self) -> tuple[bool, str | None]:
        with self.state.lock:
            delivery = self.state.delivery
        if delivery != "hls":
            return False, "delivery is not hls"
        return self.hls.is_ready()

    # ------------------------------------------------------------------
    # Scan

    def start_scan(self, start_mhz: float, end_mhz: float, step_mhz: float, dwell_ms: int) -> bool:
        require(validate_scan_range(start_mhz, end_mhz, step_mhz))
        require(validate_int_range(dwell_ms, DWELL_MIN_MS, DWELL_MAX_MS, "dwellMs"))
        return self.scanner.start(start_mhz, end_mhz, step_mhz, int(dwell_ms))

    @property
    def scan_running(self) -> bool:
        return self.scanner.running

    async def stop_scan(self) -> None:
        await self.scanner.stop()

    def get_scan_status(self, raw: bool = False, level: str | None = None) -> dict[str, Any]:
        return self.scanner.status(raw=raw, level=level)

    # ------------------------------------------------------------------
    # Stopping

    async def stop_streams(self) -> None:
        """Stop the live stream and HLS output and wait until the tuner is free."""
        lease = self.leases.cancel_current()
        await self.hls.stop()
        if lease is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(lease.closed.wait(), HANDOFF_TIMEOUT_S)

    async def stop(self) -> None:
        """Stop every use of the tuner."""
        with self.state.lock:
            self.state.last_error = None
        self.leases.cancel_current()
        await self.hls.stop()
        await self.scanner.stop()
        logger.info("Radio stopped")

    # ------------------------------------------------------------------
    # Presets

    def get_presets(self) -> dict[str, Any]:
        return self.presets.to_dict()

    @staticmethod
    def _require_band(mhz: float, label: str = "freqMHz") -> None:
        require(validate_float_range(mhz, BAND_MIN_MHZ, BAND_MAX_MHZ, label))

    def add_preset(self, mhz: float, name: str | None = None) -> None:
        self._require_band(mhz)
        self.presets.add(mhz, name)

    def update_preset_name(self, mhz: float, name: str) -> None:
        self._require_band(mhz)
        self.presets.update_name(mhz, name)

    def remove_preset(self, mhz: float) -> None:
        self.presets.remove(mhz)

    def set_presets_auto(self, start_mhz: float, end_mhz: float, step_mhz: float) -> None:
        require(validate_scan_range(start_mhz, end_mhz, step_mhz))
        count = self.presets.set_auto(start_mhz, end_mhz, step_mhz)
        logger.info(f"Presets replaced with {count} frequencies {start_mhz:.1f}-{end_mhz:.1f} MHz")

    def add_presets(self, mhz_values: Iterable[float]) -> int:
        return self.presets.add_many(mhz_values)
