from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .stats_parser import StereoStatus

if TYPE_CHECKING:
    from .config import AppConfig, RadioDefaults
    from .radio import RadioService


class StereoMode(str, Enum):
    """How softfm treats the stereo pilot."""

    AUTO = "auto"
    STEREO = "stereo"  # Force stereo decoding without pilot lock
    MONO = "mono"

    @classmethod
    def parse(cls, value: str | None) -> StereoMode:
        key = (value or "").strip().lower()
        if key == "mono":
            return cls.MONO
        if key in ("stereo", "on"):
            return cls.STEREO
        return cls.AUTO


@dataclass(frozen=True)
class RadioSettings:
    """Immutable copy of the tunable fields, taken when a pipeline starts."""

    freq_hz: int
    gain_db: float | None
    agc: bool
    stereo_mode: StereoMode
    delivery: str
    format: str
    buffer_seconds: float
    hls_bitrate_kbps: int

    @property
    def input_channels(self) -> int:
        # softfm emits interleaved stereo unless --mono is given
        return 1 if self.stereo_mode == StereoMode.MONO else 2


@dataclass
class RadioState:
    """Mutable radio fields shared by every component of one service.

    All fields are guarded by ``lock``. Hold it only for field access, never
    around I/O or process control.
    """

    freq_hz: int = 80_000_000
    gain_db: float | None = 19.7  # None = tuner auto gain
    agc: bool = False
    stereo_mode: StereoMode = StereoMode.AUTO
    delivery: str = "hls"
    format: str = "mp3"
    buffer_seconds: float = 2.0
    hls_bitrate_kbps: int = 320
    last_error: str | None = None
    stereo_detected: bool | None = None
    pilot_level: float | None = None
    stereo_updated_at: float | None = None
    is_streaming: bool = False
    stream_generation: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def from_defaults(cls, defaults: RadioDefaults) -> RadioState:
        return cls(
            freq_hz=int(defaults.freq_hz),
            gain_db=defaults.gain_db,
            agc=defaults.agc,
            stereo_mode=StereoMode.parse(defaults.stereo_mode),
            delivery=defaults.delivery,
            format=defaults.format,
            buffer_seconds=float(defaults.buffer_seconds),
            hls_bitrate_kbps=int(defaults.hls_bitrate_kbps),
        )

    def settings(self) -> RadioSettings:
        with self.lock:
            return RadioSettings(
                freq_hz=self.freq_hz,
                gain_db=self.gain_db,
                agc=self.agc,
                stereo_mode=self.stereo_mode,
                delivery=self.delivery,
                format=self.format,
                buffer_seconds=self.buffer_seconds,
                hls_bitrate_kbps=self.hls_bitrate_kbps,
            )

    def record_error(self, message: str) -> None:
        with self.lock:
            self.last_error = message

    def begin_pipeline(self) -> RadioSettings:
        """Snapshot settings for a new pipeline and assume mono until softfm reports a pilot."""
        settings = self.settings()
        with self.lock:
            self.last_error = None
            self.stereo_detected = False
            self.pilot_level = None
            self.stereo_updated_at = time.time()
        return settings

    def apply_stereo_status(self, status: StereoStatus) -> bool:
        """Record a stereo lock transition. Returns True if anything changed."""
        with self.lock:
            changed = self.stereo_detected != status.detected
            if status.detected and status.pilot_level is not None and status.pilot_level != self.pilot_level:
                self.pilot_level = status.pilot_level
                changed = True
            if changed:
                self.stereo_detected = status.detected
                self.stereo_updated_at = time.time()
            return changed


@dataclass
class AppState:
    config: AppConfig
    radio: RadioService
    config_path: str | None = None

    @classmethod
    def from_config(cls, cfg: AppConfig, config_path: str | None = None) -> AppState:
        from .radio import RadioService

        return cls(config=cfg, radio=RadioService(cfg), config_path=config_path)
