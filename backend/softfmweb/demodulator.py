"""softfm command construction."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .pipeline import ProcessSpec
from .state import RadioSettings, StereoMode

if TYPE_CHECKING:
    from .config import DemodulatorConfig


def device_config(freq_hz: int, gain_db: float | None, agc: bool, sample_rate: int = 1_000_000) -> str:
    """Build the rtlsdr device string passed to ``softfm -c``."""
    parts = [f"freq={int(freq_hz)}", f"srate={int(sample_rate)}"]
    parts.append("gain=auto" if gain_db is None else f"gain={gain_db:.1f}")
    if agc:
        parts.append("agc")
    return ",".join(parts)


def softfm_args(
    freq_hz: int,
    gain_db: float | None,
    agc: bool,
    stereo_mode: StereoMode,
    *,
    audio_rate: int = 48_000,
    device_sample_rate: int = 1_000_000,
) -> list[str]:
    args: list[str] = []
    if stereo_mode == StereoMode.MONO:
        args.append("--mono")
    elif stereo_mode == StereoMode.STEREO:
        args.append("--force-stereo")
    args += [
        "-t",
        "rtlsdr",
        "-r",
        str(audio_rate),
        "-c",
        device_config(freq_hz, gain_db, agc, device_sample_rate),
        "-R",
        "-",  # Raw PCM to stdout
    ]
    return args


def softfm_spec(cfg: DemodulatorConfig, settings: RadioSettings, freq_hz: int | None = None) -> ProcessSpec:
    """softfm command for ``settings``, optionally tuned to a different frequency."""
    return ProcessSpec(
        name="softfm",
        program=cfg.program,
        args=softfm_args(
            settings.freq_hz if freq_hz is None else freq_hz,
            settings.gain_db,
            settings.agc,
            settings.stereo_mode,
            audio_rate=cfg.audio_rate,
            device_sample_rate=cfg.device_sample_rate,
        ),
        cwd=cfg.working_dir,
        env=dict(cfg.env),
        extra_path=list(cfg.extra_path),
    )
