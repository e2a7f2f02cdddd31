"""Parsing of softfm diagnostic output.

softfm reports periodic statistics and stereo pilot transitions on stderr:

    blk=  120  freq=  88.099946MHz  ppm=-0.61  IF=+12.3dB  BB=+9.8dB  audio=-6.2dB
    got stereo signal (pilot level = 0.012345)
    lost stereo signal

Callers keep a bounded tail of that text and re-parse it after every chunk, so
a marker may be cut off at either end of the tail. Only complete markers are
matched; a truncated one is reported as missing. A missing marker is a normal
outcome.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_NUMBER = r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?"

_TUNED_RE = re.compile(rf"\bfreq=\s*({_NUMBER})\s*MHz", re.IGNORECASE)
_IF_RE = re.compile(rf"\bIF=\s*({_NUMBER})\s*dB", re.IGNORECASE)
_BB_RE = re.compile(rf"\bBB=\s*({_NUMBER})\s*dB", re.IGNORECASE)
_AUDIO_RE = re.compile(rf"\baudio=\s*({_NUMBER})\s*dB", re.IGNORECASE)
# The number must be followed by something, otherwise it may be truncated
_PILOT_RE = re.compile(rf"pilot level\s*=\s*({_NUMBER})(?=[^\d.eE+-])", re.IGNORECASE)

STEREO_ACQUIRED = "got stereo signal"
STEREO_LOST = "lost stereo signal"


@dataclass(frozen=True)
class StereoStatus:
    detected: bool
    pilot_level: float | None = None


@dataclass(frozen=True)
class SignalStats:
    tuned_freq_mhz: float | None = None
    if_db: float | None = None
    bb_db: float | None = None
    audio_db: float | None = None
    stereo_detected: bool = False
    pilot_level: float | None = None


def _last_value(pattern: re.Pattern[str], text: str) -> float | None:
    value: float | None = None
    for match in pattern.finditer(text):
        try:
            value = float(match.group(1))
        except ValueError:
            continue
    return value


def parse_stereo_status(text: str) -> StereoStatus | None:
    """Return the stereo state implied by the last stereo marker in ``text``.

    Returns None when neither marker is present.
    """
    lowered = text.lower()
    got_idx = lowered.rfind(STEREO_ACQUIRED)
    lost_idx = lowered.rfind(STEREO_LOST)
    if got_idx < 0 and lost_idx < 0:
        return None
    if got_idx > lost_idx:
        pilot = None
        match = _PILOT_RE.search(text, got_idx)
        if match is not None:
            pilot = float(match.group(1))
        return StereoStatus(detected=True, pilot_level=pilot)
    return StereoStatus(detected=False)


def parse_latest_stats(text: str) -> SignalStats:
    """Extract the most recent complete measurements from a diagnostic tail."""
    stereo = parse_stereo_status(text)
    return SignalStats(
        tuned_freq_mhz=_last_value(_TUNED_RE, text),
        if_db=_last_value(_IF_RE, text),
        bb_db=_last_value(_BB_RE, text),
        audio_db=_last_value(_AUDIO_RE, text),
        stereo_detected=stereo is not None and stereo.detected,
        pilot_level=stereo.pilot_level if stereo is not None else None,
    )
