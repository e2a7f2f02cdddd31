from __future__ import annotations

import math
from typing import Any, Iterable

FREQ_MIN_HZ = 10_000_000
FREQ_MAX_HZ = 2_200_000_000

# Presets and scans accept a wider band than the tuner range
BAND_MIN_MHZ = 10.0
BAND_MAX_MHZ = 3000.0
SCAN_STEP_MAX_MHZ = 10.0
DWELL_MIN_MS = 200
DWELL_MAX_MS = 10_000

GAIN_MIN_DB = 0.0
GAIN_MAX_DB = 100.0
BUFFER_MIN_S = 0.0
BUFFER_MAX_S = 60.0
HLS_BITRATE_MIN_KBPS = 32
HLS_BITRATE_MAX_KBPS = 512

FORMATS = ("mp3", "aac", "opus")
DELIVERIES = ("direct", "hls")
# "on"/"off" are accepted from older clients
STEREO_MODES = ("auto", "stereo", "mono", "on", "off")


class InvalidSettingError(ValueError):
    """A caller-supplied setting is out of range or unsupported."""


def normalize_choice(value: str | None) -> str:
    return (value or "").strip().lower()


def validate_frequency_hz(
    freq_hz: float,
    min_hz: float = FREQ_MIN_HZ,
    max_hz: float = FREQ_MAX_HZ,
) -> tuple[bool, str]:
    if not math.isfinite(freq_hz):
        return False, "frequency is not finite"
    if freq_hz < min_hz or freq_hz > max_hz:
        return (
            False,
            f"frequency {freq_hz:.0f} out of range {min_hz:.0f}-{max_hz:.0f}",
        )
    return True, ""


def validate_int_range(
    value: Any,
    min_value: int,
    max_value: int,
    label: str,
) -> tuple[bool, str]:
    try:
        int_value = int(value)
    except (TypeError, ValueError):
        return False, f"{label} is not an int"
    if int_value < min_value or int_value > max_value:
        return (
            False,
            f"{label} out of range {min_value}-{max_value} (got {int_value})",
        )
    return True, ""


def validate_float_range(
    value: Any,
    min_value: float,
    max_value: float,
    label: str,
) -> tuple[bool, str]:
    try:
        float_value = float(value)
    except (TypeError, ValueError):
        return False, f"{label} is not a float"
    if not math.isfinite(float_value):
        return False, f"{label} is not finite"
    if float_value < min_value or float_value > max_value:
        return (
            False,
            f"{label} out of range {min_value}-{max_value} (got {float_value})",
        )
    return True, ""


def validate_choice(value: str | None, choices: Iterable[str], label: str) -> tuple[bool, str]:
    options = tuple(choices)
    if normalize_choice(value) not in options:
        return False, f"{label} must be one of: {', '.join(options)}"
    return True, ""


def validate_scan_range(
    start_mhz: float,
    end_mhz: float,
    step_mhz: float,
) -> tuple[bool, str]:
    for label, value in (("startMHz", start_mhz), ("endMHz", end_mhz)):
        ok, reason = validate_float_range(value, BAND_MIN_MHZ, BAND_MAX_MHZ, label)
        if not ok:
            return ok, reason
    if start_mhz > end_mhz:
        return False, "startMHz must not exceed endMHz"
    if not math.isfinite(step_mhz) or step_mhz <= 0 or step_mhz > SCAN_STEP_MAX_MHZ:
        return False, f"stepMHz must be in (0, {SCAN_STEP_MAX_MHZ}]"
    return True, ""


def require(result: tuple[bool, str]) -> None:
    """Raise InvalidSettingError for a failed validation result."""
    ok, reason = result
    if not ok:
        raise InvalidSettingError(reason)
