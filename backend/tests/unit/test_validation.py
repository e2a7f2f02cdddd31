import math

import pytest

from softfmweb.validation import (
    FORMATS,
    InvalidSettingError,
    require,
    validate_choice,
    validate_float_range,
    validate_frequency_hz,
    validate_int_range,
    validate_scan_range,
)


def test_validate_frequency_hz_rejects_invalid() -> None:
    ok, reason = validate_frequency_hz(-1.0)
    assert not ok
    assert "out of range" in reason


def test_validate_frequency_hz_rejects_non_finite() -> None:
    ok, reason = validate_frequency_hz(math.nan)
    assert not ok
    assert "finite" in reason


def test_validate_frequency_hz_accepts_fm_band() -> None:
    assert validate_frequency_hz(88_100_000) == (True, "")


def test_validate_int_range_rejects_invalid() -> None:
    ok, reason = validate_int_range("nope", 0, 1, "value")
    assert not ok
    assert "not an int" in reason


def test_validate_float_range_bounds() -> None:
    assert validate_float_range(60.0, 0.0, 60.0, "bufferSeconds")[0]
    ok, reason = validate_float_range(60.5, 0.0, 60.0, "bufferSeconds")
    assert not ok
    assert "bufferSeconds" in reason


def test_validate_choice_is_case_insensitive() -> None:
    assert validate_choice(" MP3 ", FORMATS, "format")[0]
    ok, reason = validate_choice("flac", FORMATS, "format")
    assert not ok
    assert "mp3" in reason


def test_validate_scan_range() -> None:
    assert validate_scan_range(76.0, 95.0, 0.1)[0]
    assert not validate_scan_range(95.0, 76.0, 0.1)[0]
    assert not validate_scan_range(76.0, 95.0, 0.0)[0]
    assert not validate_scan_range(5.0, 95.0, 0.1)[0]


def test_require_raises_value_error() -> None:
    with pytest.raises(InvalidSettingError):
        require((False, "bad"))
    with pytest.raises(ValueError):
        require((False, "bad"))
    require((True, ""))
