from __future__ import annotations

import re
from typing import Iterable

from pydantic import BaseModel, Field, field_validator, model_validator

from .validation import (
    BAND_MAX_MHZ,
    BAND_MIN_MHZ,
    BUFFER_MAX_S,
    BUFFER_MIN_S,
    DELIVERIES,
    DWELL_MAX_MS,
    DWELL_MIN_MS,
    FORMATS,
    FREQ_MAX_HZ,
    FREQ_MIN_HZ,
    GAIN_MAX_DB,
    GAIN_MIN_DB,
    HLS_BITRATE_MAX_KBPS,
    HLS_BITRATE_MIN_KBPS,
    SCAN_STEP_MAX_MHZ,
    STEREO_MODES,
    normalize_choice,
    validate_choice,
)

# Default range for scans and auto presets: the wide Japanese FM band
DEFAULT_START_MHZ = 76.0
DEFAULT_END_MHZ = 95.0
DEFAULT_STEP_MHZ = 0.1
DEFAULT_DWELL_MS = 600


def _choice(value: str | None, choices: Iterable[str], label: str) -> str | None:
    if value is None:
        return None
    ok, reason = validate_choice(value, choices, label)
    if not ok:
        raise ValueError(reason)
    return normalize_choice(value)


class StartRequest(BaseModel):
    freqHz: int | None = Field(None, ge=FREQ_MIN_HZ, le=FREQ_MAX_HZ)
    freqMHz: float | None = Field(None, ge=FREQ_MIN_HZ / 1e6, le=FREQ_MAX_HZ / 1e6)

    @model_validator(mode="after")
    def require_frequency(self) -> StartRequest:
        if self.freqHz is None and self.freqMHz is None:
            raise ValueError("Provide freqHz or freqMHz")
        return self

    def resolved_hz(self) -> int:
        if self.freqHz is not None:
            return self.freqHz
        assert self.freqMHz is not None
        return int(round(self.freqMHz * 1_000_000.0))


class ConfigRequest(BaseModel):
    format: str | None = None
    bufferSeconds: float | None = Field(None, ge=BUFFER_MIN_S, le=BUFFER_MAX_S)
    delivery: str | None = None
    hlsBitrateKbps: int | None = Field(None, ge=HLS_BITRATE_MIN_KBPS, le=HLS_BITRATE_MAX_KBPS)
    # null selects tuner auto gain
    rtlGainDb: float | None = Field(None, ge=GAIN_MIN_DB, le=GAIN_MAX_DB)
    rtlAgc: bool | None = None
    stereoMode: str | None = None
    forceStereo: bool | None = None

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str | None) -> str | None:
        return _choice(v, FORMATS, "format")

    @field_validator("delivery")
    @classmethod
    def validate_delivery(cls, v: str | None) -> str | None:
        return _choice(v, DELIVERIES, "delivery")

    @field_validator("stereoMode")
    @classmethod
    def validate_stereo_mode(cls, v: str | None) -> str | None:
        return _choice(v, STEREO_MODES, "stereoMode")

    @property
    def clears_gain(self) -> bool:
        return "rtlGainDb" in self.model_fields_set and self.rtlGainDb is None


class PresetRangeRequest(BaseModel):
    startMHz: float = Field(DEFAULT_START_MHZ, ge=BAND_MIN_MHZ, le=BAND_MAX_MHZ)
    endMHz: float = Field(DEFAULT_END_MHZ, ge=BAND_MIN_MHZ, le=BAND_MAX_MHZ)
    stepMHz: float = Field(DEFAULT_STEP_MHZ, gt=0, le=SCAN_STEP_MAX_MHZ)

    @model_validator(mode="after")
    def validate_order(self) -> PresetRangeRequest:
        if self.startMHz > self.endMHz:
            raise ValueError("startMHz must not exceed endMHz")
        return self


class ScanStartRequest(PresetRangeRequest):
    dwellMs: int = Field(DEFAULT_DWELL_MS, ge=DWELL_MIN_MS, le=DWELL_MAX_MS)


class PresetRequest(BaseModel):
    freqMHz: float = Field(..., ge=BAND_MIN_MHZ, le=BAND_MAX_MHZ)
    name: str | None = Field(None, max_length=1000)

    @field_validator("name")
    @classmethod
    def strip_control_chars(cls, v: str | None) -> str | None:
        if v is None:
            return None
        # Newlines become spaces later; drop the rest of the control range
        return re.sub(r"[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]", "", v)


class PresetUpdateRequest(PresetRequest):
    name: str = Field(..., max_length=1000)


class PresetRemoveRequest(BaseModel):
    freqMHz: float


class PresetAddManyRequest(BaseModel):
    freqMHzList: list[float] = Field(..., min_length=1, max_length=10_000)
