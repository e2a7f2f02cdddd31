"""Station presets persisted to a JSON file.

File format::

    {
      "presets": [{"freqMHz": "88.1", "name": "Local FM"}],
      "presetsMHz": ["88.1"]
    }

``presetsMHz`` is written for older clients and read when ``presets`` is
missing. Frequencies are kept as integer Hz on a 100 kHz grid.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .validation import BAND_MAX_MHZ, BAND_MIN_MHZ

logger = logging.getLogger(__name__)

QUANTUM_HZ = 100_000
MAX_AUTO_PRESETS = 10_000
MAX_NAME_LENGTH = 64
PLACEHOLDER_NAME = "-"


def default_presets_path() -> Path:
    return Path.home() / ".config" / "softfmweb" / "presets.json"


def quantize_mhz(mhz: float) -> int:
    hz = round(mhz * 1_000_000.0)
    return int(round(hz / QUANTUM_HZ)) * QUANTUM_HZ


def normalize_name(name: str | None) -> str:
    value = (name or "").strip()
    if not value:
        value = PLACEHOLDER_NAME
    value = value[:MAX_NAME_LENGTH]
    return value.replace("\r", " ").replace("\n", " ")


def in_band(mhz: float) -> bool:
    return math.isfinite(mhz) and BAND_MIN_MHZ <= mhz <= BAND_MAX_MHZ


def format_mhz(hz: int) -> str:
    return f"{hz / 1_000_000.0:.1f}"


@dataclass
class Preset:
    hz: int
    name: str = PLACEHOLDER_NAME

    def to_dict(self) -> dict[str, Any]:
        return {"freqMHz": format_mhz(self.hz), "name": self.name}


class PresetStore:
    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = Path(path).expanduser() if path else default_presets_path()
        self._presets: dict[int, Preset] = {}
        self._lock = threading.Lock()

    def load(self) -> None:
        """Read presets from disk. A missing or corrupt file leaves the list empty."""
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable presets file {self.path}: {e}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring presets file {self.path}: root is not an object")
            return

        items: list[Preset] = []
        wires = data.get("presets")
        if isinstance(wires, list) and wires:
            for wire in wires:
                if not isinstance(wire, dict):
                    continue
                hz = self._parse_mhz(wire.get("freqMHz"))
                if hz is not None:
                    items.append(Preset(hz=hz, name=normalize_name(wire.get("name"))))
        else:
            for value in data.get("presetsMHz") or []:
                hz = self._parse_mhz(value)
                if hz is not None:
                    items.append(Preset(hz=hz))

        merged: dict[int, Preset] = {}
        for item in items:
            existing = merged.get(item.hz)
            # Prefer a real name over the placeholder when duplicates exist
            if existing is None or (existing.name == PLACEHOLDER_NAME and item.name != PLACEHOLDER_NAME):
                merged[item.hz] = item
        with self._lock:
            self._presets = merged
        logger.info(f"Loaded {len(merged)} presets from {self.path}")

    @staticmethod
    def _parse_mhz(value: Any) -> int | None:
        try:
            mhz = float(str(value).strip())
        except (TypeError, ValueError):
            return None
        if not in_band(mhz):
            return None
        return quantize_mhz(mhz)

    def save(self) -> None:
        snapshot = self.to_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def _save_quietly(self) -> None:
        try:
            self.save()
        except OSError as e:
            logger.warning(f"Failed to save presets to {self.path}: {e}")

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            presets = [self._presets[hz].to_dict() for hz in sorted(self._presets)]
        return {"presets": presets, "presetsMHz": [p["freqMHz"] for p in presets]}

    def frequencies_hz(self) -> list[int]:
        with self._lock:
            return sorted(self._presets)

    def add(self, mhz: float, name: str | None = None) -> bool:
        """Add a preset, or give a placeholder-named preset a real name."""
        hz = quantize_mhz(mhz)
        new_name = normalize_name(name)
        with self._lock:
            existing = self._presets.get(hz)
            if existing is None:
                self._presets[hz] = Preset(hz=hz, name=new_name)
                changed = True
            elif existing.name == PLACEHOLDER_NAME and new_name != PLACEHOLDER_NAME:
                existing.name = new_name
                changed = True
            else:
                changed = False
        if changed:
            self._save_quietly()
        return changed

    def update_name(self, mhz: float, name: str) -> bool:
        """Rename a preset, adding it if missing."""
        hz = quantize_mhz(mhz)
        new_name = normalize_name(name)
        with self._lock:
            existing = self._presets.get(hz)
            if existing is None:
                self._presets[hz] = Preset(hz=hz, name=new_name)
                changed = True
            elif existing.name != new_name:
                existing.name = new_name
                changed = True
            else:
                changed = False
        if changed:
            self._save_quietly()
        return changed

    def remove(self, mhz: float) -> bool:
        hz = quantize_mhz(mhz)
        with self._lock:
            changed = self._presets.pop(hz, None) is not None
        if changed:
            self._save_quietly()
        return changed

    def add_many(self, mhz_values: Iterable[float]) -> int:
        """Add placeholder-named presets. Returns how many in-band values were accepted."""
        accepted = 0
        changed = False
        with self._lock:
            for mhz in mhz_values:
                if not in_band(mhz):
                    continue
                accepted += 1
                hz = quantize_mhz(mhz)
                if hz not in self._presets:
                    self._presets[hz] = Preset(hz=hz)
                    changed = True
        if changed:
            self._save_quietly()
        return accepted

    def set_auto(self, start_mhz: float, end_mhz: float, step_mhz: float) -> int:
        """Replace all presets with an evenly spaced range."""
        start_hz = quantize_mhz(start_mhz)
        end_hz = quantize_mhz(end_mhz)
        step_hz = quantize_mhz(step_mhz)
        if start_hz <= 0 or end_hz <= 0 or start_hz > end_hz:
            raise ValueError("Invalid preset range")
        if step_hz <= 0:
            step_hz = QUANTUM_HZ

        presets: dict[int, Preset] = {}
        hz = start_hz
        while hz <= end_hz and len(presets) < MAX_AUTO_PRESETS:
            presets[hz] = Preset(hz=hz)
            hz += step_hz
        with self._lock:
            self._presets = presets
        self._save_quietly()
        return len(presets)
