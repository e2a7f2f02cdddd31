"""Shared pytest fixtures for softfmweb tests.

softfm and ffmpeg are replaced by small Python scripts run with the test
interpreter, so the real process supervision code runs without a tuner.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from softfmweb.config import AppConfig

FAKE_SOFTFM = r'''
import os
import sys
import time


def arg(flag):
    if flag in sys.argv:
        return sys.argv[sys.argv.index(flag) + 1]
    return ""


device = {}
for part in arg("-c").split(","):
    key, _, value = part.partition("=")
    device[key] = value
mhz = int(device.get("freq", "0")) / 1e6

if os.environ.get("FAKE_SOFTFM_MODE") == "fail":
    sys.stderr.write("ERROR: can not open rtlsdr device\n")
    sys.stderr.flush()
    sys.exit(3)

levels = {}
for item in os.environ.get("FAKE_SOFTFM_PEAKS", "").split(","):
    if ":" in item:
        freq, level = item.split(":")
        levels[round(float(freq), 1)] = float(level)
if_db = levels.get(round(mhz, 1), 5.0)

if os.environ.get("FAKE_SOFTFM_STEREO"):
    sys.stderr.write("got stereo signal (pilot level = 0.123456)\n")

limit = int(os.environ.get("FAKE_SOFTFM_BYTES", "0"))
block = b"\0" * 4096
sent = 0
while True:
    sys.stderr.write(
        f"blk=    1  freq= {mhz:.6f}MHz  ppm= +0.00  IF={if_db:+.1f}dB  BB={if_db - 3:+.1f}dB  audio= -6.0dB\n"
    )
    sys.stderr.flush()
    try:
        sys.stdout.buffer.write(block)
        sys.stdout.buffer.flush()
    except BrokenPipeError:
        break
    sent += len(block)
    if limit and sent >= limit:
        break
    time.sleep(0.02)
'''

FAKE_FFMPEG = r'''
import sys

args = sys.argv[1:]
if "hls" in args:
    with open(args[-1], "w") as f:
        f.write("#EXTM3U\n#EXT-X-VERSION:7\n#EXT-X-TARGETDURATION:1\n")
    while sys.stdin.buffer.read(65536):
        pass
    sys.exit(0)

while True:
    data = sys.stdin.buffer.read1(65536)
    if not data:
        break
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
'''


def _write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_bin(tmp_path: Path) -> dict[str, Path]:
    """Executable stand-ins for softfm and ffmpeg."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return {
        "softfm": _write_script(bin_dir / "softfm", FAKE_SOFTFM),
        "ffmpeg": _write_script(bin_dir / "ffmpeg", FAKE_FFMPEG),
    }


@pytest.fixture
def app_config(tmp_path: Path, fake_bin: dict[str, Path]) -> AppConfig:
    cfg = AppConfig()
    cfg.demodulator.program = str(fake_bin["softfm"])
    cfg.encoder.program = str(fake_bin["ffmpeg"])
    cfg.hls.output_dir = str(tmp_path / "hls")
    cfg.hls.retry_backoff_s = 0.05
    cfg.presets.path = str(tmp_path / "presets.json")
    cfg.radio.delivery = "direct"
    cfg.radio.buffer_seconds = 0.0
    cfg.scan.settle_s = 0.0
    return cfg
