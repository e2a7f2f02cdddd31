"""Tests for config loading: local overlay and environment overrides."""
from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import yaml

from softfmweb import config as config_module
from softfmweb.config import coerce_env_value, load_config


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.server.port == 8080
    assert config.demodulator.program == "softfm"
    assert config.encoder.program == "ffmpeg"
    assert config.radio.delivery == "hls"


def test_load_config_overlays_local_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        base_path = Path(tmpdir) / "softfmweb.yaml"
        local_path = Path(tmpdir) / "softfmweb.local.yaml"

        base_config = {
            "server": {"port": 8081, "bind_address": "0.0.0.0"},
            "radio": {"freq_hz": 88_100_000, "format": "aac"},
        }
        local_config = {
            "server": {"admin_token": "secret"},
            "radio": {"format": "opus"},
        }

        base_path.write_text(yaml.safe_dump(base_config), encoding="utf-8")
        local_path.write_text(yaml.safe_dump(local_config), encoding="utf-8")

        config = load_config(str(base_path))

        assert config.server.port == 8081
        assert config.server.bind_address == "0.0.0.0"
        assert config.server.admin_token == "secret"
        assert config.radio.freq_hz == 88_100_000
        assert config.radio.format == "opus"


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        config_module,
        "os_environ_items",
        lambda: [
            ("SOFTFMWEB__SERVER__PORT", "8089"),
            ("SOFTFMWEB__RADIO__GAIN_DB", "null"),
            ("SOFTFMWEB__SCAN__DEBUG", "true"),
            ("SOFTFMWEB__NOPE__KEY", "1"),
            ("OTHER", "x"),
        ],
    )
    config = load_config(str(tmp_path / "softfmweb.yaml"))
    assert config.server.port == 8089
    assert config.radio.gain_db is None
    assert config.scan.debug is True


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    path = tmp_path / "softfmweb.yaml"
    path.write_text(yaml.safe_dump({"server": {"prot": 1}}), encoding="utf-8")
    with pytest.raises(ValueError, match="prot"):
        load_config(str(path))

    path.write_text(yaml.safe_dump({"tuner": {}}), encoding="utf-8")
    with pytest.raises(ValueError, match="tuner"):
        load_config(str(path))


def test_coerce_env_value() -> None:
    assert coerce_env_value("TRUE") is True
    assert coerce_env_value("42") == 42
    assert coerce_env_value("2.5") == 2.5
    assert coerce_env_value("none") is None
    assert coerce_env_value("ffmpeg") == "ffmpeg"


def test_shipped_config_loads() -> None:
    shipped = Path(__file__).resolve().parents[1] / "config" / "softfmweb.yaml"
    config = load_config(str(shipped))
    assert config.radio.hls_bitrate_kbps == 320
    assert config.server.restart_exit_code == 42
