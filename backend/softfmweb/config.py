from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "SOFTFMWEB__"


@dataclass
class ServerConfig:
    bind_address: str = "127.0.0.1"
    port: int = 8080
    auth_token: str | None = None
    # Required by /api/server/restart when set
    admin_token: str | None = None
    static_dir: str | None = None
    restart_exit_code: int = 42


@dataclass
class DemodulatorConfig:
    program: str = "softfm"
    # Tuner sample rate handed to the rtlsdr source
    device_sample_rate: int = 1_000_000
    # PCM output rate; ffmpeg is told the same rate
    audio_rate: int = 48_000
    working_dir: str | None = None
    # Prepended to PATH for the child (e.g. the directory holding librtlsdr)
    extra_path: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class FfmpegConfig:
    program: str = "ffmpeg"
    # ffmpeg AAC encoder used for HLS output ("aac", "aac_mf", "aac_at", ...)
    hls_codec: str = "aac"
    extra_path: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class HlsConfig:
    output_dir: str = str(Path(tempfile.gettempdir()) / "softfmweb" / "hls")
    segment_seconds: float = 1.0
    min_list_size: int = 2
    max_list_size: int = 20
    retry_backoff_s: float = 1.0


@dataclass
class RadioDefaults:
    freq_hz: int = 80_000_000
    gain_db: float | None = 19.7
    agc: bool = False
    stereo_mode: str = "auto"
    delivery: str = "hls"
    format: str = "mp3"
    buffer_seconds: float = 2.0
    hls_bitrate_kbps: int = 320


@dataclass
class PresetsConfig:
    path: str | None = None


@dataclass
class ScanConfig:
    # Pause after stopping other pipelines so the tuner is released
    settle_s: float = 0.5
    # Log every probe and echo softfm stderr at INFO
    debug: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"
    # Directory for the rotating log file; None disables file logging
    log_dir: str | None = None


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    demodulator: DemodulatorConfig = field(default_factory=DemodulatorConfig)
    encoder: FfmpegConfig = field(default_factory=FfmpegConfig)
    hls: HlsConfig = field(default_factory=HlsConfig)
    radio: RadioDefaults = field(default_factory=RadioDefaults)
    presets: PresetsConfig = field(default_factory=PresetsConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS: dict[str, type[Any]] = {f.name: f.default_factory for f in fields(AppConfig)}  # type: ignore[misc]


def default_config_path() -> str:
    """Get default config path relative to module location."""
    module_dir = Path(__file__).resolve().parent
    config_path = module_dir.parent / "config" / "softfmweb.yaml"
    if config_path.exists():
        return str(config_path)
    return "config/softfmweb.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("Config root must be a mapping")
        return data


def _overlay(dst: dict[str, Any], src: dict[str, Any]) -> dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _overlay(dst[k], v)
        else:
            dst[k] = v
    return dst


def _build_section(section: str, data: Any) -> Any:
    factory = _SECTIONS[section]
    if not isinstance(data, dict):
        return factory()
    known = {f.name for f in fields(factory)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{section}': {', '.join(unknown)}")
    return factory(**data)


def load_config(path_str: str) -> AppConfig:
    path = Path(path_str)
    raw: dict[str, Any] = _read_yaml(path)

    # Local overrides next to the main file (not committed), e.g. softfmweb.local.yaml
    local_path = path.with_name(f"{path.stem}.local{path.suffix}")
    if local_path != path:
        _overlay(raw, _read_yaml(local_path))

    # Environment overrides (prefix SOFTFMWEB__SECTION__KEY)
    # Example: SOFTFMWEB__SERVER__PORT=8089
    for k, v in os_environ_items():
        if not k.startswith(ENV_PREFIX):
            continue
        parts = k[len(ENV_PREFIX) :].split("__")
        if len(parts) != 2:
            continue
        section, key = (p.lower() for p in parts)
        if section not in _SECTIONS:
            continue
        section_data = raw.setdefault(section, {})
        if isinstance(section_data, dict):
            section_data[key] = coerce_env_value(v)

    unknown_sections = sorted(set(raw) - set(_SECTIONS))
    if unknown_sections:
        raise ValueError(f"Unknown config sections: {', '.join(unknown_sections)}")

    return AppConfig(**{name: _build_section(name, raw.get(name)) for name in _SECTIONS})


def coerce_env_value(val: str) -> Any:
    # Basic bool/int/float coercion for convenience
    lower = val.lower()
    if lower in {"true", "false"}:
        return lower == "true"
    if lower in {"null", "none"}:
        return None
    try:
        return int(val)
    except ValueError:
        pass
    try:
        return float(val)
    except ValueError:
        return val


def os_environ_items() -> list[tuple[str, str]]:
    # Wrapped for testability
    from os import environ

    return [(k, v) for k, v in environ.items()]
