from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional

import uvicorn

from .app import create_app, parse_log_level
from .config import AppConfig, default_config_path, load_config
from .demodulator import softfm_spec
from .encoders import create_encoder
from .pipeline import LaunchError
from .state import RadioState


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="softfmweb FM radio server")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=os.environ.get("SOFTFMWEB_CONFIG", default_config_path()),
        help="Path to YAML config file",
    )
    parser.add_argument("--bind", type=str, default=None, help="Listen address, overrides server.bind_address")
    parser.add_argument("--port", type=int, default=None, help="Listen port, overrides server.port")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Console log level (debug, info, warning, ...), overrides logging.level",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Verify that softfm and ffmpeg can be found, then exit",
    )
    return parser.parse_args(argv)


def check_executables(cfg: AppConfig) -> list[str]:
    """Resolve the demodulator and encoder for the configured defaults.

    Returns one line per program, prefixed ``ok`` or ``missing``.
    """
    state = RadioState.from_defaults(cfg.radio)
    settings = state.settings()
    specs = [
        softfm_spec(cfg.demodulator, settings),
        create_encoder(state.format, channels=settings.input_channels).process_spec(cfg.encoder),
    ]
    lines = []
    for spec in specs:
        try:
            lines.append(f"ok       {spec.name}: {spec.resolve()}")
        except LaunchError as e:
            lines.append(f"missing  {e}")
    return lines


def _uvicorn_log_level(level: str) -> str:
    name = logging.getLevelName(parse_log_level(level)).lower()
    return name if name in ("critical", "error", "warning", "info", "debug") else "info"


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config)
    if args.bind is not None:
        cfg.server.bind_address = args.bind
    if args.port is not None:
        cfg.server.port = args.port
    if args.log_level is not None:
        if parse_log_level(args.log_level, default=-1) < 0:
            print(f"Unknown log level: {args.log_level}", file=sys.stderr)
            return 2
        cfg.logging.level = args.log_level

    if args.check:
        lines = check_executables(cfg)
        print("\n".join(lines))
        return 1 if any(line.startswith("missing") for line in lines) else 0

    app = create_app(cfg, config_path=args.config)

    # Listeners hold /stream open for hours; keep idle connections well past uvicorn's 5 s default
    uvicorn.run(
        app,
        host=cfg.server.bind_address,
        port=cfg.server.port,
        log_level=_uvicorn_log_level(cfg.logging.level),
        timeout_keep_alive=300,
        timeout_graceful_shutdown=10,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
