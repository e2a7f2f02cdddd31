from __future__ import annotations

import inspect
import logging
import logging.handlers
import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, TextIO, cast

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter, _rate_limit_exceeded_handler
import slowapi.extension as slowapi_extension
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import __version__
from .api import router as api_router
from .api import stream_router
from .config import AppConfig, LoggingConfig
from .state import AppState

# Work around slowapi using deprecated asyncio.iscoroutinefunction on Python 3.14+.
slowapi_asyncio = cast(Any, getattr(slowapi_extension, "asyncio", None))
if slowapi_asyncio is not None:
    slowapi_asyncio.iscoroutinefunction = inspect.iscoroutinefunction

# HLS playlists and fMP4 segments are missing from most system MIME tables
mimetypes.add_type("application/vnd.apple.mpegurl", ".m3u8")
mimetypes.add_type("video/iso.segment", ".m4s")
mimetypes.add_type("video/mp4", ".mp4")


_LEVEL_ALIASES: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def parse_log_level(value: str | None, default: int = logging.INFO) -> int:
    """Numeric level for a name ("info", "warn") or a number; unknown names give ``default``."""
    raw = (value or "").strip()
    if raw.isdigit():
        return int(raw)
    return _LEVEL_ALIASES.get(raw.upper(), default)


class SafeStreamHandler(logging.StreamHandler[TextIO]):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        except ValueError:
            pass


def setup_file_logging(cfg: LoggingConfig) -> None:
    """Configure console logging plus, when ``log_dir`` is set, a rotating file.

    The file gets everything at DEBUG (including child process stderr) with
    5MB rotation and 3 backups; the console gets ``cfg.level`` and above.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # create_app may run more than once per process (tests); replace our handlers
    for handler in list(root_logger.handlers):
        if getattr(handler, "_softfmweb", False):
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = SafeStreamHandler()
    console_handler.setLevel(parse_log_level(cfg.level))
    console_handler.setFormatter(logging.Formatter(
        '[%(levelname)s] %(name)s: %(message)s'
    ))
    setattr(console_handler, "_softfmweb", True)
    root_logger.addHandler(console_handler)

    if not cfg.log_dir:
        return

    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "softfmweb.log"

    # Create rotating file handler (5MB max, 3 backups = 20MB total max)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    setattr(file_handler, "_softfmweb", True)
    root_logger.addHandler(file_handler)

    logging.info("File logging initialized: %s", log_file)


def create_app(config: AppConfig, config_path: str | None = None) -> FastAPI:
    # Setup logging before anything else
    setup_file_logging(config.logging)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Start HLS output when it is the configured delivery; stop everything on shutdown."""
        app_state: AppState = app.state.app_state
        app_state.radio.ensure_delivery_started()
        logging.info(
            f"softfmweb {__version__} ready on {config.server.bind_address}:{config.server.port}"
            f" (delivery {app_state.radio.get_config()['delivery']})"
        )

        try:
            yield
        finally:
            try:
                await app_state.radio.stop()
            except Exception as e:
                logging.warning("Error stopping radio during shutdown: %s", e)

    app = FastAPI(title="softfmweb", version=__version__, lifespan=lifespan)

    # Configure CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for local development
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # Configure rate limiting
    limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])
    app.state.limiter = limiter
    rate_limit_handler = cast(Callable[[Request, Exception], Response], _rate_limit_exceeded_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    app.state.app_state = AppState.from_config(config, config_path)

    app.include_router(api_router, prefix="/api")
    app.include_router(stream_router)

    @app.get("/health")
    @limiter.limit("30/minute")
    def health(request: Request) -> dict[str, str]:
        return {"status": "ok"}

    # HLS output written by ffmpeg
    hls_dir = Path(config.hls.output_dir)
    hls_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/hls", StaticFiles(directory=str(hls_dir)), name="hls")

    # Web UI; mounted last so it does not shadow the API
    static_dir = Path(config.server.static_dir) if config.server.static_dir else None
    if static_dir is not None and static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
    else:
        @app.get("/")
        def root() -> dict[str, str]:
            return {"message": "softfmweb API", "docs": "/docs"}

    return app
