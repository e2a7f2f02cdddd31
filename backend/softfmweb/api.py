from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncGenerator
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .encoders import create_encoder
from .lease import StreamLease
from .models import (
    ConfigRequest,
    PresetAddManyRequest,
    PresetRangeRequest,
    PresetRemoveRequest,
    PresetRequest,
    PresetUpdateRequest,
    ScanStartRequest,
    StartRequest,
)
from .pipeline import LaunchError
from .radio import SCAN_BUSY_MESSAGE, RadioService
from .relay import QueueSink
from .state import AppState
from .validation import InvalidSettingError

logger = logging.getLogger(__name__)

# Time for the restart response to reach the client before the process exits
RESTART_DELAY_S = 0.3

router = APIRouter()
stream_router = APIRouter()

_background_tasks: set[asyncio.Task[Any]] = set()


def get_state(request: Request) -> AppState:
    state: AppState | None = getattr(request.app.state, "app_state", None)
    if state is None:
        raise RuntimeError("AppState not initialized")
    return state


def auth_check(request: Request, state: AppState = Depends(get_state)) -> None:
    token = state.config.server.auth_token
    if token is None:
        return
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if auth.split(" ", 1)[1] != token:
        raise HTTPException(status_code=403, detail="Invalid token")


def _bad_request(e: InvalidSettingError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


def _spawn(coro: Any, name: str) -> asyncio.Task[Any]:
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


# ----------------------------------------------------------------------------
# Status and tuning
# ----------------------------------------------------------------------------


@router.get("/status")
def get_status(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return state.radio.get_status()


@router.get("/config")
def get_config(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return state.radio.get_config()


@router.post("/config")
async def update_config(
    req: ConfigRequest,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Apply streaming settings and restart whatever is playing."""
    radio = state.radio
    try:
        radio.set_streaming_config(
            format=req.format,
            buffer_seconds=req.bufferSeconds,
            delivery=req.delivery,
            hls_bitrate_kbps=req.hlsBitrateKbps,
            gain_db=req.rtlGainDb,
            clear_gain=req.clears_gain,
            agc=req.rtlAgc,
            stereo_mode=req.stereoMode,
            force_stereo=req.forceStereo,
            restart=True,
        )
    except InvalidSettingError as e:
        raise _bad_request(e) from e
    radio.ensure_delivery_started()
    return radio.get_config()


@router.post("/start")
async def start(
    req: StartRequest,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Tune to a new frequency and restart whatever is playing."""
    radio = state.radio
    try:
        radio.set_frequency(req.resolved_hz(), restart=True)
    except InvalidSettingError as e:
        raise _bad_request(e) from e
    radio.ensure_delivery_started()
    return radio.get_status()


@router.post("/stop")
async def stop(_: None = Depends(auth_check), state: AppState = Depends(get_state)) -> dict[str, Any]:
    await state.radio.stop()
    return state.radio.get_status()


@router.get("/hls/ready")
def hls_ready(state: AppState = Depends(get_state)) -> dict[str, Any]:
    ready, reason = state.radio.is_hls_ready()
    return {"ready": ready, "reason": reason}


# ----------------------------------------------------------------------------
# Presets
# ----------------------------------------------------------------------------


@router.get("/presets")
def get_presets(state: AppState = Depends(get_state)) -> dict[str, Any]:
    return state.radio.get_presets()


@router.post("/presets/auto")
def presets_auto(
    req: PresetRangeRequest | None = None,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    req = req or PresetRangeRequest()
    try:
        state.radio.set_presets_auto(req.startMHz, req.endMHz, req.stepMHz)
    except InvalidSettingError as e:
        raise _bad_request(e) from e
    return state.radio.get_presets()


@router.post("/presets/add")
def presets_add(
    req: PresetRequest,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    try:
        state.radio.add_preset(req.freqMHz, req.name)
    except InvalidSettingError as e:
        raise _bad_request(e) from e
    return state.radio.get_presets()


@router.post("/presets/update")
def presets_update(
    req: PresetUpdateRequest,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    try:
        state.radio.update_preset_name(req.freqMHz, req.name)
    except InvalidSettingError as e:
        raise _bad_request(e) from e
    return state.radio.get_presets()


@router.post("/presets/addMany")
def presets_add_many(
    req: PresetAddManyRequest,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    added = state.radio.add_presets(req.freqMHzList)
    return {"added": added, "presets": state.radio.get_presets()}


@router.post("/presets/remove")
def presets_remove(
    req: PresetRemoveRequest,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    state.radio.remove_preset(req.freqMHz)
    return state.radio.get_presets()


# ----------------------------------------------------------------------------
# Scan
# ----------------------------------------------------------------------------


@router.get("/scan/status")
def scan_status(
    raw: str | None = None,
    level: str | None = None,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    is_raw = (raw or "").strip().lower() in ("1", "true")
    return state.radio.get_scan_status(raw=is_raw, level=level)


@router.post("/scan/start")
async def scan_start(
    req: ScanStartRequest | None = None,
    _: None = Depends(auth_check),
    state: AppState = Depends(get_state),
) -> JSONResponse:
    req = req or ScanStartRequest()
    try:
        started = state.radio.start_scan(req.startMHz, req.endMHz, req.stepMHz, req.dwellMs)
    except InvalidSettingError as e:
        raise _bad_request(e) from e
    if not started:
        return JSONResponse(status_code=409, content={"error": "Scan already running"})
    return JSONResponse(content=state.radio.get_scan_status())


@router.post("/scan/stop")
async def scan_stop(_: None = Depends(auth_check), state: AppState = Depends(get_state)) -> dict[str, Any]:
    await state.radio.stop_scan()
    return state.radio.get_scan_status()


# ----------------------------------------------------------------------------
# Server control
# ----------------------------------------------------------------------------


def _exit_process(code: int) -> None:
    logging.shutdown()
    os._exit(code)


async def _exit_after(code: int, delay_s: float) -> None:
    await asyncio.sleep(delay_s)
    _exit_process(code)


@router.post("/server/restart", status_code=202)
async def restart_server(
    request: Request,
    token: str | None = None,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Stop the radio and exit with the restart code so a supervisor starts us again."""
    required = state.config.server.admin_token
    if required:
        provided = request.headers.get("x-admin-token") or token
        if provided != required:
            raise HTTPException(status_code=401, detail="Invalid admin token")

    logger.warning("Restart requested via API")
    await state.radio.stop()
    exit_code = state.config.server.restart_exit_code
    _spawn(_exit_after(exit_code, RESTART_DELAY_S), name="restart")
    return {"ok": True, "action": "restart", "exitCode": exit_code}


# ----------------------------------------------------------------------------
# Live stream
# ----------------------------------------------------------------------------


def _on_stream_done(radio: RadioService, lease: StreamLease, sink: QueueSink, task: asyncio.Task[Any]) -> None:
    sink.finish()
    radio.end_streaming(lease.generation)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Live stream {lease.generation} failed: {exc}")


def _live_stream_response(radio: RadioService, requested_format: str | None) -> StreamingResponse:
    fmt = radio.resolve_format(requested_format)
    if radio.scan_running:
        raise HTTPException(status_code=409, detail=SCAN_BUSY_MESSAGE)
    try:
        radio.check_executables(fmt)
    except LaunchError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    async def audio_generator() -> AsyncGenerator[bytes, None]:
        # Single listener: taking the lease preempts whoever was listening
        lease = radio.begin_streaming()
        sink = QueueSink()
        disconnected = asyncio.Event()
        task = _spawn(radio.stream_to(sink, lease, disconnected, fmt), name=f"live-stream-{lease.generation}")
        task.add_done_callback(partial(_on_stream_done, radio, lease, sink))
        sent = 0
        try:
            async for chunk in sink:
                sent += len(chunk)
                yield chunk
        finally:
            disconnected.set()
            sink.abort()
            logger.info(f"Live stream {lease.generation} response closed after {sent} bytes")

    return StreamingResponse(
        audio_generator(),
        media_type=create_encoder(fmt).media_type,
        headers={"Cache-Control": "no-store"},
    )


@stream_router.get("/stream", response_model=None)
async def stream(fmt: str | None = None, state: AppState = Depends(get_state)) -> StreamingResponse:
    """Live stream in the configured format, or ``fmt`` (mp3, aac, opus) if given."""
    return _live_stream_response(state.radio, fmt)


@stream_router.get("/stream.mp3", response_model=None)
async def stream_mp3(state: AppState = Depends(get_state)) -> StreamingResponse:
    return _live_stream_response(state.radio, "mp3")
