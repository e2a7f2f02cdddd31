"""Perpetual HLS output: softfm -> ffmpeg writing segments into a directory.

The supervisor keeps one background task alive while delivery is ``hls``.
A failed run is recorded as ``"HLS: <message>"`` in the radio's last error and
retried after a short backoff. Cancelling the task is the only way it stops.

Restart requests coalesce: while a run is still winding down any number of
:meth:`ensure_started` calls queue a single follow-up run.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from .demodulator import softfm_spec
from .encoders import HLS_PLAYLIST_NAME, create_hls_encoder
from .pipeline import Pipeline

if TYPE_CHECKING:
    from .config import AppConfig
    from .state import RadioState

logger = logging.getLogger(__name__)

MIN_PLAYLIST_BYTES = 20
STOP_TIMEOUT_S = 5.0


class SegmentedOutputSupervisor:
    def __init__(
        self,
        state: RadioState,
        config: AppConfig,
        *,
        on_demod_text: Callable[[str], None] | None = None,
        tuner_busy: Callable[[], bool] | None = None,
    ) -> None:
        self._state = state
        self._config = config
        self._on_demod_text = on_demod_text
        self._tuner_busy = tuner_busy
        self.output_dir = Path(config.hls.output_dir)
        self._task: asyncio.Task[None] | None = None
        self._restart_queued = False
        self.runs_started = 0

    @property
    def is_running(self) -> bool:
        with self._state.lock:
            return self._task is not None and not self._task.done()

    @property
    def restart_queued(self) -> bool:
        with self._state.lock:
            return self._restart_queued

    def ensure_started(self) -> bool:
        """Start the supervisor task if delivery is HLS.

        If a task is still running, queue one restart for when it finishes
        instead. Nothing starts while ``tuner_busy`` reports another user of
        the tuner (a scan). Returns True if a new task was started.
        """
        if self._tuner_busy is not None and self._tuner_busy():
            logger.info("HLS output not started: tuner is busy scanning")
            return False
        with self._state.lock:
            if self._state.delivery != "hls":
                return False
            task = self._task
            if task is not None and not task.done():
                self._restart_queued = True
                return False
            self._task = asyncio.get_running_loop().create_task(self._run_loop(), name="hls-supervisor")
            self.runs_started += 1
            task = self._task
        task.add_done_callback(self._on_task_done)
        logger.info("HLS supervisor started")
        return True

    def restart(self) -> None:
        """Cancel the current run; a fresh one starts after it has wound down."""
        with self._state.lock:
            task = self._task
            running = task is not None and not task.done()
            if running:
                self._restart_queued = True
        if running and task is not None:
            task.cancel()
        else:
            self.ensure_started()

    def cancel(self) -> None:
        """Cancel the current run without queueing a restart."""
        with self._state.lock:
            self._restart_queued = False
            task = self._task
        if task is not None and not task.done():
            task.cancel()

    async def stop(self) -> None:
        with self._state.lock:
            self._restart_queued = False
            task = self._task
        if task is not None and not task.done():
            task.cancel()
            _, pending = await asyncio.wait([task], timeout=STOP_TIMEOUT_S)
            if pending:
                logger.warning("HLS supervisor did not stop in time")
        self.clear_output_dir()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        with self._state.lock:
            if self._task is not task:
                return
            self._task = None
            queued, self._restart_queued = self._restart_queued, False
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"HLS supervisor crashed: {task.exception()}")
        if queued:
            logger.info("Running queued HLS restart")
            self.ensure_started()

    async def _run_loop(self) -> None:
        backoff = self._config.hls.retry_backoff_s
        try:
            while True:
                try:
                    await self._run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"HLS run failed: {e}")
                    self._state.record_error(f"HLS: {e}")
                await asyncio.sleep(backoff)
        except asyncio.CancelledError:
            self.clear_output_dir()
            raise

    async def _run_once(self) -> None:
        settings = self._state.begin_pipeline()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.clear_output_dir()

        demod = softfm_spec(self._config.demodulator, settings)
        encoder = create_hls_encoder(
            self._config.hls,
            codec=self._config.encoder.hls_codec,
            bitrate_kbps=settings.hls_bitrate_kbps,
            buffer_seconds=settings.buffer_seconds,
            sample_rate=self._config.demodulator.audio_rate,
            channels=settings.input_channels,
        )
        encoder_spec = encoder.process_spec(self._config.encoder, cwd=str(self.output_dir))
        logger.info(f"HLS run at {settings.freq_hz} Hz, {settings.hls_bitrate_kbps} kbps, list size {encoder.list_size}")
        async with Pipeline(
            demod,
            encoder_spec,
            on_demod_text=self._on_demod_text,
            capture_output=False,
        ) as pipeline:
            await pipeline.wait()

    def clear_output_dir(self) -> None:
        """Delete every file in the output directory."""
        if not self.output_dir.is_dir():
            return
        for entry in self.output_dir.iterdir():
            if not entry.is_file():
                continue
            try:
                entry.unlink()
            except OSError as e:
                # ffmpeg may still hold the file open on Windows
                logger.debug(f"Could not delete {entry}: {e}")

    def is_ready(self) -> tuple[bool, str | None]:
        playlist = self.output_dir / HLS_PLAYLIST_NAME
        try:
            if not playlist.exists():
                return False, "playlist not created yet"
            if playlist.stat().st_size < MIN_PLAYLIST_BYTES:
                return False, "playlist is empty"
        except OSError as e:
            return False, str(e)
        return True, None
