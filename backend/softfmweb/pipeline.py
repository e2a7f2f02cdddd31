"""Supervision of the demodulator -> encoder process pair.

A :class:`Pipeline` starts softfm and (optionally) ffmpeg, pumps softfm's PCM
output into ffmpeg's stdin, and keeps both stderr streams drained. softfm and
ffmpeg log continuously; an undrained stderr pipe fills up and stalls the
process, so the drains run for the whole life of the pipeline.

Teardown kills both process trees and runs on every exit path::

    async with Pipeline(demod_spec, encoder_spec) as pipeline:
        data = await pipeline.stdout.read(65536)
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import shlex
import shutil
from asyncio.subprocess import DEVNULL, PIPE
from dataclasses import dataclass, field
from typing import Any, Callable

import psutil

logger = logging.getLogger(__name__)

PUMP_CHUNK_BYTES = 64 * 1024
STDERR_CHUNK_BYTES = 4096
DEFAULT_TAIL_CHARS = 8192
DEFAULT_GRACE_S = 2.0


class LaunchError(RuntimeError):
    """An executable is missing or could not be started."""


class PipelineError(RuntimeError):
    """A pipeline process exited or its pipes failed while it should be running."""


@dataclass
class ProcessSpec:
    """Command line and environment for one child process."""

    name: str
    program: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    extra_path: list[str] = field(default_factory=list)

    def _search_path(self) -> str:
        return os.pathsep.join([*self.extra_path, os.environ.get("PATH", "")])

    def resolve(self) -> str:
        """Return the executable path, or raise LaunchError if it cannot be found."""
        resolved = shutil.which(self.program, path=self._search_path())
        if resolved is None:
            raise LaunchError(f"{self.name} executable not found: {self.program}")
        return resolved

    def environment(self) -> dict[str, str] | None:
        if not self.env and not self.extra_path:
            return None
        env = dict(os.environ)
        env.update(self.env)
        if self.extra_path:
            env["PATH"] = self._search_path()
        return env

    def command_line(self) -> str:
        return shlex.join([self.program, *self.args])


class TextTail:
    """Rolling window over the most recent text of a stream."""

    def __init__(self, limit: int = DEFAULT_TAIL_CHARS) -> None:
        self.limit = limit
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def append(self, chunk: str) -> str:
        self._text = (self._text + chunk)[-self.limit :]
        return self._text

    def last_line(self) -> str:
        lines = [line.strip() for line in self._text.splitlines() if line.strip()]
        return lines[-1] if lines else ""


def kill_process_tree(pid: int) -> None:
    """Kill a process and all of its descendants."""
    try:
        parent = psutil.Process(pid)
        victims = [*parent.children(recursive=True), parent]
    except psutil.Error:
        return
    for proc in victims:
        with contextlib.suppress(psutil.Error):
            proc.kill()


class Pipeline:
    """Ownership of one demodulator process and an optional encoder process.

    Args:
        demodulator: softfm command.
        encoder: ffmpeg command fed with softfm's stdout, or None for a
            demodulator-only pipeline (scan probes).
        on_demod_text: Called with the rolling softfm stderr tail after every
            chunk.
        capture_output: Expose the last process's stdout via :attr:`stdout`.
            When False it is sent to the null device.
        tail_chars: Size of the rolling stderr tails.
        echo_stderr: Log stderr chunks at INFO instead of DEBUG.
    """

    def __init__(
        self,
        demodulator: ProcessSpec,
        encoder: ProcessSpec | None = None,
        *,
        on_demod_text: Callable[[str], None] | None = None,
        capture_output: bool = True,
        tail_chars: int = DEFAULT_TAIL_CHARS,
        grace_s: float = DEFAULT_GRACE_S,
        echo_stderr: bool = False,
    ) -> None:
        self.demodulator = demodulator
        self.encoder = encoder
        self.demod_tail = TextTail(tail_chars)
        self.encoder_tail = TextTail(tail_chars)
        self.demod_proc: asyncio.subprocess.Process | None = None
        self.encoder_proc: asyncio.subprocess.Process | None = None
        self._on_demod_text = on_demod_text
        self._capture_output = capture_output
        self._grace_s = grace_s
        self._echo_stderr = echo_stderr
        self._pump_task: asyncio.Task[None] | None = None
        self._drain_tasks: list[asyncio.Task[None]] = []
        self._closing = False
        self._closed = False

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def stdout(self) -> asyncio.StreamReader:
        proc = self.encoder_proc if self.encoder is not None else self.demod_proc
        if proc is None or proc.stdout is None:
            raise RuntimeError("pipeline output is not captured")
        return proc.stdout

    @property
    def closing(self) -> bool:
        return self._closing

    def _processes(self) -> list[tuple[ProcessSpec, asyncio.subprocess.Process, TextTail]]:
        procs = []
        if self.demod_proc is not None:
            procs.append((self.demodulator, self.demod_proc, self.demod_tail))
        if self.encoder is not None and self.encoder_proc is not None:
            procs.append((self.encoder, self.encoder_proc, self.encoder_tail))
        return procs

    async def start(self) -> None:
        """Start both processes. Nothing is started if an executable is missing."""
        if self.demod_proc is not None:
            raise RuntimeError("pipeline already started")
        demod_exe = self.demodulator.resolve()
        encoder_exe = self.encoder.resolve() if self.encoder is not None else None

        try:
            demod_stdout = PIPE if (self.encoder is not None or self._capture_output) else DEVNULL
            self.demod_proc = await self._spawn(self.demodulator, demod_exe, stdin=DEVNULL, stdout=demod_stdout)
            self._drain_tasks.append(
                asyncio.create_task(
                    self._drain_stderr(self.demodulator.name, self.demod_proc, self.demod_tail, self._on_demod_text)
                )
            )

            if self.encoder is not None and encoder_exe is not None:
                encoder_stdout = PIPE if self._capture_output else DEVNULL
                self.encoder_proc = await self._spawn(self.encoder, encoder_exe, stdin=PIPE, stdout=encoder_stdout)
                self._drain_tasks.append(
                    asyncio.create_task(self._drain_stderr(self.encoder.name, self.encoder_proc, self.encoder_tail, None))
                )
                self._pump_task = asyncio.create_task(self._pump(self.demod_proc, self.encoder_proc))
        except BaseException:
            await self.close()
            raise

        if self.encoder is not None:
            logger.info(f"Pipeline started: {self.demodulator.command_line()} | {self.encoder.command_line()}")
        else:
            logger.debug(f"Pipeline started: {self.demodulator.command_line()}")

    async def _spawn(
        self,
        spec: ProcessSpec,
        executable: str,
        *,
        stdin: int,
        stdout: int,
    ) -> asyncio.subprocess.Process:
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *spec.args,
                stdin=stdin,
                stdout=stdout,
                stderr=PIPE,
                cwd=spec.cwd,
                env=spec.environment(),
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {spec.name}: {e}") from e
        logger.debug(f"Started {spec.name} (pid {proc.pid})")
        return proc

    async def _drain_stderr(
        self,
        name: str,
        proc: asyncio.subprocess.Process,
        tail: TextTail,
        on_text: Callable[[str], None] | None,
    ) -> None:
        if proc.stderr is None:
            return
        # softfm and ffmpeg log ASCII; tolerate anything else
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = await proc.stderr.read(STDERR_CHUNK_BYTES)
            except OSError as e:
                logger.debug(f"{name} stderr read failed: {e}")
                return
            if not chunk:
                return
            text = decoder.decode(chunk)
            if not text:
                continue
            snapshot = tail.append(text)
            if self._echo_stderr:
                logger.info(f"[{name}] {text.rstrip()}")
            else:
                logger.debug(f"[{name}] {text.rstrip()}")
            if on_text is not None:
                try:
                    on_text(snapshot)
                except Exception:
                    logger.exception(f"{name} stderr handler failed")

    async def _pump(self, source: asyncio.subprocess.Process, sink: asyncio.subprocess.Process) -> None:
        assert source.stdout is not None and sink.stdin is not None
        reader, writer = source.stdout, sink.stdin
        total = 0
        try:
            while True:
                chunk = await reader.read(PUMP_CHUNK_BYTES)
                if not chunk:
                    break
                writer.write(chunk)
                await writer.drain()
                total += len(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            if not self._closing:
                logger.warning(f"Pump {self.demodulator.name} -> {self.encoder_name} stopped: {e}")
        finally:
            with contextlib.suppress(OSError):
                writer.close()
            logger.debug(f"Pump finished after {total} bytes")

    @property
    def encoder_name(self) -> str:
        return self.encoder.name if self.encoder is not None else "-"

    def exit_error(self) -> PipelineError | None:
        """Describe the first process that has exited, if any."""
        for spec, proc, tail in self._processes():
            if proc.returncode is None:
                continue
            message = f"{spec.name} exited with code {proc.returncode}"
            detail = tail.last_line()
            if detail:
                message = f"{message}: {detail}"
            return PipelineError(message)
        return None

    async def wait(self) -> None:
        """Wait until either process exits.

        Raises PipelineError when the exit was not caused by :meth:`close`.
        """
        procs = [proc for _, proc, _ in self._processes()]
        if not procs:
            raise RuntimeError("pipeline not started")
        waiters = [asyncio.ensure_future(proc.wait()) for proc in procs]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        error = self.exit_error()
        if error is not None and not self._closing:
            raise error

    async def close(self) -> None:
        """Kill both process trees and wait (bounded) for the background tasks."""
        if self._closed:
            return
        self._closing = True
        self._closed = True

        if self._pump_task is not None:
            self._pump_task.cancel()
        for _, proc, _ in self._processes():
            if proc.returncode is None:
                kill_process_tree(proc.pid)

        if self._pump_task is not None:
            await asyncio.wait([self._pump_task], timeout=self._grace_s)

        # Read stdout leftovers to EOF so the pipe transports can finish
        tasks = list(self._drain_tasks)
        for _, proc, _ in self._processes():
            if proc.stdout is not None:
                tasks.append(asyncio.create_task(_discard(proc.stdout)))
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._grace_s)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} pipeline tasks did not finish within {self._grace_s:.1f}s")

        for spec, proc, _ in self._processes():
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace_s)
            except asyncio.TimeoutError:
                logger.warning(f"{spec.name} (pid {proc.pid}) did not exit after kill")
        self._drain_tasks.clear()
        logger.debug("Pipeline closed")


async def _discard(reader: asyncio.StreamReader) -> None:
    with contextlib.suppress(OSError, RuntimeError):
        while await reader.read(PUMP_CHUNK_BYTES):
            pass
