"""Process pipeline tests with stand-in softfm/ffmpeg scripts."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from softfmweb.pipeline import LaunchError, Pipeline, PipelineError, ProcessSpec, TextTail, kill_process_tree


def _softfm(fake_bin: dict[str, Path], env: dict[str, str] | None = None) -> ProcessSpec:
    return ProcessSpec(
        name="softfm",
        program=str(fake_bin["softfm"]),
        args=["-t", "rtlsdr", "-r", "48000", "-c", "freq=88100000,srate=1000000,gain=auto", "-R", "-"],
        env=env or {},
    )


def _ffmpeg(fake_bin: dict[str, Path]) -> ProcessSpec:
    return ProcessSpec(name="ffmpeg", program=str(fake_bin["ffmpeg"]), args=["-f", "mp3", "pipe:1"])


def test_text_tail_keeps_most_recent_text() -> None:
    tail = TextTail(limit=10)
    tail.append("0123456789")
    assert tail.append("abc") == "3456789abc"
    assert tail.last_line() == "3456789abc"
    tail.append("\nlast line\n\n")
    assert tail.last_line() == "last line"


def test_resolve_missing_program() -> None:
    spec = ProcessSpec(name="softfm", program="softfm-does-not-exist")
    with pytest.raises(LaunchError, match="softfm executable not found"):
        spec.resolve()


def test_resolve_uses_extra_path(fake_bin: dict[str, Path]) -> None:
    spec = ProcessSpec(name="softfm", program="softfm", extra_path=[str(fake_bin["softfm"].parent)])
    assert spec.resolve() == str(fake_bin["softfm"])
    env = spec.environment()
    assert env is not None
    assert env["PATH"].startswith(str(fake_bin["softfm"].parent))


@pytest.mark.anyio
async def test_missing_encoder_starts_nothing(fake_bin: dict[str, Path]) -> None:
    pipeline = Pipeline(_softfm(fake_bin), ProcessSpec(name="ffmpeg", program="ffmpeg-does-not-exist"))
    with pytest.raises(LaunchError):
        await pipeline.start()
    assert pipeline.demod_proc is None


@pytest.mark.anyio
async def test_pipeline_streams_encoder_output(fake_bin: dict[str, Path]) -> None:
    texts: list[str] = []
    async with Pipeline(_softfm(fake_bin), _ffmpeg(fake_bin), on_demod_text=texts.append) as pipeline:
        data = await asyncio.wait_for(pipeline.stdout.readexactly(16_384), timeout=10.0)
        assert data == b"\0" * 16_384
    assert texts
    assert "IF=" in pipeline.demod_tail.text
    assert pipeline.demod_proc.returncode is not None
    assert pipeline.encoder_proc.returncode is not None


@pytest.mark.anyio
async def test_wait_reports_demodulator_exit(fake_bin: dict[str, Path]) -> None:
    async with Pipeline(_softfm(fake_bin, {"FAKE_SOFTFM_MODE": "fail"}), _ffmpeg(fake_bin)) as pipeline:
        with pytest.raises(PipelineError, match="softfm exited with code 3"):
            await asyncio.wait_for(pipeline.wait(), timeout=10.0)
        # Give the stderr drain a moment to catch the last line
        await asyncio.sleep(0.1)
        error = pipeline.exit_error()
    assert error is not None
    assert "can not open rtlsdr device" in str(error)


@pytest.mark.anyio
async def test_close_is_idempotent(fake_bin: dict[str, Path]) -> None:
    pipeline = Pipeline(_softfm(fake_bin), capture_output=False)
    await pipeline.start()
    await pipeline.close()
    await pipeline.close()
    assert pipeline.closing
    assert pipeline.demod_proc is not None
    assert pipeline.demod_proc.returncode is not None


@pytest.mark.anyio
async def test_uncaptured_output_has_no_stdout(fake_bin: dict[str, Path]) -> None:
    async with Pipeline(_softfm(fake_bin), capture_output=False) as pipeline:
        with pytest.raises(RuntimeError):
            pipeline.stdout


def test_kill_process_tree_ignores_missing_process() -> None:
    kill_process_tree(2**31 - 2)
