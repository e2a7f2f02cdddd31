"""ffmpeg command lines for the supported output formats.

softfm writes interleaved signed 16-bit little-endian PCM; every encoder reads
that from stdin and writes either a continuous container stream to stdout
(direct delivery) or an fMP4 HLS playlist into a directory (HLS delivery).
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..pipeline import ProcessSpec

if TYPE_CHECKING:
    from ..config import FfmpegConfig, HlsConfig

HLS_PLAYLIST_NAME = "stream.m3u8"
HLS_INIT_NAME = "init.mp4"
HLS_SEGMENT_PATTERN = "seg_%05d.m4s"


@dataclass
class EncoderConfig:
    """Configuration for an audio encoder."""

    format: str  # mp3, aac, opus or hls
    bitrate_kbps: int = 192
    sample_rate: int = 48000
    channels: int = 2


class AudioEncoder(ABC):
    """Base class for ffmpeg encoders."""

    name = "ffmpeg"
    media_type = "application/octet-stream"
    default_bitrate_kbps = 128

    def __init__(self, config: EncoderConfig):
        self.config = config

    def _input_args(self) -> list[str]:
        return [
            "-hide_banner",
            "-loglevel",
            "warning",
            "-f",
            "s16le",  # Input format: signed 16-bit little-endian PCM
            "-ar",
            str(self.config.sample_rate),
            "-ac",
            str(self.config.channels),
            "-i",
            "pipe:0",  # Read from stdin
        ]

    @abstractmethod
    def _get_ffmpeg_args(self) -> list[str]:
        """Get the codec and muxer arguments for this encoder."""
        ...

    def args(self) -> list[str]:
        return [*self._input_args(), *self._get_ffmpeg_args()]

    def process_spec(self, ffmpeg: FfmpegConfig, cwd: str | None = None) -> ProcessSpec:
        return ProcessSpec(
            name=self.name,
            program=ffmpeg.program,
            args=self.args(),
            cwd=cwd,
            env=dict(ffmpeg.env),
            extra_path=list(ffmpeg.extra_path),
        )


class MP3Encoder(AudioEncoder):
    """MP3 audio encoder using ffmpeg."""

    media_type = "audio/mpeg"
    default_bitrate_kbps = 192

    def _get_ffmpeg_args(self) -> list[str]:
        return [
            "-c:a",
            "libmp3lame",
            "-b:a",
            f"{self.config.bitrate_kbps}k",
            "-flush_packets",
            "1",
            "-f",
            "mp3",
            "pipe:1",
        ]


class AACEncoder(AudioEncoder):
    """AAC in fragmented MP4, playable while it is still being written."""

    media_type = "audio/mp4; codecs=mp4a.40.2"
    default_bitrate_kbps = 192

    def _get_ffmpeg_args(self) -> list[str]:
        return [
            "-c:a",
            "aac",
            "-b:a",
            f"{self.config.bitrate_kbps}k",
            "-movflags",
            "+frag_keyframe+empty_moov+default_base_moof",
            "-muxdelay",
            "0",
            "-muxpreload",
            "0",
            "-flush_packets",
            "1",
            "-f",
            "mp4",
            "pipe:1",
        ]


class OpusEncoder(AudioEncoder):
    """Opus in WebM with short clusters for low latency."""

    media_type = "audio/webm; codecs=opus"
    default_bitrate_kbps = 96

    def _get_ffmpeg_args(self) -> list[str]:
        return [
            "-c:a",
            "libopus",
            "-b:a",
            f"{self.config.bitrate_kbps}k",
            "-vbr",
            "on",
            "-compression_level",
            "10",
            "-application",
            "audio",
            "-cluster_time_limit",
            "1000",
            "-cluster_size_limit",
            "0",
            "-flush_packets",
            "1",
            "-f",
            "webm",
            "pipe:1",
        ]


class HlsEncoder(AudioEncoder):
    """AAC in fMP4 HLS segments written relative to the working directory."""

    name = "ffmpeg-hls"
    media_type = "application/vnd.apple.mpegurl"
    default_bitrate_kbps = 320

    def __init__(
        self,
        config: EncoderConfig,
        *,
        codec: str = "aac",
        buffer_seconds: float = 2.0,
        segment_seconds: float = 1.0,
        min_list_size: int = 2,
        max_list_size: int = 20,
    ):
        super().__init__(config)
        self.codec = codec
        self.buffer_seconds = buffer_seconds
        self.segment_seconds = segment_seconds
        self.min_list_size = min_list_size
        self.max_list_size = max_list_size

    @property
    def list_size(self) -> int:
        """Playlist length covering the requested buffer."""
        wanted = math.ceil(max(self.buffer_seconds, 1.0) / self.segment_seconds)
        return max(self.min_list_size, min(self.max_list_size, wanted))

    def _get_ffmpeg_args(self) -> list[str]:
        return [
            "-c:a",
            self.codec,
            "-b:a",
            f"{self.config.bitrate_kbps}k",
            "-f",
            "hls",
            "-hls_time",
            f"{self.segment_seconds:.1f}",
            "-hls_list_size",
            str(self.list_size),
            "-hls_flags",
            "delete_segments+append_list+independent_segments+omit_endlist",
            "-hls_allow_cache",
            "0",
            "-hls_segment_type",
            "fmp4",
            "-hls_fmp4_init_filename",
            HLS_INIT_NAME,
            "-hls_segment_filename",
            HLS_SEGMENT_PATTERN,
            HLS_PLAYLIST_NAME,
        ]


_DIRECT_ENCODERS: dict[str, type[AudioEncoder]] = {
    "mp3": MP3Encoder,
    "aac": AACEncoder,
    "opus": OpusEncoder,
}


def create_encoder(format: str, sample_rate: int = 48000, channels: int = 2) -> AudioEncoder:
    """Factory function to create a direct-delivery encoder for the specified format."""
    key = (format or "").strip().lower()
    encoder_cls = _DIRECT_ENCODERS.get(key)
    if encoder_cls is None:
        raise ValueError(f"Unsupported encoder format: {format}")
    config = EncoderConfig(
        format=key,
        bitrate_kbps=encoder_cls.default_bitrate_kbps,
        sample_rate=sample_rate,
        channels=channels,
    )
    return encoder_cls(config)


def create_hls_encoder(
    hls: HlsConfig,
    *,
    codec: str,
    bitrate_kbps: int,
    buffer_seconds: float,
    sample_rate: int = 48000,
    channels: int = 2,
) -> HlsEncoder:
    config = EncoderConfig(format="hls", bitrate_kbps=bitrate_kbps, sample_rate=sample_rate, channels=channels)
    return HlsEncoder(
        config,
        codec=codec,
        buffer_seconds=buffer_seconds,
        segment_seconds=hls.segment_seconds,
        min_list_size=hls.min_list_size,
        max_list_size=hls.max_list_size,
    )
