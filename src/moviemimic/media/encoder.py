"""FFmpeg-backed concatenation of recordings into a rendered export."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Protocol, Sequence

import imageio_ffmpeg as ffmpeg

from ..exceptions import EncodeError, EncodeTimeoutError
from ..storage.files import delete_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QualityPreset:
    width: int
    height: int
    bitrate: str

    @property
    def size(self) -> str:
        return f"{self.width}x{self.height}"


QUALITY_PRESETS: Dict[str, QualityPreset] = {
    "480p": QualityPreset(854, 480, "1500k"),
    "720p": QualityPreset(1280, 720, "3000k"),
    "1080p": QualityPreset(1920, 1080, "6000k"),
}

CODECS: Dict[str, tuple[str, str]] = {
    "mp4": ("libx264", "aac"),
    "webm": ("libvpx-vp9", "libopus"),
}


@dataclass(frozen=True, slots=True)
class EncodeOptions:
    format: str = "mp4"
    fps: int = 30
    quality: str = "720p"


class Encoder(Protocol):
    """Concatenate ``inputs`` in order into ``output``.

    Implementations raise :class:`EncodeError` (or a subclass) on failure and
    leave no partial output behind.
    """

    async def encode(
        self, inputs: Sequence[str], output: str, options: EncodeOptions
    ) -> None: ...


def build_filter_graph(count: int, preset: QualityPreset, fps: int) -> str:
    """Normalise every input to the preset frame and concatenate video and audio."""

    parts: List[str] = []
    labels: List[str] = []
    for index in range(count):
        parts.append(
            f"[{index}:v]scale={preset.width}:{preset.height}:force_original_aspect_ratio=decrease,"
            f"pad={preset.width}:{preset.height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={fps}[v{index}]"
        )
        parts.append(
            f"[{index}:a]aresample=48000,aformat=channel_layouts=stereo[a{index}]"
        )
        labels.append(f"[v{index}][a{index}]")
    parts.append(f"{''.join(labels)}concat=n={count}:v=1:a=1[outv][outa]")
    return ";".join(parts)


def build_command(
    binary: str, inputs: Sequence[str], output: str, options: EncodeOptions
) -> List[str]:
    """Return the ffmpeg argument vector for concatenating ``inputs`` into ``output``."""

    preset = QUALITY_PRESETS.get(options.quality)
    if preset is None:
        raise EncodeError(f"Unsupported quality {options.quality!r}", quality=options.quality)
    codecs = CODECS.get(options.format)
    if codecs is None:
        raise EncodeError(f"Unsupported format {options.format!r}", format=options.format)
    video_codec, audio_codec = codecs

    command = [binary, "-hide_banner", "-nostdin", "-y"]
    for path in inputs:
        command.extend(["-i", str(path)])
    command.extend(
        [
            "-filter_complex",
            build_filter_graph(len(inputs), preset, options.fps),
            "-map",
            "[outv]",
            "-map",
            "[outa]",
            "-c:v",
            video_codec,
            "-c:a",
            audio_codec,
            "-r",
            str(options.fps),
            "-b:v",
            preset.bitrate,
            "-s",
            preset.size,
            "-pix_fmt",
            "yuv420p",
        ]
    )
    if options.format == "mp4":
        command.extend(["-movflags", "+faststart"])
    command.append(str(output))
    return command


def _first_line(stderr: bytes) -> str:
    for line in stderr.decode("utf-8", errors="replace").splitlines():
        if line.strip():
            return line.strip()
    return "no diagnostic output"


def _is_readable_file(path: str) -> bool:
    return Path(path).is_file() and os.access(path, os.R_OK)


class FFmpegEncoder:
    """Run ffmpeg as a subprocess, bounded by an optional timeout."""

    def __init__(self, ffmpeg_path: str | None = None, *, timeout: float | None = None) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._timeout = timeout

    @property
    def binary(self) -> str:
        if self._ffmpeg_path is None:
            try:
                self._ffmpeg_path = ffmpeg.get_ffmpeg_exe()
            except RuntimeError as exc:
                raise EncodeError("No ffmpeg binary available") from exc
        return self._ffmpeg_path

    async def encode(
        self, inputs: Sequence[str], output: str, options: EncodeOptions
    ) -> None:
        if not inputs:
            raise EncodeError("Nothing to encode: no input files")
        for path in inputs:
            if not await asyncio.to_thread(_is_readable_file, path):
                raise EncodeError(f"Input {path} is not readable", path=str(path))

        command = build_command(self.binary, inputs, output, options)
        logger.debug("Starting encoder: %s", " ".join(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EncodeError(f"Could not start ffmpeg: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            await self._kill(process)
            await delete_file(output)
            logger.error("Encoder timed out after %s seconds writing %s", self._timeout, output)
            raise EncodeTimeoutError(
                f"Encoding exceeded {self._timeout} seconds", output=output
            ) from exc
        except asyncio.CancelledError:
            await self._kill(process)
            await delete_file(output)
            logger.info("Encoder cancelled while writing %s", output)
            raise

        if process.returncode != 0:
            await delete_file(output)
            reason = _first_line(stderr or b"")
            logger.error("Encoder exited with %s for %s: %s", process.returncode, output, reason)
            raise EncodeError(
                f"ffmpeg exited with code {process.returncode}: {reason}",
                returncode=process.returncode,
                output=output,
            )
        logger.info("Encoded %d inputs into %s", len(inputs), output)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


__all__ = [
    "CODECS",
    "EncodeOptions",
    "Encoder",
    "FFmpegEncoder",
    "QUALITY_PRESETS",
    "QualityPreset",
    "build_command",
    "build_filter_graph",
]
