"""Tests for the ffmpeg subprocess adapter using shell-script stand-ins."""

from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from moviemimic.exceptions import EncodeError, EncodeTimeoutError
from moviemimic.media import QUALITY_PRESETS, EncodeOptions, FFmpegEncoder, build_command

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


def _script(tmp_path: Path, body: str) -> str:
    path = tmp_path / "fake-ffmpeg"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def _inputs(tmp_path: Path, count: int = 2) -> list[str]:
    paths = []
    for index in range(count):
        path = tmp_path / f"take-{index}.webm"
        path.write_bytes(b"take")
        paths.append(str(path))
    return paths


def test_quality_presets() -> None:
    assert QUALITY_PRESETS["480p"].size == "854x480"
    assert QUALITY_PRESETS["720p"].bitrate == "3000k"
    assert QUALITY_PRESETS["1080p"].size == "1920x1080"
    assert QUALITY_PRESETS["1080p"].bitrate == "6000k"


def test_build_command_for_mp4() -> None:
    command = build_command(
        "ffmpeg", ["a.webm", "b.webm"], "out.mp4", EncodeOptions("mp4", 30, "720p")
    )

    assert command[0] == "ffmpeg"
    assert command[-1] == "out.mp4"
    assert command.count("-i") == 2
    assert command[command.index("-i") + 1] == "a.webm"
    graph = command[command.index("-filter_complex") + 1]
    assert "scale=1280:720" in graph
    assert "fps=30" in graph
    assert graph.endswith("[v0][a0][v1][a1]concat=n=2:v=1:a=1[outv][outa]")
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[command.index("-c:a") + 1] == "aac"
    assert command[command.index("-b:v") + 1] == "3000k"
    assert command[command.index("-s") + 1] == "1280x720"
    assert command[command.index("-pix_fmt") + 1] == "yuv420p"
    assert command[command.index("-r") + 1] == "30"
    assert "+faststart" in command


def test_build_command_for_webm() -> None:
    command = build_command(
        "ffmpeg", ["a.webm"], "out.webm", EncodeOptions("webm", 24, "480p")
    )

    assert command[command.index("-c:v") + 1] == "libvpx-vp9"
    assert command[command.index("-c:a") + 1] == "libopus"
    assert command[command.index("-b:v") + 1] == "1500k"
    assert "-movflags" not in command


def test_build_command_rejects_unknown_preset() -> None:
    with pytest.raises(EncodeError):
        build_command("ffmpeg", ["a.webm"], "out.mp4", EncodeOptions("mp4", 30, "4k"))
    with pytest.raises(EncodeError):
        build_command("ffmpeg", ["a.webm"], "out.avi", EncodeOptions("avi", 30, "720p"))


@posix_only
@pytest.mark.asyncio
async def test_encode_success_writes_output(tmp_path: Path) -> None:
    binary = _script(tmp_path, 'for last; do :; done\nprintf rendered > "$last"\n')
    output = tmp_path / "out.mp4"

    await FFmpegEncoder(binary).encode(_inputs(tmp_path), str(output), EncodeOptions())

    assert output.read_bytes() == b"rendered"


@posix_only
@pytest.mark.asyncio
async def test_encode_failure_reports_first_stderr_line(tmp_path: Path) -> None:
    binary = _script(
        tmp_path,
        'for last; do :; done\nprintf partial > "$last"\n'
        'echo "take-0.webm: Invalid data found when processing input" >&2\n'
        'echo "second line" >&2\nexit 1\n',
    )
    output = tmp_path / "out.mp4"

    with pytest.raises(EncodeError) as excinfo:
        await FFmpegEncoder(binary).encode(_inputs(tmp_path), str(output), EncodeOptions())

    assert "Invalid data found when processing input" in str(excinfo.value)
    assert "second line" not in str(excinfo.value)
    assert not output.exists()


@posix_only
@pytest.mark.asyncio
async def test_encode_timeout_kills_process(tmp_path: Path) -> None:
    binary = _script(tmp_path, 'for last; do :; done\nprintf partial > "$last"\nexec sleep 10\n')
    output = tmp_path / "out.mp4"

    with pytest.raises(EncodeTimeoutError):
        await FFmpegEncoder(binary, timeout=0.5).encode(
            _inputs(tmp_path), str(output), EncodeOptions()
        )

    assert not output.exists()


@pytest.mark.asyncio
async def test_encode_rejects_missing_inputs(tmp_path: Path) -> None:
    encoder = FFmpegEncoder("ffmpeg")

    with pytest.raises(EncodeError):
        await encoder.encode([], str(tmp_path / "out.mp4"), EncodeOptions())
    with pytest.raises(EncodeError):
        await encoder.encode(
            [str(tmp_path / "absent.webm")], str(tmp_path / "out.mp4"), EncodeOptions()
        )


@pytest.mark.asyncio
async def test_encode_reports_missing_binary(tmp_path: Path) -> None:
    encoder = FFmpegEncoder(str(tmp_path / "no-such-ffmpeg"))

    with pytest.raises(EncodeError):
        await encoder.encode(_inputs(tmp_path, 1), str(tmp_path / "out.mp4"), EncodeOptions())


@pytest.mark.asyncio
async def test_encode_rejects_directory_input(tmp_path: Path) -> None:
    folder = tmp_path / "not-a-take"
    folder.mkdir()

    with pytest.raises(EncodeError):
        await FFmpegEncoder("ffmpeg").encode(
            [str(folder)], str(tmp_path / "out.mp4"), EncodeOptions()
        )
