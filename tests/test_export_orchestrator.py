from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from moviemimic.exceptions import (
    EncodeError,
    ExportCancelledError,
    ExportError,
    ExportInProgressError,
    ExportNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    NoRecordingsError,
    SessionNotFoundError,
    StorageError,
    VideoNotFoundError,
)

SOLO = {"type": "solo", "format": "mp4", "quality": "720p", "fps": 30}
COMPARISON = {"type": "comparison", "format": "webm", "quality": "480p", "fps": 24}


async def _session_with_chunks(core, video, make_upload, count: int = 3):
    session = await core.sessions.create(video.id)
    chunks = [await core.chunks.append(session.id, make_upload(), 1.0) for _ in range(count)]
    return session, chunks


@pytest.mark.asyncio
async def test_solo_export_follows_chunk_order(core, video, make_upload, encoder) -> None:
    session, chunks = await _session_with_chunks(core, video, make_upload)
    await core.chunks.set_order(session.id, [chunks[2].id, chunks[0].id, chunks[1].id])

    export = await core.exports.export_session(session.id, SOLO)

    inputs, output, options = encoder.calls[0]
    assert inputs == [chunks[2].filepath, chunks[0].filepath, chunks[1].filepath]
    assert options.format == "mp4"
    assert options.quality == "720p"
    assert options.fps == 30

    path = Path(export.filepath)
    assert output == export.filepath
    assert path.parent == core.settings.exports_dir
    assert path.name.startswith(f"export_{session.id}_solo_")
    assert path.suffix == ".mp4"
    assert export.filesize == path.stat().st_size
    assert export.type == "solo"
    assert export.downloaded_at is None

    refreshed = await core.sessions.get(session.id)
    assert refreshed.status == "exported"
    assert refreshed.exported_at is not None


@pytest.mark.asyncio
async def test_comparison_export_leads_with_reference_video(core, video, make_upload, encoder) -> None:
    session, chunks = await _session_with_chunks(core, video, make_upload)

    export = await core.exports.export_session(session.id, COMPARISON)

    inputs, _, options = encoder.calls[0]
    assert inputs == [video.filepath] + [chunk.filepath for chunk in chunks]
    assert options.format == "webm"
    assert export.filepath.endswith(".webm")
    assert export.type == "comparison"


@pytest.mark.asyncio
async def test_missing_video_fails_before_encoder(core, video, make_upload, encoder, monkeypatch) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)

    async def _no_video(video_id: str):
        return None

    monkeypatch.setattr(core.store, "get_video", _no_video)

    with pytest.raises(VideoNotFoundError):
        await core.exports.export_session(session.id, COMPARISON)

    assert encoder.calls == []
    assert (await core.sessions.get(session.id)).status == "active"


@pytest.mark.asyncio
async def test_export_requires_recordings(core, video, encoder) -> None:
    session = await core.sessions.create(video.id)

    with pytest.raises(NoRecordingsError):
        await core.exports.export_session(session.id, SOLO)
    with pytest.raises(SessionNotFoundError):
        await core.exports.export_session("missing", SOLO)

    assert encoder.calls == []
    assert (await core.sessions.get(session.id)).status == "active"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "export_settings",
    [
        {**SOLO, "type": "mashup"},
        {**SOLO, "format": "avi"},
        {**SOLO, "quality": "4k"},
        {**SOLO, "fps": 0},
        {**SOLO, "fps": "30"},
        {**SOLO, "fps": 240},
        {**SOLO, "watermark": True},
        {"type": "solo"},
    ],
)
async def test_export_rejects_invalid_settings(core, video, make_upload, encoder, export_settings) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload, count=1)

    with pytest.raises(InvalidInputError):
        await core.exports.export_session(session.id, export_settings)

    assert encoder.calls == []


@pytest.mark.asyncio
async def test_encoder_failure_rolls_back(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.error = EncodeError("ffmpeg exited with code 1: boom")

    with pytest.raises(EncodeError):
        await core.exports.export_session(session.id, SOLO)

    _, output, _ = encoder.calls[0]
    assert not Path(output).exists()
    refreshed = await core.sessions.get(session.id)
    assert refreshed.status == "active"
    assert refreshed.exported_at is None
    assert await core.exports.list_exports(session.id) == []


@pytest.mark.asyncio
async def test_unclassified_failure_becomes_export_error(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.error = RuntimeError("disk on fire")

    with pytest.raises(ExportError) as excinfo:
        await core.exports.export_session(session.id, SOLO)

    assert not isinstance(excinfo.value, EncodeError)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert (await core.sessions.get(session.id)).status == "active"


@pytest.mark.asyncio
async def test_second_export_for_same_session_conflicts(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.gate = asyncio.Event()

    first = asyncio.create_task(core.exports.export_session(session.id, SOLO))
    await asyncio.wait_for(encoder.started.wait(), timeout=5)
    assert (await core.sessions.get(session.id)).status == "exporting"

    with pytest.raises(ExportInProgressError):
        await core.exports.export_session(session.id, SOLO)

    encoder.gate.set()
    export = await asyncio.wait_for(first, timeout=5)
    assert export.session_id == session.id
    assert len(encoder.calls) == 1
    assert (await core.sessions.get(session.id)).status == "exported"


@pytest.mark.asyncio
async def test_cancel_export_rolls_back(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.gate = asyncio.Event()

    running = asyncio.create_task(core.exports.export_session(session.id, SOLO))
    await asyncio.wait_for(encoder.started.wait(), timeout=5)

    assert await core.exports.cancel_export(session.id) is True
    with pytest.raises(ExportCancelledError):
        await asyncio.wait_for(running, timeout=5)

    _, output, _ = encoder.calls[0]
    assert not Path(output).exists()
    assert (await core.sessions.get(session.id)).status == "active"
    assert await core.exports.cancel_export(session.id) is False


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_exports(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.gate = asyncio.Event()

    running = asyncio.create_task(core.exports.export_session(session.id, SOLO))
    await asyncio.wait_for(encoder.started.wait(), timeout=5)

    await core.exports.shutdown()

    with pytest.raises(ExportCancelledError):
        await asyncio.wait_for(running, timeout=5)
    assert (await core.sessions.get(session.id)).status == "active"


@pytest.mark.asyncio
async def test_archived_session_cannot_export(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    await core.sessions.archive(session.id)

    with pytest.raises(InvalidTransitionError):
        await core.exports.export_session(session.id, SOLO)

    assert encoder.calls == []
    assert (await core.sessions.get(session.id)).status == "archived"


@pytest.mark.asyncio
async def test_exported_session_can_export_again(core, video, make_upload) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)

    first = await core.exports.export_session(session.id, SOLO)
    second = await core.exports.export_session(session.id, COMPARISON)

    listed = await core.exports.list_exports(session.id)
    assert [export.id for export in listed] == [second.id, first.id]
    assert first.filepath != second.filepath


@pytest.mark.asyncio
async def test_export_bookkeeping(core, video, make_upload) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    export = await core.exports.export_session(session.id, SOLO)

    status = await core.exports.get_export_status(export.id)
    assert status.export_id == export.id
    assert status.status == "completed"
    assert status.progress == 100

    downloaded = await core.exports.mark_downloaded(export.id)
    assert downloaded.downloaded_at is not None
    again = await core.exports.mark_downloaded(export.id)
    assert again.downloaded_at > downloaded.downloaded_at

    assert (await core.exports.get_export(export.id)).id == export.id

    await core.exports.delete_export(export.id)
    assert not Path(export.filepath).exists()
    with pytest.raises(ExportNotFoundError):
        await core.exports.get_export(export.id)
    with pytest.raises(ExportNotFoundError):
        await core.exports.get_export_status(export.id)
    with pytest.raises(ExportNotFoundError):
        await core.exports.mark_downloaded(export.id)
    with pytest.raises(ExportNotFoundError):
        await core.exports.delete_export(export.id)


@pytest.mark.asyncio
async def test_status_write_waits_for_running_export_that_fails(
    core, video, make_upload, encoder
) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.gate = asyncio.Event()
    encoder.error = EncodeError("ffmpeg exited with code 1: boom")

    running = asyncio.create_task(core.exports.export_session(session.id, SOLO))
    await asyncio.wait_for(encoder.started.wait(), timeout=5)
    write = asyncio.create_task(core.sessions.update(session.id, {"status": "exported"}))
    await asyncio.sleep(0.05)
    assert not write.done()

    encoder.gate.set()
    with pytest.raises(EncodeError):
        await asyncio.wait_for(running, timeout=5)
    with pytest.raises(InvalidTransitionError):
        await asyncio.wait_for(write, timeout=5)

    refreshed = await core.sessions.get(session.id)
    assert refreshed.status == "active"
    assert refreshed.exported_at is None
    assert await core.exports.list_exports(session.id) == []


@pytest.mark.asyncio
async def test_status_write_cannot_fail_a_successful_export(
    core, video, make_upload, encoder
) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.gate = asyncio.Event()

    running = asyncio.create_task(core.exports.export_session(session.id, SOLO))
    await asyncio.wait_for(encoder.started.wait(), timeout=5)
    write = asyncio.create_task(core.sessions.update(session.id, {"status": "failed"}))
    await asyncio.sleep(0.05)
    assert not write.done()

    encoder.gate.set()
    export = await asyncio.wait_for(running, timeout=5)
    with pytest.raises(InvalidTransitionError):
        await asyncio.wait_for(write, timeout=5)

    assert Path(export.filepath).exists()
    assert (await core.sessions.get(session.id)).status == "exported"
    assert [item.id for item in await core.exports.list_exports(session.id)] == [export.id]


@pytest.mark.asyncio
async def test_recover_session_left_exporting(core, video, make_upload, encoder) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    await core.store.update_session(session.id, {"status": "exporting"})

    with pytest.raises(InvalidTransitionError):
        await core.sessions.update(session.id, {"status": "failed"})
    with pytest.raises(InvalidTransitionError):
        await core.sessions.complete(session.id)
    with pytest.raises(ExportInProgressError):
        await core.exports.export_session(session.id, SOLO)

    recovered = await core.exports.recover_session(session.id)
    assert recovered.status == "active"

    export = await core.exports.export_session(session.id, SOLO)
    assert export.session_id == session.id
    assert (await core.exports.recover_session(session.id)).status == "exported"
    with pytest.raises(SessionNotFoundError):
        await core.exports.recover_session("missing")


@pytest.mark.asyncio
async def test_failed_rollback_still_raises_encoder_error(
    core, video, make_upload, encoder, monkeypatch, caplog
) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload)
    encoder.error = EncodeError("ffmpeg exited with code 1: boom")

    async def _broken_reset(session_id: str):
        raise StorageError("database is locked", session_id=session_id)

    monkeypatch.setattr(core.sessions, "reset_after_export", _broken_reset)

    with caplog.at_level(logging.ERROR, logger="moviemimic.runtime.exports"):
        with pytest.raises(EncodeError) as excinfo:
            await core.exports.export_session(session.id, SOLO)

    assert "boom" in str(excinfo.value)
    assert f"Could not return session {session.id} to active" in caplog.text
    _, output, _ = encoder.calls[0]
    assert not Path(output).exists()


@pytest.mark.asyncio
async def test_delete_export_survives_undeletable_file(core, video, make_upload) -> None:
    session, _ = await _session_with_chunks(core, video, make_upload, count=1)
    export = await core.exports.export_session(session.id, SOLO)
    blocked = Path(export.filepath)
    blocked.unlink()
    blocked.mkdir()

    await core.exports.delete_export(export.id)

    assert blocked.is_dir()
    with pytest.raises(ExportNotFoundError):
        await core.exports.get_export(export.id)
