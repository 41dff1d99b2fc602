"""Tests for recording sessions using in-memory collaborators."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime
from pathlib import Path

import pytest

from netcam.config import RecordingSettings
from netcam.recording import (
    FrameValidationError,
    PermissionDeniedError,
    RecordingSession,
    SessionState,
    validate_frame,
)
from netcam.system_log import SystemLog
from netcam.transport import REQUEST_FULL_CONFIG

from conftest import FlakyFileSystem


VIDEO_ALBUM = "Security Recordings - Front_Door_192_168_4_10"


class _UnreadableFileSystem(FlakyFileSystem):
    async def info(self, path):
        raise PermissionError(f"cannot stat {path}")


def _session(
    tmp_path, camera, media_store, filesystem, transports, clock, *, system_log=None, **overrides
):
    values = {"max_duration_s": None}
    values.update(overrides)
    return RecordingSession(
        camera,
        root=tmp_path,
        media_store=media_store,
        filesystem=filesystem,
        transport_factory=transports,
        clock=clock,
        settings=RecordingSettings(**values),
        system_log=system_log,
    )


def _push(session: RecordingSession, payload: str, count: int) -> None:
    for _ in range(count):
        session.on_frame(payload)


@pytest.mark.parametrize("payload", ["QUJD", "  /9j/4AAQ  ", "+abc", "=="])
def test_validate_frame_accepts_base64_like_payloads(payload: str) -> None:
    assert validate_frame(payload) == payload.strip()


@pytest.mark.parametrize("payload", ["", "   ", "*abc", "{json}", None, 42, b"QUJD"])
def test_validate_frame_rejects_invalid_payloads(payload) -> None:
    with pytest.raises(FrameValidationError):
        validate_frame(payload)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_start_opens_transport_and_allocates_file(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock
) -> None:
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    await session.start()

    assert session.state is SessionState.RECORDING_VIDEO
    assert session.is_active
    transport = transports.created[0]
    assert transport.sent == [dict(REQUEST_FULL_CONFIG)]
    assert transport.kwargs["wants_stream"]() is True

    stamp = datetime.fromtimestamp(clock.now).strftime("%Y-%m-%d_%H-%M-%S")
    assert session.current_path == tmp_path / "recordings" / "Front_Door_192_168_4_10" / f"Front_Door_192_168_4_10_{stamp}.mjpeg"
    assert session.camera_dir.is_dir()

    await session.start()
    assert len(transports.created) == 1
    await session.stop()
    assert transport.kwargs["wants_stream"]() is False


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_buffer_flushes_when_full(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    await session.start()

    _push(session, frame_payload, 59)
    await session.wait_for_writes()
    assert session.buffer_size == 59
    assert filesystem.appends == 0

    session.on_frame(frame_payload)
    assert session.buffer_size == 0
    await session.wait_for_writes()
    assert filesystem.appends == 60

    frame_bytes = len(base64.b64decode(frame_payload))
    assert session.current_path.stat().st_size == 60 * frame_bytes
    assert session.stats().current_file_bytes == 60 * frame_bytes
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_flushes_and_registers_recording(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    log = SystemLog()
    session = _session(
        tmp_path, camera, media_store, filesystem, transports, clock, system_log=log
    )
    await session.start()
    session.on_configured(1280, 720)
    _push(session, frame_payload, 10)
    path = session.current_path

    await session.stop()

    assert session.state is SessionState.IDLE
    assert not session.is_active
    assert transports.created[0].closed == 1
    assert path.stat().st_size == 10 * len(base64.b64decode(frame_payload))
    assets = media_store.album_assets(VIDEO_ALBUM)
    assert [asset.filename for asset in assets] == [path.name]
    assert (assets[0].width, assets[0].height) == (1280, 720)
    assert session.finalized_assets == assets
    assert [entry.event for entry in log.tail(category="recording")] == [
        "started",
        "finalized",
        "stopped",
    ]

    session.on_frame(frame_payload)
    assert session.frame_count == 10


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_is_idempotent_and_concurrent_safe(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    await session.start()
    _push(session, frame_payload, 3)

    await asyncio.gather(session.stop(), session.stop())
    await session.stop()

    assert transports.created[0].closed == 1
    assert len(media_store.album_assets(VIDEO_ALBUM)) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_empty_recordings_are_not_registered(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock
) -> None:
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    await session.start()
    path = session.current_path
    path.write_bytes(b"")

    await session.stop()

    assert not path.exists()
    assert media_store.assets == {}
    assert VIDEO_ALBUM not in media_store.albums


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_permission_denied_prevents_start(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock
) -> None:
    media_store.permission = False
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)

    with pytest.raises(PermissionDeniedError):
        await session.start()

    assert session.state is SessionState.IDLE
    assert transports.created == []
    assert not session.camera_dir.exists()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_invalid_frames_count_as_errors(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock
) -> None:
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    await session.start()

    for payload in ("", "   ", "{oops}", 123):
        session.on_frame(payload)

    assert session.frame_count == 4
    assert session.error_count == 4
    assert session.buffer_size == 0
    assert not session.is_image_fallback
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_successful_write_decays_error_count(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path, camera, media_store, filesystem, transports, clock, max_buffer_frames=1
    )
    await session.start()
    filesystem.fail_appends = True
    _push(session, frame_payload, 2)
    await session.wait_for_writes()
    assert session.error_count == 2
    assert session.image_count == 2

    filesystem.fail_appends = False
    session.on_frame(frame_payload)
    await session.wait_for_writes()

    assert session.error_count == 1
    assert not session.is_image_fallback
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_repeated_write_failures_switch_to_image_fallback(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        max_buffer_frames=1,
        error_threshold=5,
    )
    await session.start()
    filesystem.fail_appends = True

    for _ in range(5):
        session.on_frame(frame_payload)
        await session.wait_for_writes()
    assert not session.is_image_fallback

    session.on_frame(frame_payload)
    await session.wait_for_writes()
    assert session.is_image_fallback
    assert session.state is SessionState.RECORDING_IMAGE_FALLBACK
    assert session.image_count == 6

    _push(session, frame_payload, 9)
    await session.wait_for_writes()
    assert session.frame_count == 15
    assert session.image_count == 9
    assert session.buffer_size == 0

    filesystem.fail_appends = False
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    assert session.is_image_fallback
    await session.stop()
    assert media_store.assets == {}


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_fallback_disabled_keeps_counting_errors(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        max_buffer_frames=1,
        error_threshold=0,
        image_fallback_enabled=False,
    )
    await session.start()
    filesystem.fail_appends = True
    _push(session, frame_payload, 3)
    await session.wait_for_writes()

    assert session.error_count == 3
    assert not session.is_image_fallback
    assert session.image_count == 0
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_fallback_images_are_written_and_registered(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        max_buffer_frames=1,
        error_threshold=0,
        fallback_album_every=2,
    )
    await session.start()
    filesystem.fail_appends = True
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    assert session.is_image_fallback

    _push(session, frame_payload, 2)
    await session.wait_for_writes()

    stamp = datetime.fromtimestamp(clock.now)
    frames_dir = session.camera_dir / f"frames_{stamp:%Y%m%d_%H%M%S}"
    assert sorted(path.name for path in frames_dir.iterdir()) == [
        "frame_000000.jpg",
        "frame_000001.jpg",
    ]
    album = f"Frames - Front_Door_192_168_4_10 - {stamp:%Y-%m-%d}"
    assert [asset.filename for asset in media_store.album_assets(album)] == ["frame_000001.jpg"]
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_image_failures_do_not_raise(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        max_buffer_frames=1,
        error_threshold=0,
    )
    await session.start()
    filesystem.fail_appends = True
    filesystem.fail_images = True
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    _push(session, frame_payload, 5)
    await session.wait_for_writes()

    assert session.is_image_fallback
    assert session.image_count == 0
    assert session.error_count == 1
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_rotation_starts_new_file(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        max_buffer_frames=1,
        rotation_interval_s=60,
    )
    await session.start()
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    first = session.current_path

    clock.advance(61)
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    second = session.current_path
    assert second != first
    assert [asset.filename for asset in media_store.album_assets(VIDEO_ALBUM)] == [first.name]

    await session.stop()
    assert [asset.filename for asset in media_store.album_assets(VIDEO_ALBUM)] == [
        first.name,
        second.name,
    ]
    assert media_store.album_requests == [VIDEO_ALBUM]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_time_based_writing_flushes_small_batches(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        time_based_writing=True,
        write_interval_s=5,
    )
    await session.start()
    _push(session, frame_payload, 3)
    await session.wait_for_writes()
    assert filesystem.appends == 0

    clock.advance(6)
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    assert filesystem.appends == 4
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_time_based_writing_waits_for_interval_after_scheduled_flush(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        time_based_writing=True,
        write_interval_s=5,
    )
    await session.start()
    clock.advance(6)
    session.on_frame(frame_payload)
    assert session.buffer_size == 0

    _push(session, frame_payload, 3)
    assert session.buffer_size == 3
    await session.wait_for_writes()
    assert filesystem.appends == 1

    clock.advance(6)
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    assert filesystem.appends == 5
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_finalize_failure_is_logged_not_raised(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    log = SystemLog()
    media_store.fail_create = True
    session = _session(
        tmp_path, camera, media_store, filesystem, transports, clock, system_log=log
    )
    await session.start()
    _push(session, frame_payload, 2)
    path = session.current_path

    await session.stop()

    assert path.exists()
    assert session.state is SessionState.IDLE
    assert "finalize_failed" in [entry.event for entry in log.tail()]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_completes_when_file_cannot_be_inspected(
    anyio_backend, tmp_path, camera, media_store, transports, clock, frame_payload
) -> None:
    log = SystemLog()
    session = _session(
        tmp_path, camera, media_store, _UnreadableFileSystem(), transports, clock, system_log=log
    )
    await session.start()
    session.on_frame(frame_payload)

    await session.stop()

    assert session.state is SessionState.IDLE
    assert not session.is_active
    assert transports.created[0].closed == 1
    events = [entry.event for entry in log.tail()]
    assert "finalize_failed" in events
    assert events[-1] == "stopped"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_rotation_continues_when_finalise_fails(
    anyio_backend, tmp_path, camera, media_store, transports, clock, frame_payload
) -> None:
    filesystem = _UnreadableFileSystem()
    session = _session(
        tmp_path,
        camera,
        media_store,
        filesystem,
        transports,
        clock,
        max_buffer_frames=1,
        rotation_interval_s=60,
    )
    await session.start()
    session.on_frame(frame_payload)
    await session.wait_for_writes()
    first = session.current_path

    clock.advance(61)
    session.on_frame(frame_payload)
    await session.wait_for_writes()

    assert session.current_path != first
    assert session.current_path.exists()
    assert filesystem.appends == 2
    assert session.error_count == 0
    await session.stop()
    assert session.state is SessionState.IDLE


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stats_report_rate_and_sizes(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    started = clock.now
    await session.start()
    session.on_configured(640, 480)
    for _ in range(5):
        session.on_frame(frame_payload)
        clock.advance(0.1)

    stats = session.stats()
    assert stats.frame_count == 5
    assert stats.frame_rate == 10
    assert stats.video_width == 640 and stats.video_height == 480
    assert stats.estimated_bytes_per_frame == len(frame_payload) * 3 // 4
    assert stats.is_image_fallback is False
    assert stats.to_dict()["start_time"] == datetime.fromtimestamp(started).isoformat()

    status = session.status()
    assert status["state"] == "recording_video"
    assert status["buffer_size"] == 5
    await session.stop()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_max_duration_stops_session(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    expired: list[object] = []
    stops: list[asyncio.Task] = []

    def _on_expired(camera_id) -> None:
        expired.append(camera_id)
        stops.append(asyncio.create_task(session.stop()))

    session = RecordingSession(
        camera,
        root=tmp_path,
        media_store=media_store,
        filesystem=filesystem,
        transport_factory=transports,
        clock=clock,
        settings=RecordingSettings(max_duration_s=0.05),
        on_expired=_on_expired,
    )
    await session.start()
    session.on_frame(frame_payload)
    for _ in range(100):
        if stops:
            break
        await asyncio.sleep(0.02)
    await asyncio.wait_for(stops[0], 2)

    assert expired == [camera.id]
    assert session.state is SessionState.IDLE
    assert len(media_store.album_assets(VIDEO_ALBUM)) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_unreachable_camera_keeps_session_connecting(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock
) -> None:
    transports.reachable = False
    session = _session(tmp_path, camera, media_store, filesystem, transports, clock)
    await session.start()

    assert session.is_active
    assert session.state is SessionState.CONNECTING
    await session.stop()
    assert session.state is SessionState.IDLE


def test_camera_dir_is_keyed_on_name_and_address(tmp_path: Path, camera, media_store) -> None:
    session = RecordingSession(camera, root=tmp_path, media_store=media_store)
    assert session.camera_dir == tmp_path / "recordings" / "Front_Door_192_168_4_10"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_max_duration_without_callback_stops_itself(
    anyio_backend, tmp_path, camera, media_store, filesystem, transports, clock, frame_payload
) -> None:
    session = _session(
        tmp_path, camera, media_store, filesystem, transports, clock, max_duration_s=0.05
    )
    await session.start()
    session.on_frame(frame_payload)
    for _ in range(100):
        if session.state is SessionState.IDLE:
            break
        await asyncio.sleep(0.02)
    for _ in range(50):
        if not session._background:
            break
        await asyncio.sleep(0.01)

    assert session.state is SessionState.IDLE
    assert not session.is_active
    assert session._background == set()
    assert len(media_store.album_assets(VIDEO_ALBUM)) == 1
