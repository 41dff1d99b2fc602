"""Recording sessions persisting one camera's frame stream to disk."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Deque

from .cameras import Camera, CameraID
from .config import (
    DEFAULT_RECORDING_SETTINGS,
    DEFAULT_TRANSPORT_SETTINGS,
    RecordingSettings,
    TransportSettings,
)
from .encoding import RemuxError, jpeg_dimensions, remux_mjpeg_to_mp4
from .storage import (
    Album,
    Asset,
    LocalFileSystem,
    MediaStore,
    WriteFailedError,
    decode_frame,
)
from .system_log import SystemLog
from .transport import (
    REQUEST_FULL_CONFIG,
    ConnectionClosedError,
    ConnectionFailedError,
    FrameTransport,
    TransportListener,
)

logger = logging.getLogger(__name__)

VIDEO_ALBUM_PREFIX = "Security Recordings - "
FRAMES_ALBUM_PREFIX = "Frames - "

_FRAME_LEAD = re.compile(r"[A-Za-z0-9+/=]")

TransportFactory = Callable[..., FrameTransport]
ExpiryCallback = Callable[[CameraID], "Awaitable[None] | None"]


class PermissionDeniedError(RuntimeError):
    """Raised when the media library refuses storage access."""


class FrameValidationError(ValueError):
    """Raised for frame payloads that cannot be base64 image data."""


class FinalizeFailedError(RuntimeError):
    """Raised when a finished file could not be registered with the media store."""


def validate_frame(payload: object) -> str:
    """Return the trimmed frame payload or raise :class:`FrameValidationError`."""

    if not isinstance(payload, str):
        raise FrameValidationError("Frame payload must be a string")
    data = payload.strip()
    if not data:
        raise FrameValidationError("Frame payload is empty")
    if not _FRAME_LEAD.match(data[0]):
        raise FrameValidationError("Frame payload does not look like base64")
    return data


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RECORDING_VIDEO = "recording_video"
    RECORDING_IMAGE_FALLBACK = "recording_image_fallback"
    FINALIZING = "finalizing"


@dataclass(frozen=True, slots=True)
class SessionStats:
    """Snapshot of a running session's counters."""

    start_time: datetime
    duration_seconds: int
    frame_count: int
    frame_rate: int
    current_file_bytes: int
    total_bytes: int
    is_image_fallback: bool
    error_count: int
    video_width: int
    video_height: int
    estimated_bytes_per_frame: float

    def to_dict(self) -> dict[str, object]:
        return {
            "start_time": self.start_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "frame_count": self.frame_count,
            "frame_rate": self.frame_rate,
            "current_file_bytes": self.current_file_bytes,
            "total_bytes": self.total_bytes,
            "is_image_fallback": self.is_image_fallback,
            "error_count": self.error_count,
            "video_width": self.video_width,
            "video_height": self.video_height,
            "estimated_bytes_per_frame": self.estimated_bytes_per_frame,
        }


def _default_transport_factory(
    camera_id: CameraID,
    listener: TransportListener,
    settings: TransportSettings,
    **kwargs,
) -> FrameTransport:
    return FrameTransport(camera_id, listener, settings, **kwargs)


class RecordingSession(TransportListener):
    """Record the frame stream of ``camera`` below ``root``.

    Frames are buffered in memory and appended in batches to a ``.mjpeg`` file
    that is rotated every ``rotation_interval_s``. Repeated write failures put
    the session into image fallback mode, where every n-th frame is stored as a
    separate JPEG instead. Finished files are registered with ``media_store``.
    """

    def __init__(
        self,
        camera: Camera,
        *,
        root: Path | str,
        media_store: MediaStore,
        filesystem: LocalFileSystem | None = None,
        settings: RecordingSettings = DEFAULT_RECORDING_SETTINGS,
        transport_settings: TransportSettings = DEFAULT_TRANSPORT_SETTINGS,
        transport_factory: TransportFactory | None = None,
        system_log: SystemLog | None = None,
        on_expired: ExpiryCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.camera = camera
        self._root = Path(root)
        self._media_store = media_store
        self._fs = filesystem or LocalFileSystem()
        self._settings = settings
        self._transport_settings = transport_settings
        self._transport_factory = transport_factory or _default_transport_factory
        self._system_log = system_log
        self._on_expired = on_expired
        self._clock = clock

        self._state = SessionState.IDLE
        self._active = False
        self._connected = False
        self._fallback = False
        self._transport: FrameTransport | None = None
        self._write_lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._stop_task: asyncio.Task[None] | None = None
        self._expiry_task: asyncio.Task[None] | None = None

        self._start_time: float | None = None
        self._buffer: list[str] = []
        self._frame_count = 0
        self._frame_rate = 0
        self._intervals: Deque[float] = deque(maxlen=settings.frame_rate_window)
        self._frame_sizes: Deque[int] = deque(maxlen=100)
        self._last_frame_time: float | None = None
        self._last_write_time: float | None = None
        self._last_flush_scheduled: float | None = None
        self._error_count = 0
        self._successful_writes = 0
        self._video_width = 0
        self._video_height = 0
        self._dimensions_probed = False

        self._current_path: Path | None = None
        self._current_started: float | None = None
        self._current_file_bytes = 0
        self._total_bytes = 0
        self._allocated: set[Path] = set()
        self._video_album: Album | None = None
        self._finalized: list[Asset] = []

        self._frames_dir: Path | None = None
        self._image_count = 0
        self._frames_album: Album | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def camera_id(self) -> CameraID:
        return self.camera.id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_image_fallback(self) -> bool:
        return self._fallback

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def image_count(self) -> int:
        return self._image_count

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def current_path(self) -> Path | None:
        return self._current_path

    @property
    def finalized_assets(self) -> list[Asset]:
        return list(self._finalized)

    @property
    def camera_dir(self) -> Path:
        return self._root / "recordings" / self.camera.storage_name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Open the camera stream and begin recording.

        Raises :class:`PermissionDeniedError` when the media store denies
        access. Other setup failures propagate after the session is reset.
        """

        if self._state is not SessionState.IDLE:
            return
        if not await self._media_store.request_permission():
            self._log("permission_denied", "Media library permission denied.")
            raise PermissionDeniedError("Media library permission is required to record")
        self._start_time = self._clock()
        await self._fs.make_dirs(self.camera_dir)
        self._allocate_file()
        self._active = True
        self._state = SessionState.CONNECTING
        self._transport = self._transport_factory(
            self.camera_id,
            self,
            self._transport_settings,
            greeting=(REQUEST_FULL_CONFIG,),
            wants_stream=lambda: self._active,
            system_log=self._system_log,
        )
        logger.info("Starting recording for camera %s", self.camera_id)
        self._log("started", f"Recording started for {self.camera.display_name}.")
        try:
            await self._transport.open()
        except Exception:
            self._active = False
            self._state = SessionState.IDLE
            await self._transport.close()
            self._transport = None
            raise
        if self._settings.max_duration_s is not None and self._active:
            self._expiry_task = asyncio.create_task(
                self._expire_after(self._settings.max_duration_s)
            )

    async def stop(self) -> None:
        """Stop recording, flush buffered frames and finalise the current file."""

        if self._stop_task is None:
            if self._state is SessionState.IDLE and not self._active:
                return
            self._stop_task = asyncio.create_task(self._run_stop())
        task = self._stop_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._stop_task is task:
                self._stop_task = None

    async def _run_stop(self) -> None:
        self._state = SessionState.FINALIZING
        self._active = False
        expiry = self._expiry_task
        self._expiry_task = None
        if expiry is not None and expiry is not asyncio.current_task() and not expiry.done():
            expiry.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await expiry
        transport = self._transport
        self._transport = None
        if transport is not None:
            await transport.close()
        self._connected = False
        try:
            await self.wait_for_writes()
            if self._buffer:
                batch, self._buffer = self._buffer, []
                await self._flush(batch)
            async with self._write_lock:
                await self._finalize_current()
        finally:
            self._state = SessionState.IDLE
        logger.info(
            "Recording stopped for camera %s (%d frames, %d bytes)",
            self.camera_id,
            self._frame_count,
            self._total_bytes,
        )
        self._log(
            "stopped",
            f"Recording stopped for {self.camera.display_name}.",
            frames=self._frame_count,
            total_bytes=self._total_bytes,
            images=self._image_count or None,
        )

    async def wait_for_writes(self) -> None:
        """Wait until every scheduled flush and image write has completed."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._active:
            return
        logger.info("Recording for camera %s reached its maximum duration", self.camera_id)
        self._log("max_duration", "Maximum recording duration reached.")
        if self._on_expired is None:
            task = asyncio.create_task(self.stop())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return
        result = self._on_expired(self.camera_id)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------
    def on_opened(self) -> None:
        self._connected = True
        if self._state is SessionState.CONNECTING:
            self._state = (
                SessionState.RECORDING_IMAGE_FALLBACK
                if self._fallback
                else SessionState.RECORDING_VIDEO
            )

    def on_configured(self, width: int, height: int) -> None:
        self._video_width = int(width)
        self._video_height = int(height)
        self._dimensions_probed = True
        logger.debug("Camera %s reports %dx%d", self.camera_id, width, height)

    def on_closed(self, error: ConnectionClosedError) -> None:
        self._connected = False
        logger.info("Recording stream for %s interrupted: %s", self.camera_id, error)

    def on_unreachable(self, error: ConnectionFailedError) -> None:
        self._connected = False

    def on_frame(self, payload: object) -> None:
        if not self._active:
            return
        now = self._clock()
        self._frame_count += 1
        self._track_frame_rate(now)
        try:
            data = validate_frame(payload)
        except FrameValidationError as exc:
            self._error_count += 1
            logger.debug("Discarding frame from %s: %s", self.camera_id, exc)
            return
        self._frame_sizes.append(len(data) * 3 // 4)
        if not self._dimensions_probed:
            self._probe_dimensions(data)
        if self._fallback:
            if self._frame_count % self._settings.fallback_frame_stride == 0:
                self._spawn(self._write_image(data))
            return
        self._buffer.append(data)
        if len(self._buffer) >= self._settings.max_buffer_frames or self._write_due(now):
            batch, self._buffer = self._buffer, []
            self._last_flush_scheduled = now
            self._spawn(self._flush(batch))

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    def stats(self) -> SessionStats:
        now = self._clock()
        start = self._start_time if self._start_time is not None else now
        sizes = list(self._frame_sizes)
        return SessionStats(
            start_time=datetime.fromtimestamp(start),
            duration_seconds=int(max(0.0, now - start)),
            frame_count=self._frame_count,
            frame_rate=self._frame_rate,
            current_file_bytes=self._current_file_bytes,
            total_bytes=self._total_bytes,
            is_image_fallback=self._fallback,
            error_count=self._error_count,
            video_width=self._video_width,
            video_height=self._video_height,
            estimated_bytes_per_frame=(sum(sizes) / len(sizes)) if sizes else 0.0,
        )

    def status(self) -> dict[str, object]:
        """Return a detailed view of the session for troubleshooting."""

        def _iso(value: float | None) -> str | None:
            return datetime.fromtimestamp(value).isoformat() if value is not None else None

        return {
            "camera": str(self.camera_id),
            "name": self.camera.display_name,
            "state": self._state.value,
            "active": self._active,
            "connected": self._connected,
            "image_fallback": self._fallback,
            "buffer_size": len(self._buffer),
            "pending_writes": len(self._pending),
            "frame_count": self._frame_count,
            "image_count": self._image_count,
            "error_count": self._error_count,
            "successful_writes": self._successful_writes,
            "last_frame_time": _iso(self._last_frame_time),
            "last_write_time": _iso(self._last_write_time),
            "video_width": self._video_width,
            "video_height": self._video_height,
            "current_file": str(self._current_path) if self._current_path else None,
            "current_file_bytes": self._current_file_bytes,
            "total_bytes": self._total_bytes,
            "frames_dir": str(self._frames_dir) if self._frames_dir else None,
            "finalized_files": [asset.filename for asset in self._finalized],
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _track_frame_rate(self, now: float) -> None:
        if self._last_frame_time is not None:
            self._intervals.append(now - self._last_frame_time)
        self._last_frame_time = now
        window = self._settings.frame_rate_window
        if self._frame_count % window == 0 and self._intervals:
            average = sum(self._intervals) / len(self._intervals)
            if average > 0:
                self._frame_rate = int(round(1.0 / average))

    def _write_due(self, now: float) -> bool:
        if not self._settings.time_based_writing:
            return False
        marks = [
            mark
            for mark in (self._last_write_time, self._last_flush_scheduled, self._start_time)
            if mark is not None
        ]
        return bool(marks) and now - max(marks) > self._settings.write_interval_s

    def _probe_dimensions(self, data: str) -> None:
        self._dimensions_probed = True
        try:
            dimensions = jpeg_dimensions(decode_frame(data))
        except WriteFailedError:
            return
        if dimensions is not None:
            self._video_width, self._video_height = dimensions

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _allocate_file(self) -> Path:
        started = self._clock()
        stamp = datetime.fromtimestamp(started).strftime("%Y-%m-%d_%H-%M-%S")
        stem = f"{self.camera.storage_name}_{stamp}"
        candidate = self.camera_dir / f"{stem}.mjpeg"
        suffix = 2
        while candidate in self._allocated or candidate.exists():
            candidate = self.camera_dir / f"{stem}_{suffix}.mjpeg"
            suffix += 1
        self._allocated.add(candidate)
        self._current_path = candidate
        self._current_started = started
        self._current_file_bytes = 0
        return candidate

    def _rotation_due(self) -> bool:
        if self._current_started is None:
            return False
        return self._clock() - self._current_started >= self._settings.rotation_interval_s

    async def _flush(self, batch: list[str]) -> None:
        async with self._write_lock:
            await self._write_batch(batch)

    async def _write_batch(self, batch: list[str]) -> None:
        written = 0
        try:
            for frame in batch:
                if self._current_path is None:
                    self._allocate_file()
                elif self._rotation_due():
                    await self._rotate()
                assert self._current_path is not None
                size = await self._fs.append_base64(self._current_path, frame)
                self._current_file_bytes += size
                self._total_bytes += size
                written += 1
        except WriteFailedError as exc:
            await self._handle_write_failure(exc, batch[written:])
            return
        if not batch:
            return
        self._successful_writes += 1
        self._error_count = max(0, self._error_count - 1)
        self._last_write_time = self._clock()

    async def _handle_write_failure(self, error: WriteFailedError, unwritten: list[str]) -> None:
        self._error_count += 1
        logger.warning(
            "Write failed for camera %s (%d consecutive errors): %s",
            self.camera_id,
            self._error_count,
            error,
        )
        if not self._settings.image_fallback_enabled:
            return
        if not self._fallback and self._error_count > self._settings.error_threshold:
            self._enter_fallback()
        stride = self._settings.fallback_frame_stride
        for index, frame in enumerate(unwritten):
            if index % stride == 0:
                await self._save_image(frame)

    def _enter_fallback(self) -> None:
        self._fallback = True
        if self._state in (SessionState.RECORDING_VIDEO, SessionState.CONNECTING):
            self._state = SessionState.RECORDING_IMAGE_FALLBACK
        logger.warning("Camera %s switched to image fallback mode", self.camera_id)
        self._log(
            "image_fallback",
            f"Switched {self.camera.display_name} to image fallback.",
            error_count=self._error_count,
        )

    async def _rotate(self) -> None:
        logger.info("Rotating recording file for camera %s", self.camera_id)
        await self._finalize_current()
        self._allocate_file()

    async def _finalize_current(self) -> Asset | None:
        path = self._current_path
        self._current_path = None
        self._current_started = None
        if path is None:
            return None
        try:
            info = await self._fs.info(path)
            if not info.exists:
                return None
            if info.size == 0:
                await self._fs.remove(path)
                return None
            asset = await self._register_video(path)
        except Exception as exc:
            error = FinalizeFailedError(f"Unable to finalise {path.name}: {exc}")
            logger.exception("Failed to finalise recording %s", path)
            self._log("finalize_failed", str(error), file=path.name)
            return None
        self._finalized.append(asset)
        self._log("finalized", f"Saved {asset.filename}.", size_bytes=asset.size_bytes)
        return asset

    async def _register_video(self, path: Path) -> Asset:
        media_path = path
        duration = None
        if self._settings.container == "mp4":
            target = path.with_suffix(".mp4")
            fps = self._frame_rate or None
            try:
                result = await asyncio.to_thread(remux_mjpeg_to_mp4, path, target, fps=fps)
            except RemuxError as exc:
                logger.warning("Keeping MJPEG recording %s: %s", path.name, exc)
            else:
                await self._fs.remove(path)
                media_path = target
                duration = result.get("duration_seconds")
        asset = await self._media_store.create_asset(
            media_path,
            width=self._video_width or None,
            height=self._video_height or None,
            duration_s=duration,
        )
        if self._video_album is None:
            self._video_album = await self._media_store.get_or_create_album(
                f"{VIDEO_ALBUM_PREFIX}{self.camera.storage_name}"
            )
        await self._media_store.add_assets_to_album([asset], self._video_album)
        return asset

    async def _write_image(self, data: str) -> None:
        async with self._write_lock:
            await self._save_image(data)

    async def _save_image(self, data: str) -> None:
        try:
            if self._frames_dir is None:
                start = self._start_time if self._start_time is not None else self._clock()
                stamp = datetime.fromtimestamp(start).strftime("%Y%m%d_%H%M%S")
                frames_dir = self.camera_dir / f"frames_{stamp}"
                await self._fs.make_dirs(frames_dir)
                self._frames_dir = frames_dir
            path = self._frames_dir / f"frame_{self._image_count:06d}.jpg"
            await self._fs.write_base64(path, data)
        except WriteFailedError as exc:
            logger.warning("Unable to save fallback image for %s: %s", self.camera_id, exc)
            return
        self._image_count += 1
        if (
            self._settings.save_fallback_to_media_library
            and self._image_count % self._settings.fallback_album_every == 0
        ):
            await self._register_image(path)

    async def _register_image(self, path: Path) -> None:
        try:
            asset = await self._media_store.create_asset(path)
            if self._frames_album is None:
                start = self._start_time if self._start_time is not None else self._clock()
                day = datetime.fromtimestamp(start).strftime("%Y-%m-%d")
                self._frames_album = await self._media_store.get_or_create_album(
                    f"{FRAMES_ALBUM_PREFIX}{self.camera.storage_name} - {day}"
                )
            await self._media_store.add_assets_to_album([asset], self._frames_album)
        except Exception:
            logger.exception("Failed to register fallback image %s", path)

    def _log(self, event: str, message: str, **metadata: object) -> None:
        if self._system_log is None:
            return
        self._system_log.record(
            "recording", event, message, camera=self.camera_id, metadata=dict(metadata)
        )


__all__ = [
    "FRAMES_ALBUM_PREFIX",
    "FinalizeFailedError",
    "FrameValidationError",
    "PermissionDeniedError",
    "RecordingSession",
    "SessionState",
    "SessionStats",
    "VIDEO_ALBUM_PREFIX",
    "validate_frame",
]
