"""Registry owning at most one recording session per camera."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from .cameras import Camera, CameraID
from .config import (
    DEFAULT_RECORDING_SETTINGS,
    DEFAULT_TRANSPORT_SETTINGS,
    RecordingSettings,
    TransportSettings,
)
from .recording import (
    VIDEO_ALBUM_PREFIX,
    PermissionDeniedError,
    RecordingSession,
    SessionStats,
    TransportFactory,
)
from .storage import MEDIA_VIDEO, Asset, LocalFileSystem, MediaStore, format_file_size
from .system_log import SystemLog

logger = logging.getLogger(__name__)

CameraRef = Camera | CameraID | str


class SessionRegistry:
    """Start, stop and inspect recording sessions keyed by :class:`CameraID`."""

    def __init__(
        self,
        *,
        root: Path | str,
        media_store: MediaStore,
        filesystem: LocalFileSystem | None = None,
        settings: RecordingSettings = DEFAULT_RECORDING_SETTINGS,
        transport_settings: TransportSettings = DEFAULT_TRANSPORT_SETTINGS,
        transport_factory: TransportFactory | None = None,
        system_log: SystemLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(root)
        self._media_store = media_store
        self._filesystem = filesystem or LocalFileSystem()
        self._settings = settings
        self._transport_settings = transport_settings
        self._transport_factory = transport_factory
        self._system_log = system_log
        self._clock = clock
        self._sessions: dict[CameraID, RecordingSession] = {}
        self._locks: dict[CameraID, asyncio.Lock] = {}
        self._background: set[asyncio.Task[bool]] = set()

    @property
    def media_store(self) -> MediaStore:
        return self._media_store

    def apply_settings(
        self,
        *,
        recording: RecordingSettings | None = None,
        transport: TransportSettings | None = None,
    ) -> None:
        """Use new settings for sessions started from now on."""

        if recording is not None:
            self._settings = recording
        if transport is not None:
            self._transport_settings = transport

    def _lock_for(self, camera_id: CameraID) -> asyncio.Lock:
        lock = self._locks.get(camera_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[camera_id] = lock
        return lock

    def _create_session(self, camera: Camera) -> RecordingSession:
        return RecordingSession(
            camera,
            root=self._root,
            media_store=self._media_store,
            filesystem=self._filesystem,
            settings=self._settings,
            transport_settings=self._transport_settings,
            transport_factory=self._transport_factory,
            system_log=self._system_log,
            on_expired=self._handle_expired,
            clock=self._clock,
        )

    async def start(self, camera: CameraRef) -> bool:
        """Start recording ``camera``.

        Returns ``True`` when a session is running afterwards, including when
        one already was, and ``False`` when the session could not be set up.
        :class:`PermissionDeniedError` propagates to the caller.
        """

        target = Camera.coerce(camera)
        async with self._lock_for(target.id):
            existing = self._sessions.get(target.id)
            if existing is not None and existing.is_active:
                return True
            session = self._create_session(target)
            try:
                await session.start()
            except PermissionDeniedError:
                raise
            except Exception as exc:
                logger.exception("Unable to start recording for camera %s", target.id)
                self._log("start_failed", f"Unable to start recording: {exc}", target.id)
                return False
            self._sessions[target.id] = session
            return True

    async def stop(self, camera: CameraRef) -> bool:
        """Stop recording ``camera``; succeeds when nothing is recording."""

        camera_id = CameraID.parse(camera)
        async with self._lock_for(camera_id):
            session = self._sessions.pop(camera_id, None)
            if session is None:
                return True
            try:
                await session.stop()
            except Exception as exc:
                logger.exception("Error while stopping recording for camera %s", camera_id)
                self._log("stop_failed", f"Error while stopping recording: {exc}", camera_id)
                return False
            return True

    def is_recording(self, camera: CameraRef) -> bool:
        session = self._sessions.get(CameraID.parse(camera))
        return session is not None and session.is_active

    def get_session(self, camera: CameraRef) -> RecordingSession | None:
        return self._sessions.get(CameraID.parse(camera))

    def stats(self, camera: CameraRef) -> SessionStats | None:
        session = self._sessions.get(CameraID.parse(camera))
        if session is None:
            return None
        return session.stats()

    def status(self, camera: CameraRef) -> dict[str, object]:
        camera_id = CameraID.parse(camera)
        session = self._sessions.get(camera_id)
        if session is None:
            return {"camera": str(camera_id), "recording": False}
        payload = session.status()
        payload["recording"] = session.is_active
        return payload

    def active_cameras(self) -> list[CameraID]:
        return [camera_id for camera_id, session in self._sessions.items() if session.is_active]

    async def aclose(self) -> None:
        """Stop every session, e.g. on application shutdown."""

        for camera_id in list(self._sessions):
            await self.stop(camera_id)
        pending = list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _handle_expired(self, camera_id: CameraID) -> None:
        task = asyncio.create_task(self.stop(camera_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Media library views
    # ------------------------------------------------------------------
    async def list_recordings(self, camera: CameraRef) -> list[dict[str, object]]:
        """Return finished recordings of ``camera``, newest first."""

        target = Camera.coerce(camera)
        title = f"{VIDEO_ALBUM_PREFIX}{target.storage_name}"
        for album in await self._media_store.list_albums(VIDEO_ALBUM_PREFIX):
            if album.title == title:
                assets = await self._media_store.list_assets(album, MEDIA_VIDEO)
                return self._describe(assets, target.storage_name)
        return []

    async def list_all_recordings(self) -> list[dict[str, object]]:
        entries: list[dict[str, object]] = []
        for album in await self._media_store.list_albums(VIDEO_ALBUM_PREFIX):
            camera_name = album.title[len(VIDEO_ALBUM_PREFIX):]
            assets = await self._media_store.list_assets(album, MEDIA_VIDEO)
            entries.extend(self._describe(assets, camera_name))
        entries.sort(key=lambda item: str(item["created_at"]), reverse=True)
        return entries

    async def delete_recording(self, asset_id: str) -> bool:
        removed = await self._media_store.delete_assets([asset_id])
        if removed:
            logger.info("Deleted recording %s", asset_id)
            self._log("deleted", f"Deleted recording {asset_id}.", None)
        return bool(removed)

    async def total_storage_bytes(self) -> int:
        total = 0
        for album in await self._media_store.list_albums(VIDEO_ALBUM_PREFIX):
            for asset in await self._media_store.list_assets(album):
                total += int(asset.size_bytes)
        return total

    @staticmethod
    def _describe(assets: list[Asset], camera_name: str) -> list[dict[str, object]]:
        entries = []
        for asset in sorted(assets, key=lambda item: item.created_at, reverse=True):
            payload = asset.to_dict()
            payload["camera"] = camera_name
            payload["size"] = format_file_size(asset.size_bytes)
            entries.append(payload)
        return entries

    def _log(self, event: str, message: str, camera: CameraID | None) -> None:
        if self._system_log is None:
            return
        self._system_log.record("recording", event, message, camera=camera)


__all__ = ["CameraRef", "SessionRegistry"]
