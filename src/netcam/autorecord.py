"""Persistent set of cameras that record automatically while online."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable, Protocol

from .cameras import Camera, CameraID, CameraStatus
from .recording import PermissionDeniedError
from .registry import CameraRef, SessionRegistry
from .system_log import SystemLog

logger = logging.getLogger(__name__)


class StatusSource(Protocol):
    async def probe(self, camera: CameraRef) -> CameraStatus: ...


class AutoRecordStore:
    """Keep the auto-record set on disk and reconcile it with live sessions.

    The set is a JSON array of camera records that is rewritten in full on
    every change. Reconciliation is pull based: callers report observed
    camera status through :meth:`observe` or :meth:`reconcile`.
    """

    def __init__(
        self,
        path: Path | str,
        registry: SessionRegistry,
        *,
        prober: StatusSource | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        self._path = Path(path)
        self._registry = registry
        self._prober = prober
        self._system_log = system_log
        self._lock = asyncio.Lock()
        self._cameras: dict[CameraID, Camera] = {}
        self._last_status: dict[CameraID, CameraStatus] = {}
        for camera in self._load():
            self._cameras[camera.id] = camera

    @property
    def path(self) -> Path:
        return self._path

    def cameras(self) -> list[Camera]:
        return list(self._cameras.values())

    def is_enabled(self, camera: CameraRef) -> bool:
        return CameraID.parse(camera) in self._cameras

    def _load(self) -> list[Camera]:
        if not self._path.exists():
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unable to read auto-record list %s: %s", self._path, exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Ignoring malformed auto-record list %s", self._path)
            return []
        cameras = []
        for item in payload:
            try:
                cameras.append(Camera.from_record(item))
            except ValueError as exc:
                logger.warning("Skipping invalid auto-record entry %r: %s", item, exc)
        return cameras

    def _write(self, records: list[dict[str, str]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        temp_path.write_text(json.dumps(records, indent=2), encoding="utf-8")
        temp_path.replace(self._path)

    async def _persist(self) -> None:
        records = [camera.to_record() for camera in self._cameras.values()]
        await asyncio.to_thread(self._write, records)

    async def enable(self, camera: CameraRef) -> bool:
        """Add ``camera`` to the set and start recording if it is online.

        Returns whether a recording session is running afterwards.
        """

        target = Camera.coerce(camera)
        async with self._lock:
            if target.id not in self._cameras:
                self._cameras[target.id] = target.with_status(CameraStatus.UNKNOWN)
                await self._persist()
                self._log("enabled", f"Auto-record enabled for {target.display_name}.", target.id)
            status = target.status
            if status is CameraStatus.UNKNOWN and self._prober is not None:
                status = await self._prober.probe(target)
            self._last_status[target.id] = status
            if status is not CameraStatus.ONLINE:
                return self._registry.is_recording(target.id)
            return await self._registry.start(target)

    async def disable(self, camera: CameraRef) -> None:
        """Remove ``camera`` from the set and stop any running session."""

        camera_id = CameraID.parse(camera)
        async with self._lock:
            removed = self._cameras.pop(camera_id, None)
            self._last_status.pop(camera_id, None)
            if removed is not None:
                await self._persist()
                self._log("disabled", f"Auto-record disabled for {removed.display_name}.", camera_id)
            await self._registry.stop(camera_id)

    async def observe(self, camera: CameraRef, status: CameraStatus | str | None = None) -> None:
        """Apply one observed status to the recording state of ``camera``."""

        target = Camera.coerce(camera)
        observed = CameraStatus.parse(status if status is not None else target.status)
        async with self._lock:
            await self._apply(target, observed)

    async def reconcile(self, cameras: Iterable[CameraRef]) -> None:
        async with self._lock:
            for item in cameras:
                target = Camera.coerce(item)
                await self._apply(target, target.status)

    async def _apply(self, camera: Camera, status: CameraStatus) -> None:
        stored = self._cameras.get(camera.id)
        if stored is None or status is CameraStatus.UNKNOWN:
            return
        previous = self._last_status.get(camera.id)
        self._last_status[camera.id] = status
        if status is CameraStatus.ONLINE:
            if self._registry.is_recording(camera.id):
                return
            logger.info("Auto-recording camera %s", camera.id)
            if previous is not CameraStatus.ONLINE:
                self._log("online", f"{stored.display_name} came online.", camera.id)
            try:
                await self._registry.start(stored.with_status(status))
            except PermissionDeniedError as exc:
                logger.warning("Cannot auto-record camera %s: %s", camera.id, exc)
        elif status is CameraStatus.OFFLINE and self._registry.is_recording(camera.id):
            logger.info("Camera %s went offline; stopping auto-recording", camera.id)
            self._log("offline", f"{stored.display_name} went offline.", camera.id)
            await self._registry.stop(camera.id)

    def _log(self, event: str, message: str, camera: CameraID) -> None:
        if self._system_log is None:
            return
        self._system_log.record("autorecord", event, message, camera=camera)


__all__ = ["AutoRecordStore", "StatusSource"]
