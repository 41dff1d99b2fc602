"""Camera reachability probes and the periodic status monitor."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any, Iterable

from .cameras import Camera, CameraID, CameraStatus
from .transport import (
    GET_FRAME,
    ConnectionFailedError,
    Connector,
    VideoMessage,
    close_quietly,
    open_connection,
    parse_message,
)

if TYPE_CHECKING:  # pragma: no cover - imported for annotations only
    from .autorecord import AutoRecordStore
    from .config import ConfigManager
    from .system_log import SystemLog

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 2.0
DEFAULT_PREVIEW_TIMEOUT = 5.0


class StatusProber:
    """Short-lived connection checks against camera websocket endpoints."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        preview_timeout: float = DEFAULT_PREVIEW_TIMEOUT,
        connect: Connector | None = None,
    ) -> None:
        self._timeout = timeout
        self._preview_timeout = preview_timeout
        self._connect = connect

    async def probe(
        self, camera: Camera | CameraID | str, timeout: float | None = None
    ) -> CameraStatus:
        """Return ``Online`` when the camera accepts a connection in time."""

        camera_id = CameraID.parse(camera)
        try:
            connection = await open_connection(
                camera_id.websocket_url,
                timeout=timeout if timeout is not None else self._timeout,
                connect=self._connect,
            )
        except ConnectionFailedError as exc:
            logger.debug("Probe of %s failed: %s", camera_id, exc)
            return CameraStatus.OFFLINE
        await close_quietly(connection)
        return CameraStatus.ONLINE

    async def probe_all(self, cameras: Iterable[Camera | CameraID | str]) -> list[Camera]:
        """Probe ``cameras`` concurrently and return copies with fresh status."""

        targets = [Camera.coerce(camera) for camera in cameras]
        statuses = await asyncio.gather(*(self.probe(camera) for camera in targets))
        return [camera.with_status(status) for camera, status in zip(targets, statuses)]

    async def fetch_preview_frame(
        self, camera: Camera | CameraID | str, timeout: float | None = None
    ) -> str | None:
        """Request a single frame and return its base64 payload, if any arrives."""

        camera_id = CameraID.parse(camera)
        limit = timeout if timeout is not None else self._preview_timeout
        try:
            connection = await open_connection(
                camera_id.websocket_url, timeout=limit, connect=self._connect
            )
        except ConnectionFailedError as exc:
            logger.debug("Preview of %s unavailable: %s", camera_id, exc)
            return None
        try:
            return await asyncio.wait_for(self._await_frame(connection), limit)
        except asyncio.TimeoutError:
            logger.debug("Timed out waiting for a preview frame from %s", camera_id)
            return None
        except Exception as exc:
            logger.debug("Preview request to %s failed: %s", camera_id, exc)
            return None
        finally:
            await close_quietly(connection)

    @staticmethod
    async def _await_frame(connection: Any) -> str | None:
        await connection.send(json.dumps(dict(GET_FRAME)))
        async for raw in connection:
            message = parse_message(raw)
            if isinstance(message, VideoMessage) and isinstance(message.data, str):
                return message.data
        return None


class StatusMonitor:
    """Periodically probe known cameras and feed the auto-record reconciler."""

    def __init__(
        self,
        config: "ConfigManager",
        prober: StatusProber,
        autorecord: "AutoRecordStore | None" = None,
        *,
        interval: float = 30.0,
        system_log: "SystemLog | None" = None,
    ) -> None:
        self._config = config
        self._prober = prober
        self._autorecord = autorecord
        self._interval = interval
        self._system_log = system_log
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _targets(self) -> list[Camera]:
        cameras = {camera.id: camera for camera in self._config.get_cameras()}
        if self._autorecord is not None:
            for camera in self._autorecord.cameras():
                cameras.setdefault(camera.id, camera)
        return list(cameras.values())

    async def refresh(self) -> list[Camera]:
        """Probe every camera once and reconcile auto-recording."""

        updated = await self._prober.probe_all(self._targets())
        for camera in updated:
            previous = self._config.get_camera(camera.id)
            self._config.update_camera_status(camera)
            if (
                self._system_log is not None
                and previous is not None
                and previous.status is not camera.status
            ):
                self._system_log.record(
                    "system",
                    "status_changed",
                    f"{camera.display_name} is {camera.status.value}.",
                    camera=camera.id,
                )
        if self._autorecord is not None:
            await self._autorecord.reconcile(updated)
        return updated

    def start(self) -> None:
        if self._interval <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Camera status refresh failed")
            await asyncio.sleep(self._interval)

    async def aclose(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["DEFAULT_PREVIEW_TIMEOUT", "DEFAULT_PROBE_TIMEOUT", "StatusMonitor", "StatusProber"]
