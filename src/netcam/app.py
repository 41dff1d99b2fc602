"""FastAPI application wiring together the NetCam services."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .autorecord import AutoRecordStore
from .cameras import Camera, CameraID
from .config import DEFAULT_CONFIG_PATH, DEFAULT_DATA_DIR, ConfigManager
from .diagnostics import collect_diagnostics
from .live import LiveViewer
from .prober import StatusMonitor, StatusProber
from .recording import PermissionDeniedError
from .registry import SessionRegistry
from .storage import LocalMediaStore, MediaStore, format_file_size
from .system_log import SystemLog
from .transport import FrameTransport
from .version import APP_VERSION


class CameraPayload(BaseModel):
    ip: str
    name: str = ""
    location: str = ""


class RecordingSettingsPayload(BaseModel):
    rotation_interval_s: float | None = None
    max_duration_s: float | None = None
    max_buffer_frames: int | None = None
    error_threshold: int | None = None
    image_fallback_enabled: bool | None = None
    fallback_frame_stride: int | None = None
    fallback_album_every: int | None = None
    save_fallback_to_media_library: bool | None = None
    time_based_writing: bool | None = None
    write_interval_s: float | None = None
    frame_rate_window: int | None = None
    container: str | None = None


class TransportSettingsPayload(BaseModel):
    connect_timeout_s: float | None = None
    reconnect_delay_s: float | None = None
    reconnect_multiplier: float | None = None
    reconnect_max_delay_s: float | None = None
    reconnect_max_attempts: int | None = None
    video_quality: str | None = None


class PacerSettingsPayload(BaseModel):
    max_queue: int | None = None
    trim_to: int | None = None
    freshness_threshold: int | None = None
    status_refresh_interval_s: float | None = None


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    data_dir: Path | str | None = None,
    registry: SessionRegistry | None = None,
    prober: StatusProber | None = None,
    media_store: MediaStore | None = None,
    transport_factory: Callable[..., FrameTransport] | None = None,
    system_log: SystemLog | None = None,
    monitor_interval: float | None = None,
) -> FastAPI:
    app = FastAPI(title="NetCam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    root = Path(data_dir) if data_dir is not None else DEFAULT_DATA_DIR
    root.mkdir(parents=True, exist_ok=True)

    shared_system_log = system_log or SystemLog(root / "system_log.jsonl")
    store = media_store or LocalMediaStore(root / "media")
    if registry is None:
        registry = SessionRegistry(
            root=root,
            media_store=store,
            settings=config_manager.get_recording_settings(),
            transport_settings=config_manager.get_transport_settings(),
            transport_factory=transport_factory,
            system_log=shared_system_log,
        )
    status_prober = prober or StatusProber(
        timeout=config_manager.get_transport_settings().connect_timeout_s
    )
    autorecord = AutoRecordStore(
        root / "auto_record_cameras.json",
        registry,
        prober=status_prober,
        system_log=shared_system_log,
    )
    interval = (
        monitor_interval
        if monitor_interval is not None
        else config_manager.get_pacer_settings().status_refresh_interval_s
    )
    monitor = StatusMonitor(
        config_manager,
        status_prober,
        autorecord,
        interval=interval,
        system_log=shared_system_log,
    )
    viewers: dict[CameraID, LiveViewer] = {}

    app.state.config_manager = config_manager
    app.state.registry = registry
    app.state.autorecord = autorecord
    app.state.monitor = monitor
    app.state.system_log = shared_system_log

    def _parse_id(address: str) -> CameraID:
        try:
            return CameraID.parse(address)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    def _require_camera(address: str) -> Camera:
        camera = config_manager.get_camera(_parse_id(address))
        if camera is None:
            raise HTTPException(status_code=404, detail="Unknown camera")
        return camera

    def _describe(camera: Camera) -> dict[str, object]:
        payload: dict[str, object] = camera.to_dict()
        payload["recording"] = registry.is_recording(camera.id)
        payload["auto_record"] = autorecord.is_enabled(camera.id)
        return payload

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        shared_system_log.record("system", "startup", "NetCam application starting up.")
        monitor.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        shared_system_log.record("system", "shutdown", "NetCam application shutting down.")
        await monitor.aclose()
        for viewer in list(viewers.values()):
            await viewer.aclose()
        viewers.clear()
        await registry.aclose()

    @app.get("/api/version")
    async def get_version() -> dict[str, str]:
        return {"version": APP_VERSION}

    @app.get("/api/diagnostics")
    async def get_diagnostics() -> dict[str, object]:
        return await run_in_threadpool(collect_diagnostics, root)

    # ------------------------------------------------------------------
    # Cameras
    # ------------------------------------------------------------------
    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        return {"cameras": [_describe(camera) for camera in config_manager.get_cameras()]}

    @app.post("/api/cameras")
    async def add_camera(payload: CameraPayload) -> dict[str, object]:
        try:
            camera = config_manager.add_camera(payload.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        shared_system_log.record(
            "system", "camera_added", f"Camera {camera.display_name} added.", camera=camera.id
        )
        return _describe(camera)

    @app.delete("/api/cameras/{address}")
    async def remove_camera(address: str) -> dict[str, object]:
        camera = _require_camera(address)
        await autorecord.disable(camera.id)
        await registry.stop(camera.id)
        viewer = viewers.pop(camera.id, None)
        if viewer is not None:
            await viewer.aclose()
        config_manager.remove_camera(camera.id)
        shared_system_log.record(
            "system", "camera_removed", f"Camera {camera.display_name} removed.", camera=camera.id
        )
        return {"removed": str(camera.id)}

    @app.post("/api/cameras/refresh")
    async def refresh_cameras() -> dict[str, object]:
        await monitor.refresh()
        return await list_cameras()

    @app.get("/api/cameras/{address}/preview")
    async def camera_preview(address: str) -> dict[str, str]:
        camera = _require_camera(address)
        frame = await status_prober.fetch_preview_frame(camera)
        if frame is None:
            raise HTTPException(status_code=503, detail="No frame received from camera")
        return {"camera": str(camera.id), "frame": frame}

    @app.get("/api/cameras/{address}/live")
    async def camera_live(address: str) -> StreamingResponse:
        camera = _require_camera(address)
        viewer = viewers.get(camera.id)
        if viewer is None:
            viewer = LiveViewer(
                camera,
                transport_settings=config_manager.get_transport_settings(),
                pacer_settings=config_manager.get_pacer_settings(),
                transport_factory=transport_factory,
                on_status=config_manager.update_camera_status,
                system_log=shared_system_log,
            )
            viewers[camera.id] = viewer
        return StreamingResponse(viewer.stream(), media_type=viewer.media_type)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    @app.post("/api/cameras/{address}/recording/start")
    async def start_recording(address: str) -> dict[str, object]:
        camera = _require_camera(address)
        try:
            started = await registry.start(camera)
        except PermissionDeniedError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        if not started:
            raise HTTPException(status_code=503, detail="Unable to start recording")
        return {"camera": str(camera.id), "recording": True}

    @app.post("/api/cameras/{address}/recording/stop")
    async def stop_recording(address: str) -> dict[str, object]:
        camera_id = _parse_id(address)
        stopped = await registry.stop(camera_id)
        if not stopped:
            logger.warning("Recording for %s did not stop cleanly", camera_id)
        return {"camera": str(camera_id), "recording": registry.is_recording(camera_id)}

    @app.get("/api/cameras/{address}/recording/stats")
    async def recording_stats(address: str) -> dict[str, object]:
        stats = registry.stats(_parse_id(address))
        if stats is None:
            raise HTTPException(status_code=404, detail="Camera is not recording")
        return stats.to_dict()

    @app.get("/api/cameras/{address}/recording/status")
    async def recording_status(address: str) -> dict[str, object]:
        return registry.status(_parse_id(address))

    @app.get("/api/recording/active")
    async def active_recordings() -> dict[str, object]:
        return {"cameras": [str(camera_id) for camera_id in registry.active_cameras()]}

    # ------------------------------------------------------------------
    # Auto-record
    # ------------------------------------------------------------------
    @app.get("/api/autorecord")
    async def list_autorecord() -> dict[str, object]:
        return {"cameras": [camera.to_record() for camera in autorecord.cameras()]}

    @app.post("/api/cameras/{address}/autorecord")
    async def enable_autorecord(address: str) -> dict[str, object]:
        camera = _require_camera(address)
        try:
            recording = await autorecord.enable(camera)
        except PermissionDeniedError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return {"camera": str(camera.id), "auto_record": True, "recording": recording}

    @app.delete("/api/cameras/{address}/autorecord")
    async def disable_autorecord(address: str) -> dict[str, object]:
        camera_id = _parse_id(address)
        await autorecord.disable(camera_id)
        return {"camera": str(camera_id), "auto_record": False, "recording": False}

    # ------------------------------------------------------------------
    # Recordings library
    # ------------------------------------------------------------------
    @app.get("/api/recordings")
    async def list_recordings(camera: str | None = None) -> dict[str, object]:
        if camera:
            target = config_manager.get_camera(_parse_id(camera)) or Camera(id=_parse_id(camera))
            entries = await registry.list_recordings(target)
        else:
            entries = await registry.list_all_recordings()
        return {"recordings": entries}

    @app.get("/api/recordings/storage")
    async def recordings_storage() -> dict[str, object]:
        total = await registry.total_storage_bytes()
        return {"bytes": total, "formatted": format_file_size(total)}

    @app.delete("/api/recordings/{asset_id}")
    async def delete_recording(asset_id: str) -> dict[str, str]:
        if not await registry.delete_recording(asset_id):
            raise HTTPException(status_code=404, detail="Recording not found")
        return {"deleted": asset_id}

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        return {
            "recording": config_manager.get_recording_settings().to_dict(),
            "transport": config_manager.get_transport_settings().to_dict(),
            "pacer": config_manager.get_pacer_settings().to_dict(),
        }

    @app.post("/api/settings/recording")
    async def update_recording_settings(payload: RecordingSettingsPayload) -> dict[str, object]:
        # An explicit null max_duration_s disables the limit.
        data = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None or key == "max_duration_s"
        }
        try:
            settings = config_manager.set_recording_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        registry.apply_settings(recording=settings)
        return settings.to_dict()

    @app.post("/api/settings/transport")
    async def update_transport_settings(payload: TransportSettingsPayload) -> dict[str, object]:
        try:
            settings = config_manager.set_transport_settings(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        registry.apply_settings(transport=settings)
        return settings.to_dict()

    @app.post("/api/settings/pacer")
    async def update_pacer_settings(payload: PacerSettingsPayload) -> dict[str, object]:
        try:
            settings = config_manager.set_pacer_settings(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return settings.to_dict()

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------
    @app.get("/api/logs")
    async def get_logs(
        limit: int = 100,
        category: str | None = None,
        camera: str | None = None,
    ) -> dict[str, object]:
        camera_id = _parse_id(camera) if camera else None
        entries = shared_system_log.tail(limit, category=category, camera=camera_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
