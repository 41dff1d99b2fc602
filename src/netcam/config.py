"""Configuration management for NetCam."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping

from .cameras import Camera, CameraID

DEFAULT_DATA_DIR = Path(os.environ.get("NETCAM_DATA_DIR", "data"))
DEFAULT_CONFIG_PATH = Path(os.environ.get("NETCAM_CONFIG", DEFAULT_DATA_DIR / "config.json"))

RECORDING_CONTAINERS = ("mjpeg", "mp4")
VIDEO_QUALITIES = ("low", "medium", "high")


def _coerce_positive(value: Any, name: str) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(numeric) or numeric <= 0:
        raise ValueError(f"{name} must be a positive finite value")
    return numeric


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """Tunables for recording sessions."""

    rotation_interval_s: float = 60 * 60
    max_duration_s: float | None = 24 * 60 * 60
    max_buffer_frames: int = 60
    error_threshold: int = 5
    image_fallback_enabled: bool = True
    fallback_frame_stride: int = 3
    fallback_album_every: int = 30
    save_fallback_to_media_library: bool = True
    time_based_writing: bool = False
    write_interval_s: float = 10.0
    frame_rate_window: int = 5
    container: str = "mjpeg"

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "rotation_interval_s",
            _coerce_positive(self.rotation_interval_s, "Rotation interval"),
        )
        if self.max_duration_s is not None:
            object.__setattr__(
                self, "max_duration_s", _coerce_positive(self.max_duration_s, "Max duration")
            )
        object.__setattr__(
            self, "write_interval_s", _coerce_positive(self.write_interval_s, "Write interval")
        )
        for field_name in (
            "max_buffer_frames",
            "fallback_frame_stride",
            "fallback_album_every",
            "frame_rate_window",
        ):
            value = int(getattr(self, field_name))
            if value < 1:
                raise ValueError(f"{field_name} must be at least 1")
            object.__setattr__(self, field_name, value)
        threshold = int(self.error_threshold)
        if threshold < 0:
            raise ValueError("Error threshold must not be negative")
        object.__setattr__(self, "error_threshold", threshold)
        container = str(self.container).strip().lower()
        if container not in RECORDING_CONTAINERS:
            raise ValueError(f"Unknown recording container: {self.container}")
        object.__setattr__(self, "container", container)

    def to_dict(self) -> dict[str, object]:
        return {
            "rotation_interval_s": self.rotation_interval_s,
            "max_duration_s": self.max_duration_s,
            "max_buffer_frames": self.max_buffer_frames,
            "error_threshold": self.error_threshold,
            "image_fallback_enabled": self.image_fallback_enabled,
            "fallback_frame_stride": self.fallback_frame_stride,
            "fallback_album_every": self.fallback_album_every,
            "save_fallback_to_media_library": self.save_fallback_to_media_library,
            "time_based_writing": self.time_based_writing,
            "write_interval_s": self.write_interval_s,
            "frame_rate_window": self.frame_rate_window,
            "container": self.container,
        }


@dataclass(frozen=True, slots=True)
class TransportSettings:
    """Connection and reconnection parameters for camera transports."""

    connect_timeout_s: float = 2.0
    reconnect_delay_s: float = 5.0
    reconnect_multiplier: float = 2.0
    reconnect_max_delay_s: float = 60.0
    reconnect_max_attempts: int | None = None
    video_quality: str = "medium"

    def __post_init__(self) -> None:
        for field_name in ("connect_timeout_s", "reconnect_delay_s", "reconnect_max_delay_s"):
            object.__setattr__(
                self, field_name, _coerce_positive(getattr(self, field_name), field_name)
            )
        multiplier = float(self.reconnect_multiplier)
        if not math.isfinite(multiplier) or multiplier < 1.0:
            raise ValueError("Reconnect multiplier must be at least 1")
        object.__setattr__(self, "reconnect_multiplier", multiplier)
        if self.reconnect_max_delay_s < self.reconnect_delay_s:
            raise ValueError("Reconnect max delay must not be below the initial delay")
        if self.reconnect_max_attempts is not None:
            attempts = int(self.reconnect_max_attempts)
            if attempts < 0:
                raise ValueError("Reconnect attempts must not be negative")
            object.__setattr__(self, "reconnect_max_attempts", attempts)
        quality = str(self.video_quality).strip().lower()
        if quality not in VIDEO_QUALITIES:
            raise ValueError(f"Unknown video quality: {self.video_quality}")
        object.__setattr__(self, "video_quality", quality)

    def to_dict(self) -> dict[str, object]:
        return {
            "connect_timeout_s": self.connect_timeout_s,
            "reconnect_delay_s": self.reconnect_delay_s,
            "reconnect_multiplier": self.reconnect_multiplier,
            "reconnect_max_delay_s": self.reconnect_max_delay_s,
            "reconnect_max_attempts": self.reconnect_max_attempts,
            "video_quality": self.video_quality,
        }


@dataclass(frozen=True, slots=True)
class PacerSettings:
    """Display pacing parameters."""

    max_queue: int = 10
    trim_to: int = 5
    freshness_threshold: int = 3
    status_refresh_interval_s: float = 30.0

    def __post_init__(self) -> None:
        if self.max_queue < 1:
            raise ValueError("Pacer queue limit must be at least 1")
        if not (1 <= self.trim_to <= self.max_queue):
            raise ValueError("Pacer trim size must be between 1 and the queue limit")
        if self.freshness_threshold < 0:
            raise ValueError("Freshness threshold must not be negative")
        if self.status_refresh_interval_s < 0:
            raise ValueError("Status refresh interval must not be negative")

    def to_dict(self) -> Dict[str, object]:
        return {
            "max_queue": int(self.max_queue),
            "trim_to": int(self.trim_to),
            "freshness_threshold": int(self.freshness_threshold),
            "status_refresh_interval_s": float(self.status_refresh_interval_s),
        }


DEFAULT_RECORDING_SETTINGS = RecordingSettings()
DEFAULT_TRANSPORT_SETTINGS = TransportSettings()
DEFAULT_PACER_SETTINGS = PacerSettings()


def _parse_settings(cls, value: Any, *, default):
    if value is None:
        return default
    if isinstance(value, cls):
        return value
    if not isinstance(value, Mapping):
        raise ValueError(f"{cls.__name__} payload must be a mapping")
    known = set(default.to_dict())
    unknown = sorted(set(value) - known)
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")
    try:
        return replace(default, **dict(value))
    except TypeError as exc:  # pragma: no cover
        raise ValueError(str(exc)) from exc


def _parse_cameras(value: Any) -> list[Camera]:
    if value is None:
        return []
    if not isinstance(value, Iterable) or isinstance(value, (str, bytes, Mapping)):
        raise ValueError("Camera list must be an array")
    cameras: list[Camera] = []
    seen: set[CameraID] = set()
    for item in value:
        camera = Camera.from_record(item)
        if camera.id in seen:
            continue
        seen.add(camera.id)
        cameras.append(camera)
    return cameras


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._recording,
            self._transport,
            self._pacer,
            self._cameras,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(
        self,
    ) -> tuple[RecordingSettings, TransportSettings, PacerSettings, list[Camera]]:
        if not self._path.exists():
            return (
                DEFAULT_RECORDING_SETTINGS,
                DEFAULT_TRANSPORT_SETTINGS,
                DEFAULT_PACER_SETTINGS,
                [],
            )
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, Mapping):
                raise ValueError("Configuration root must be an object")
            recording = _parse_settings(
                RecordingSettings, payload.get("recording"), default=DEFAULT_RECORDING_SETTINGS
            )
            transport = _parse_settings(
                TransportSettings, payload.get("transport"), default=DEFAULT_TRANSPORT_SETTINGS
            )
            pacer = _parse_settings(
                PacerSettings, payload.get("pacer"), default=DEFAULT_PACER_SETTINGS
            )
            cameras = _parse_cameras(payload.get("cameras"))
            return recording, transport, pacer, cameras
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "recording": self._recording.to_dict(),
            "transport": self._transport.to_dict(),
            "pacer": self._pacer.to_dict(),
            "cameras": [camera.to_record() for camera in self._cameras],
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_recording_settings(self) -> RecordingSettings:
        with self._lock:
            return self._recording

    def set_recording_settings(self, data: Mapping[str, Any]) -> RecordingSettings:
        with self._lock:
            settings = _parse_settings(RecordingSettings, data, default=self._recording)
            self._recording = settings
            self._save()
        return settings

    def get_transport_settings(self) -> TransportSettings:
        with self._lock:
            return self._transport

    def set_transport_settings(self, data: Mapping[str, Any]) -> TransportSettings:
        with self._lock:
            settings = _parse_settings(TransportSettings, data, default=self._transport)
            self._transport = settings
            self._save()
        return settings

    def get_pacer_settings(self) -> PacerSettings:
        with self._lock:
            return self._pacer

    def set_pacer_settings(self, data: Mapping[str, Any]) -> PacerSettings:
        with self._lock:
            settings = _parse_settings(PacerSettings, data, default=self._pacer)
            self._pacer = settings
            self._save()
        return settings

    def get_cameras(self) -> list[Camera]:
        with self._lock:
            return list(self._cameras)

    def get_camera(self, camera: Camera | CameraID | str) -> Camera | None:
        camera_id = CameraID.parse(camera)
        with self._lock:
            for item in self._cameras:
                if item.id == camera_id:
                    return item
        return None

    def add_camera(self, data: Mapping[str, Any] | Camera) -> Camera:
        camera = data if isinstance(data, Camera) else Camera.from_record(data)
        with self._lock:
            for index, existing in enumerate(self._cameras):
                if existing.id == camera.id:
                    self._cameras[index] = camera
                    break
            else:
                self._cameras.append(camera)
            self._save()
        return camera

    def remove_camera(self, camera: Camera | CameraID | str) -> bool:
        camera_id = CameraID.parse(camera)
        with self._lock:
            remaining = [item for item in self._cameras if item.id != camera_id]
            removed = len(remaining) != len(self._cameras)
            if removed:
                self._cameras = remaining
                self._save()
        return removed

    def update_camera_status(self, camera: Camera) -> None:
        """Record the last observed status in memory; status is never persisted."""

        with self._lock:
            for index, existing in enumerate(self._cameras):
                if existing.id == camera.id:
                    self._cameras[index] = existing.with_status(camera.status)
                    break


__all__ = [
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DATA_DIR",
    "DEFAULT_PACER_SETTINGS",
    "DEFAULT_RECORDING_SETTINGS",
    "DEFAULT_TRANSPORT_SETTINGS",
    "PacerSettings",
    "RECORDING_CONTAINERS",
    "RecordingSettings",
    "TransportSettings",
    "VIDEO_QUALITIES",
]
