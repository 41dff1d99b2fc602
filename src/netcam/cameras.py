"""Camera identity and status types shared by the recording core."""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping

_UNSAFE_CHARS = re.compile(r"[^a-z0-9]", re.IGNORECASE)
_WS_PREFIX = "ws://"
_WS_SUFFIX = "/ws"


def safe_name(text: str) -> str:
    """Return ``text`` with every non alphanumeric character replaced by ``_``."""

    cleaned = _UNSAFE_CHARS.sub("_", str(text or ""))
    return cleaned or "unknown"


class CameraStatus(str, Enum):
    """Reachability of a camera as last observed."""

    ONLINE = "Online"
    OFFLINE = "Offline"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "CameraStatus":
        if isinstance(value, CameraStatus):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for status in cls:
                if status.value.lower() == lowered:
                    return status
        return cls.UNKNOWN


@dataclass(frozen=True, slots=True)
class CameraID:
    """Normalised network address identifying one camera."""

    address: str

    def __post_init__(self) -> None:
        address = self._normalise(self.address)
        if not address:
            raise ValueError("Camera address must be a non-empty string")
        object.__setattr__(self, "address", address)

    @staticmethod
    def _normalise(value: Any) -> str:
        if not isinstance(value, str):
            return ""
        address = value.strip()
        if address.lower().startswith(_WS_PREFIX):
            address = address[len(_WS_PREFIX):]
        address = address.rstrip("/")
        if address.lower().endswith(_WS_SUFFIX):
            address = address[: -len(_WS_SUFFIX)]
        return address.rstrip("/").lower()

    @classmethod
    def parse(cls, value: "CameraID | Camera | Mapping[str, Any] | str") -> "CameraID":
        """Build an identifier from any of the shapes accepted at the boundary."""

        if isinstance(value, CameraID):
            return value
        if isinstance(value, Camera):
            return value.id
        if isinstance(value, Mapping):
            return cls(value.get("ip") or value.get("address") or "")
        if isinstance(value, str):
            return cls(value)
        raise ValueError(f"Unsupported camera identifier: {value!r}")

    @property
    def websocket_url(self) -> str:
        return f"{_WS_PREFIX}{self.address}{_WS_SUFFIX}"

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True, slots=True)
class Camera:
    """A camera known to the user interface layer."""

    id: CameraID
    name: str = ""
    location: str = ""
    status: CameraStatus = CameraStatus.UNKNOWN

    def __post_init__(self) -> None:
        if not isinstance(self.id, CameraID):
            object.__setattr__(self, "id", CameraID.parse(self.id))
        object.__setattr__(self, "name", str(self.name or "").strip())
        object.__setattr__(self, "location", str(self.location or "").strip())
        object.__setattr__(self, "status", CameraStatus.parse(self.status))

    @property
    def display_name(self) -> str:
        return self.name or self.id.address

    @property
    def safe_name(self) -> str:
        return safe_name(self.display_name)

    @property
    def storage_name(self) -> str:
        """Directory, file and album key; unique per address even when names clash."""

        if self.name:
            return safe_name(f"{self.name}_{self.id.address}")
        return safe_name(self.id.address)

    @property
    def is_online(self) -> bool:
        return self.status is CameraStatus.ONLINE

    def with_status(self, status: CameraStatus) -> "Camera":
        return replace(self, status=CameraStatus.parse(status))

    def to_record(self) -> dict[str, str]:
        return {
            "ip": self.id.address,
            "name": self.name,
            "location": self.location,
        }

    def to_dict(self) -> dict[str, str]:
        payload = self.to_record()
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Camera":
        if not isinstance(record, Mapping):
            raise ValueError("Camera record must be a mapping")
        return cls(
            id=CameraID.parse(record),
            name=record.get("name") or "",
            location=record.get("location") or "",
            status=CameraStatus.parse(record.get("status")),
        )

    @classmethod
    def coerce(cls, value: "Camera | CameraID | Mapping[str, Any] | str") -> "Camera":
        if isinstance(value, Camera):
            return value
        if isinstance(value, Mapping):
            return cls.from_record(value)
        return cls(id=CameraID.parse(value))


__all__ = ["Camera", "CameraID", "CameraStatus", "safe_name"]
