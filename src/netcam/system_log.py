"""Persistent event log for recording, transport and policy events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SystemLogEntry:
    """A lifecycle event kept for troubleshooting."""

    timestamp: float
    category: str
    event: str
    message: str
    camera: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.camera:
            payload["camera"] = self.camera
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "SystemLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        camera = payload.get("camera")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category.strip() if isinstance(category, str) and category.strip() else "general",
            event=event,
            message=message,
            camera=camera if isinstance(camera, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SystemLog:
    """Bounded append-only log shared by the recording subsystems.

    Entries live in memory and, when ``path`` is given, in a JSON-lines file.
    The file is compacted back to the in-memory window once it grows past
    twice the retention limit.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._persisted_lines = 0
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare system log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        camera: object | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append an event and return the stored entry."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=cleaned_category or "general",
            event=event,
            message=message,
            camera=str(camera) if camera is not None else None,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        camera: object | None = None,
    ) -> list[SystemLogEntry]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[SystemLogEntry] = list(self._entries)
        if category is not None and category.strip():
            wanted = category.strip()
            entries = [entry for entry in entries if entry.category == wanted]
        if camera is not None:
            wanted_camera = str(camera)
            entries = [entry for entry in entries if entry.camera == wanted_camera]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = SystemLogEntry.from_dict(payload)
            if entry is not None:
                self._entries.append(entry)
        self._persisted_lines = len(lines)

    def _append_persistent(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            if self._persisted_lines >= self._max_entries * 2:
                self._compact()
                return
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
            self._persisted_lines += 1
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)

    def _compact(self) -> None:
        assert self._path is not None
        lines = [json.dumps(item.to_dict(), separators=(",", ":")) for item in self._entries]
        temp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        temp_path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        temp_path.replace(self._path)
        self._persisted_lines = len(lines)

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["SystemLog", "SystemLogEntry"]
