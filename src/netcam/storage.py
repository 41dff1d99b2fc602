"""Filesystem and media-library collaborators used by recording sessions."""
from __future__ import annotations

import asyncio
import base64
import binascii
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Iterable, Iterator, Protocol, Sequence

PHOTO_SUFFIXES = frozenset({".jpg", ".jpeg"})

MEDIA_VIDEO = "video"
MEDIA_PHOTO = "photo"


class WriteFailedError(RuntimeError):
    """Raised when frame data could not be persisted."""


def decode_frame(data: str) -> bytes:
    """Return the binary payload of a base64 encoded frame."""

    try:
        return base64.b64decode(data.strip(), validate=False)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise WriteFailedError(f"Frame payload is not valid base64: {exc}") from exc


def format_file_size(size: int | float | None) -> str:
    """Render ``size`` bytes using binary units, e.g. ``1.5 KB``."""

    if not size:
        return "0 B"
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    value = round(value, 2)
    if value == int(value):
        return f"{int(value)} {units[index]}"
    return f"{value:g} {units[index]}"


@dataclass(frozen=True, slots=True)
class FileInfo:
    exists: bool
    size: int = 0


class LocalFileSystem:
    """Asynchronous file operations executed on worker threads."""

    async def append_base64(self, path: Path, data: str) -> int:
        """Append decoded ``data`` to ``path``, creating it when missing."""

        payload = decode_frame(data)
        return await self._write(path, payload, "ab")

    async def write_base64(self, path: Path, data: str) -> int:
        payload = decode_frame(data)
        return await self._write(path, payload, "wb")

    async def make_dirs(self, path: Path) -> None:
        try:
            await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise WriteFailedError(f"Unable to create directory {path}: {exc}") from exc

    async def info(self, path: Path) -> FileInfo:
        try:
            return await asyncio.to_thread(self._stat, Path(path))
        except OSError as exc:
            raise WriteFailedError(f"Unable to inspect {path}: {exc}") from exc

    async def remove(self, path: Path) -> None:
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        except OSError as exc:
            raise WriteFailedError(f"Unable to remove {path}: {exc}") from exc

    async def _write(self, path: Path, payload: bytes, mode: str) -> int:
        def _run() -> int:
            with Path(path).open(mode) as handle:
                handle.write(payload)
            return len(payload)

        try:
            return await asyncio.to_thread(_run)
        except OSError as exc:
            raise WriteFailedError(f"Unable to write {path}: {exc}") from exc

    @staticmethod
    def _stat(path: Path) -> FileInfo:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return FileInfo(False, 0)
        return FileInfo(True, int(stat.st_size))


@dataclass(slots=True)
class Asset:
    id: str
    path: str
    filename: str
    media_type: str
    created_at: datetime
    size_bytes: int
    width: int | None = None
    height: int | None = None
    duration_s: float | None = None

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass(slots=True)
class Album:
    id: str
    title: str
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {"id": self.id, "title": self.title, "created_at": self.created_at.isoformat()}


class MediaStore(Protocol):
    """Media library into which finalised recordings are registered."""

    async def request_permission(self) -> bool: ...

    async def create_asset(
        self,
        path: Path,
        *,
        width: int | None = None,
        height: int | None = None,
        duration_s: float | None = None,
    ) -> Asset: ...

    async def get_or_create_album(self, title: str) -> Album: ...

    async def add_assets_to_album(self, assets: Sequence[Asset], album: Album) -> None: ...

    async def list_albums(self, prefix: str | None = None) -> list[Album]: ...

    async def list_assets(self, album: Album, media_type: str | None = None) -> list[Asset]: ...

    async def delete_assets(self, asset_ids: Iterable[str]) -> int: ...


def _media_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in PHOTO_SUFFIXES:
        return MEDIA_PHOTO
    return MEDIA_VIDEO


class LocalMediaStore:
    """SQLite indexed media library rooted at ``base_path``."""

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._db_path = self._base_path / "media.db"
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def base_path(self) -> Path:
        return self._base_path

    # ------------------------------------------------------------------
    # Async facade
    # ------------------------------------------------------------------
    async def request_permission(self) -> bool:
        return await asyncio.to_thread(self.has_permission)

    async def create_asset(
        self,
        path: Path,
        *,
        width: int | None = None,
        height: int | None = None,
        duration_s: float | None = None,
    ) -> Asset:
        return await asyncio.to_thread(
            self.register_asset, Path(path), width=width, height=height, duration_s=duration_s
        )

    async def get_or_create_album(self, title: str) -> Album:
        return await asyncio.to_thread(self.ensure_album, title)

    async def add_assets_to_album(self, assets: Sequence[Asset], album: Album) -> None:
        await asyncio.to_thread(self.link_assets, list(assets), album)

    async def list_albums(self, prefix: str | None = None) -> list[Album]:
        return await asyncio.to_thread(self.albums, prefix)

    async def list_assets(self, album: Album, media_type: str | None = None) -> list[Asset]:
        return await asyncio.to_thread(self.assets, album, media_type)

    async def delete_assets(self, asset_ids: Iterable[str]) -> int:
        return await asyncio.to_thread(self.remove_assets, list(asset_ids))

    # ------------------------------------------------------------------
    # Synchronous implementation
    # ------------------------------------------------------------------
    def has_permission(self) -> bool:
        return self._base_path.is_dir() and os.access(self._base_path, os.W_OK)

    def register_asset(
        self,
        path: Path,
        *,
        width: int | None = None,
        height: int | None = None,
        duration_s: float | None = None,
    ) -> Asset:
        if not path.exists():
            raise FileNotFoundError(f"Media file {path} does not exist")
        asset = Asset(
            id=uuid.uuid4().hex,
            path=str(path),
            filename=path.name,
            media_type=_media_type_for(path),
            created_at=datetime.now(timezone.utc),
            size_bytes=int(path.stat().st_size),
            width=width,
            height=height,
            duration_s=duration_s,
        )
        with self._mutex, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO assets (
                    id, path, filename, media_type, created_at, size_bytes,
                    width, height, duration_s
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    asset.id,
                    asset.path,
                    asset.filename,
                    asset.media_type,
                    asset.created_at.isoformat(),
                    asset.size_bytes,
                    asset.width,
                    asset.height,
                    asset.duration_s,
                ),
            )
        return asset

    def ensure_album(self, title: str) -> Album:
        cleaned = title.strip() if isinstance(title, str) else ""
        if not cleaned:
            raise ValueError("Album title must be a non-empty string")
        with self._mutex, self._connect() as conn:
            row = conn.execute("SELECT * FROM albums WHERE title = ?", (cleaned,)).fetchone()
            if row is not None:
                return self._row_to_album(row)
            album = Album(id=uuid.uuid4().hex, title=cleaned, created_at=datetime.now(timezone.utc))
            conn.execute(
                "INSERT INTO albums (id, title, created_at) VALUES (?, ?, ?)",
                (album.id, album.title, album.created_at.isoformat()),
            )
        return album

    def link_assets(self, assets: Sequence[Asset], album: Album) -> None:
        with self._mutex, self._connect() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO album_assets (album_id, asset_id) VALUES (?, ?)",
                [(album.id, asset.id) for asset in assets],
            )

    def albums(self, prefix: str | None = None) -> list[Album]:
        with self._mutex, self._connect() as conn:
            if prefix:
                rows = conn.execute(
                    "SELECT * FROM albums WHERE substr(title, 1, ?) = ? ORDER BY title",
                    (len(prefix), prefix),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM albums ORDER BY title").fetchall()
        return [self._row_to_album(row) for row in rows]

    def assets(self, album: Album, media_type: str | None = None) -> list[Asset]:
        query = (
            "SELECT a.* FROM assets a JOIN album_assets l ON l.asset_id = a.id "
            "WHERE l.album_id = ?"
        )
        params: list[object] = [album.id]
        if media_type:
            query += " AND a.media_type = ?"
            params.append(media_type)
        query += " ORDER BY a.created_at, a.rowid"
        with self._mutex, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_asset(row) for row in rows]

    def remove_assets(self, asset_ids: Sequence[str]) -> int:
        removed = 0
        with self._mutex, self._connect() as conn:
            for asset_id in asset_ids:
                row = conn.execute("SELECT path FROM assets WHERE id = ?", (asset_id,)).fetchone()
                if row is None:
                    continue
                conn.execute("DELETE FROM album_assets WHERE asset_id = ?", (asset_id,))
                conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
                removed += 1
                Path(row["path"]).unlink(missing_ok=True)
        return removed

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assets (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    media_type TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    width INTEGER,
                    height INTEGER,
                    duration_s REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS albums (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS album_assets (
                    album_id TEXT NOT NULL,
                    asset_id TEXT NOT NULL,
                    PRIMARY KEY (album_id, asset_id)
                )
                """
            )

    @staticmethod
    def _row_to_album(row: sqlite3.Row) -> Album:
        return Album(
            id=str(row["id"]),
            title=str(row["title"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_asset(row: sqlite3.Row) -> Asset:
        return Asset(
            id=str(row["id"]),
            path=str(row["path"]),
            filename=str(row["filename"]),
            media_type=str(row["media_type"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            size_bytes=int(row["size_bytes"]),
            width=row["width"],
            height=row["height"],
            duration_s=row["duration_s"],
        )


__all__ = [
    "Album",
    "Asset",
    "FileInfo",
    "LocalFileSystem",
    "LocalMediaStore",
    "MEDIA_PHOTO",
    "MEDIA_VIDEO",
    "MediaStore",
    "WriteFailedError",
    "decode_frame",
    "format_file_size",
]
