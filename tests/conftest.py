from __future__ import annotations

import base64
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

import pytest

from netcam.cameras import Camera, CameraID, CameraStatus
from netcam.storage import (
    MEDIA_PHOTO,
    MEDIA_VIDEO,
    Album,
    Asset,
    LocalFileSystem,
    WriteFailedError,
)
from netcam.transport import TransportState


def encode(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMediaStore:
    """In-memory media library."""

    def __init__(self, *, permission: bool = True) -> None:
        self.permission = permission
        self.assets: dict[str, Asset] = {}
        self.albums: dict[str, Album] = {}
        self.links: dict[str, list[str]] = {}
        self.album_requests: list[str] = []
        self.fail_create = False

    async def request_permission(self) -> bool:
        return self.permission

    async def create_asset(self, path, *, width=None, height=None, duration_s=None) -> Asset:
        if self.fail_create:
            raise OSError("media library unavailable")
        path = Path(path)
        asset = Asset(
            id=f"asset-{len(self.assets) + 1}",
            path=str(path),
            filename=path.name,
            media_type=MEDIA_PHOTO if path.suffix == ".jpg" else MEDIA_VIDEO,
            created_at=datetime.now(timezone.utc),
            size_bytes=path.stat().st_size,
            width=width,
            height=height,
            duration_s=duration_s,
        )
        self.assets[asset.id] = asset
        return asset

    async def get_or_create_album(self, title: str) -> Album:
        self.album_requests.append(title)
        album = self.albums.get(title)
        if album is None:
            album = Album(id=f"album-{len(self.albums) + 1}", title=title, created_at=datetime.now(timezone.utc))
            self.albums[title] = album
            self.links[album.id] = []
        return album

    async def add_assets_to_album(self, assets: Sequence[Asset], album: Album) -> None:
        self.links[album.id].extend(asset.id for asset in assets)

    async def list_albums(self, prefix: str | None = None) -> list[Album]:
        return [album for title, album in self.albums.items() if not prefix or title.startswith(prefix)]

    async def list_assets(self, album: Album, media_type: str | None = None) -> list[Asset]:
        assets = [self.assets[asset_id] for asset_id in self.links.get(album.id, []) if asset_id in self.assets]
        if media_type:
            assets = [asset for asset in assets if asset.media_type == media_type]
        return assets

    async def delete_assets(self, asset_ids: Iterable[str]) -> int:
        removed = 0
        for asset_id in asset_ids:
            if self.assets.pop(asset_id, None) is not None:
                removed += 1
        return removed

    def album_assets(self, title: str) -> list[Asset]:
        album = self.albums[title]
        return [self.assets[asset_id] for asset_id in self.links[album.id]]


class FlakyFileSystem(LocalFileSystem):
    """Local filesystem whose appends can be made to fail on demand."""

    def __init__(self) -> None:
        self.fail_appends = False
        self.fail_images = False
        self.appends = 0

    async def append_base64(self, path: Path, data: str) -> int:
        if self.fail_appends:
            raise WriteFailedError("disk full")
        self.appends += 1
        return await super().append_base64(path, data)

    async def write_base64(self, path: Path, data: str) -> int:
        if self.fail_images:
            raise WriteFailedError("disk full")
        return await super().write_base64(path, data)


class FakeTransport:
    """Stands in for :class:`netcam.transport.FrameTransport`."""

    def __init__(self, camera_id: CameraID, listener, settings, *, reachable: bool = True, **kwargs) -> None:
        self.camera_id = camera_id
        self.listener = listener
        self.settings = settings
        self.kwargs = kwargs
        self.reachable = reachable
        self.state = TransportState.IDLE
        self.opened = 0
        self.closed = 0
        self.sent: list[dict] = []

    async def open(self) -> bool:
        self.opened += 1
        if not self.reachable:
            self.state = TransportState.UNREACHABLE
            return False
        self.state = TransportState.CONNECTED
        self.listener.on_opened()
        for command in self.kwargs.get("greeting", ()):
            await self.send(command)
        return True

    async def send(self, command) -> bool:
        if self.state is not TransportState.CONNECTED:
            return False
        self.sent.append(dict(command))
        return True

    async def close(self) -> None:
        self.closed += 1
        self.state = TransportState.CLOSED


class TransportFactory:
    def __init__(self, *, reachable: bool = True) -> None:
        self.reachable = reachable
        self.created: list[FakeTransport] = []

    def __call__(self, camera_id, listener, settings, **kwargs) -> FakeTransport:
        transport = FakeTransport(camera_id, listener, settings, reachable=self.reachable, **kwargs)
        self.created.append(transport)
        return transport


class FakeProber:
    def __init__(self, statuses: dict[str, CameraStatus] | None = None) -> None:
        self.statuses = statuses or {}
        self.probed: list[str] = []

    async def probe(self, camera, timeout=None) -> CameraStatus:
        camera_id = CameraID.parse(camera)
        self.probed.append(str(camera_id))
        return self.statuses.get(str(camera_id), CameraStatus.OFFLINE)

    async def probe_all(self, cameras) -> list[Camera]:
        targets = [Camera.coerce(camera) for camera in cameras]
        return [camera.with_status(await self.probe(camera)) for camera in targets]

    async def fetch_preview_frame(self, camera, timeout=None):
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def media_store() -> FakeMediaStore:
    return FakeMediaStore()


@pytest.fixture
def filesystem() -> FlakyFileSystem:
    return FlakyFileSystem()


@pytest.fixture
def transports() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def camera() -> Camera:
    return Camera(id=CameraID("192.168.4.10"), name="Front Door", location="Porch")


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def frame_payload() -> str:
    return encode(b"\xff\xd8\xff\xe0fake-jpeg-body\xff\xd9")
