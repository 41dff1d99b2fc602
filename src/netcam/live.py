"""Paced live view of a camera served as an MJPEG stream."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from .cameras import Camera, CameraID, CameraStatus
from .config import (
    DEFAULT_PACER_SETTINGS,
    DEFAULT_TRANSPORT_SETTINGS,
    PacerSettings,
    TransportSettings,
)
from .pacer import FramePacer
from .storage import WriteFailedError, decode_frame
from .system_log import SystemLog
from .transport import (
    ConnectionClosedError,
    ConnectionFailedError,
    FrameTransport,
    TransportListener,
    set_video_quality,
)

logger = logging.getLogger(__name__)

StatusCallback = Callable[[Camera], None]


class LiveViewer(TransportListener):
    """Bind a camera transport to a frame pacer and fan frames out to viewers.

    The transport is opened when the first subscriber arrives and released
    when the last one leaves.
    """

    def __init__(
        self,
        camera: Camera,
        *,
        transport_settings: TransportSettings = DEFAULT_TRANSPORT_SETTINGS,
        pacer_settings: PacerSettings = DEFAULT_PACER_SETTINGS,
        transport_factory: Callable[..., FrameTransport] | None = None,
        on_status: StatusCallback | None = None,
        system_log: SystemLog | None = None,
        boundary: str = "frame",
    ) -> None:
        self.camera = camera
        self.boundary = boundary
        self._transport_settings = transport_settings
        self._transport_factory = transport_factory or FrameTransport
        self._on_status = on_status
        self._system_log = system_log
        self.pacer = FramePacer(
            self._broadcast,
            max_queue=pacer_settings.max_queue,
            trim_to=pacer_settings.trim_to,
            freshness_threshold=pacer_settings.freshness_threshold,
        )
        self._transport: FrameTransport | None = None
        self._subscribers: set[asyncio.Queue[bytes]] = set()
        self._lock = asyncio.Lock()
        self._commands: set[asyncio.Task[bool]] = set()

    @property
    def camera_id(self) -> CameraID:
        return self.camera.id

    @property
    def media_type(self) -> str:
        return f"multipart/x-mixed-replace; boundary={self.boundary}"

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def transport(self) -> FrameTransport | None:
        return self._transport

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """Yield multipart chunks for one viewer."""

        queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=1)
        async with self._subscriber(queue):
            while True:
                payload = await queue.get()
                yield self._render_chunk(payload)

    async def aclose(self) -> None:
        async with self._lock:
            self._subscribers.clear()
            await self._release()

    @asynccontextmanager
    async def _subscriber(self, queue: asyncio.Queue[bytes]):
        await self._register(queue)
        try:
            yield
        finally:
            await self._unregister(queue)

    async def _register(self, queue: asyncio.Queue[bytes]) -> None:
        async with self._lock:
            self._subscribers.add(queue)
            if self._transport is None:
                self._transport = self._transport_factory(
                    self.camera_id,
                    self,
                    self._transport_settings,
                    wants_stream=lambda: bool(self._subscribers),
                    system_log=self._system_log,
                )
                self.pacer.start()
                await self._transport.open()

    async def _unregister(self, queue: asyncio.Queue[bytes]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)
            if not self._subscribers:
                await self._release()

    async def _release(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is not None:
            await transport.close()
        await self.pacer.aclose()
        for task in list(self._commands):
            task.cancel()

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------
    def on_opened(self) -> None:
        self._report(CameraStatus.ONLINE)
        transport = self._transport
        if transport is None:
            return
        command = set_video_quality(self._transport_settings.video_quality)
        task = asyncio.get_running_loop().create_task(transport.send(command))
        self._commands.add(task)
        task.add_done_callback(self._commands.discard)

    def on_configured(self, width: int, height: int) -> None:
        self.pacer.configure(width, height)

    def on_frame(self, payload: object) -> None:
        self.pacer.push(payload)

    def on_closed(self, error: ConnectionClosedError) -> None:
        self.pacer.clear()
        self._report(CameraStatus.OFFLINE)

    def on_unreachable(self, error: ConnectionFailedError) -> None:
        self.pacer.clear()
        self._report(CameraStatus.OFFLINE)

    def _report(self, status: CameraStatus) -> None:
        self.camera = self.camera.with_status(status)
        if self._on_status is not None:
            self._on_status(self.camera)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    def _broadcast(self, frame: object) -> None:
        if not isinstance(frame, str):
            return
        try:
            payload = decode_frame(frame)
        except WriteFailedError as exc:
            logger.debug("Skipping undecodable live frame from %s: %s", self.camera_id, exc)
            return
        if not payload:
            return
        for queue in list(self._subscribers):
            self._offer(queue, payload)

    def _offer(self, queue: asyncio.Queue[bytes], payload: bytes) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._drain_queue(queue)
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:  # pragma: no cover
                logger.debug("Dropping live frame after queue remained full")

    def _drain_queue(self, queue: asyncio.Queue[bytes]) -> None:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:  # pragma: no cover
            return

    def _render_chunk(self, payload: bytes) -> bytes:
        header = (
            f"--{self.boundary}\r\n"
            "Content-Type: image/jpeg\r\n"
            f"Content-Length: {len(payload)}\r\n"
            "\r\n"
        ).encode("ascii")
        return header + payload + b"\r\n"


__all__ = ["LiveViewer"]
