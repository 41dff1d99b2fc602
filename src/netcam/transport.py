"""Persistent websocket transport delivering frames from one camera."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping

import websockets
from websockets.exceptions import ConnectionClosed

from .cameras import CameraID
from .config import DEFAULT_TRANSPORT_SETTINGS, TransportSettings
from .system_log import SystemLog

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


class TransportError(RuntimeError):
    """Base error for camera transport failures."""


class ConnectionFailedError(TransportError):
    """Raised when a camera cannot be reached within the connect timeout."""


class ConnectionClosedError(TransportError):
    """Signals that an established camera connection went away."""


REQUEST_FULL_CONFIG: Mapping[str, str] = {"type": "config", "request": "full"}
GET_FRAME: Mapping[str, str] = {"command": "getFrame"}


def set_video_quality(quality: str = "medium") -> dict[str, str]:
    return {"command": "setVideoQuality", "quality": quality}


@dataclass(frozen=True, slots=True)
class ConfigMessage:
    width: int | None
    height: int | None


@dataclass(frozen=True, slots=True)
class VideoMessage:
    data: object


def _positive_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def parse_message(raw: str | bytes) -> ConfigMessage | VideoMessage | None:
    """Translate one inbound wire message, ignoring anything unrecognised."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if kind == "video":
        return VideoMessage(payload.get("data"))
    if kind == "config":
        return ConfigMessage(
            _positive_int(payload.get("width")),
            _positive_int(payload.get("height")),
        )
    return None


async def open_connection(
    url: str,
    *,
    timeout: float,
    connect: Connector | None = None,
) -> Any:
    """Open a websocket to ``url`` or raise :class:`ConnectionFailedError`."""

    connector = connect if connect is not None else websockets.connect

    async def _connect() -> Any:
        return await connector(url, open_timeout=timeout, max_size=None)

    try:
        return await asyncio.wait_for(_connect(), timeout)
    except asyncio.CancelledError:
        raise
    except asyncio.TimeoutError as exc:
        raise ConnectionFailedError(f"Timed out connecting to {url}") from exc
    except Exception as exc:
        raise ConnectionFailedError(f"Unable to connect to {url}: {exc}") from exc


async def close_quietly(connection: Any, *, timeout: float = 2.0) -> None:
    if connection is None:
        return
    try:
        await asyncio.wait_for(connection.close(), timeout)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.debug("Ignoring error while closing websocket: %s", exc)


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """Capped exponential backoff between reconnect attempts."""

    initial_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    max_attempts: int | None = None

    @classmethod
    def from_settings(cls, settings: TransportSettings) -> "ReconnectPolicy":
        return cls(
            initial_delay=settings.reconnect_delay_s,
            multiplier=settings.reconnect_multiplier,
            max_delay=settings.reconnect_max_delay_s,
            max_attempts=settings.reconnect_max_attempts,
        )

    def delay(self, attempt: int) -> float | None:
        """Return the wait before ``attempt`` (1-based) or ``None`` to give up."""

        if attempt < 1:
            attempt = 1
        if self.max_attempts is not None and attempt > self.max_attempts:
            return None
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


class TransportState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNREACHABLE = "unreachable"
    CLOSED = "closed"


class TransportListener:
    """Receives transport events. Callbacks run on the event loop and must not block."""

    def on_opened(self) -> None:
        pass

    def on_configured(self, width: int, height: int) -> None:
        pass

    def on_frame(self, payload: object) -> None:
        pass

    def on_closed(self, error: ConnectionClosedError) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass

    def on_unreachable(self, error: ConnectionFailedError) -> None:
        pass


class FrameTransport:
    """Own one logical websocket connection to a camera."""

    def __init__(
        self,
        camera_id: CameraID,
        listener: TransportListener,
        settings: TransportSettings = DEFAULT_TRANSPORT_SETTINGS,
        *,
        greeting: Iterable[Mapping[str, object]] = (),
        wants_stream: Callable[[], bool] | None = None,
        connect: Connector | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        self.camera_id = camera_id
        self._listener = listener
        self._settings = settings
        self._policy = ReconnectPolicy.from_settings(settings)
        self._greeting = tuple(greeting)
        self._wants_stream = wants_stream
        self._connect = connect
        self._system_log = system_log
        self._state = TransportState.IDLE
        self._connection: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._attempts = 0
        self._closing = False

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is TransportState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def open(self) -> bool:
        """Connect to the camera; returns ``True`` once the socket is open."""

        if self._closing:
            return False
        if self._state is TransportState.CONNECTED:
            return True
        self._state = TransportState.CONNECTING
        url = self.camera_id.websocket_url
        try:
            connection = await open_connection(
                url, timeout=self._settings.connect_timeout_s, connect=self._connect
            )
        except ConnectionFailedError as exc:
            self._state = TransportState.UNREACHABLE
            logger.info("Camera %s unreachable: %s", self.camera_id, exc)
            self._log("unreachable", f"Camera {self.camera_id} unreachable.", error=str(exc))
            self._notify("on_unreachable", exc)
            self._schedule_reconnect()
            return False
        if self._closing:
            await close_quietly(connection)
            return False
        self._connection = connection
        self._state = TransportState.CONNECTED
        self._attempts = 0
        logger.info("Connected to camera at %s", url)
        self._log("opened", f"Connected to camera {self.camera_id}.")
        self._notify("on_opened")
        for command in self._greeting:
            await self.send(command)
        self._reader_task = asyncio.create_task(self._read_loop(connection))
        return True

    async def send(self, command: Mapping[str, object]) -> bool:
        """Send a control command without waiting for any acknowledgement."""

        connection = self._connection
        if connection is None or self._state is not TransportState.CONNECTED:
            logger.debug("Dropping command for disconnected camera %s", self.camera_id)
            return False
        try:
            await connection.send(json.dumps(dict(command)))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Failed to send command to %s: %s", self.camera_id, exc)
            return False
        return True

    async def close(self) -> None:
        """Close the connection for good; no reconnect follows."""

        self._closing = True
        current = asyncio.current_task()
        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None and reconnect is not current and not reconnect.done():
            reconnect.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not current and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        connection = self._connection
        self._connection = None
        await close_quietly(connection)
        if self._state is not TransportState.CLOSED:
            self._log("closed", f"Connection to camera {self.camera_id} released.")
        self._state = TransportState.CLOSED

    async def _read_loop(self, connection: Any) -> None:
        reason = "connection closed by camera"
        try:
            async for raw in connection:
                message = parse_message(raw)
                if isinstance(message, VideoMessage):
                    self._notify("on_frame", message.data)
                elif isinstance(message, ConfigMessage):
                    if message.width and message.height:
                        self._notify("on_configured", message.width, message.height)
        except ConnectionClosed as exc:
            reason = f"connection lost: {exc}"
        except Exception as exc:
            reason = f"connection error: {exc}"
            self._notify("on_error", exc)
        if self._connection is connection:
            self._connection = None
        if self._closing:
            return
        self._state = TransportState.CLOSED
        logger.info("Connection to camera %s closed (%s)", self.camera_id, reason)
        self._log("connection_lost", f"Connection to camera {self.camera_id} closed.", reason=reason)
        await close_quietly(connection)
        self._notify("on_closed", ConnectionClosedError(reason))
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._wants_stream is None or not self._wants_stream():
            return
        if self.reconnect_pending and self._reconnect_task is not asyncio.current_task():
            return
        self._attempts += 1
        delay = self._policy.delay(self._attempts)
        if delay is None:
            logger.warning(
                "Giving up on camera %s after %d reconnect attempts",
                self.camera_id,
                self._attempts - 1,
            )
            self._log("reconnect_abandoned", f"Stopped reconnecting to camera {self.camera_id}.")
            return
        logger.info("Reconnecting to camera %s in %.1f seconds", self.camera_id, delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing or self._wants_stream is None or not self._wants_stream():
            return
        await self.open()

    def _notify(self, name: str, *args: object) -> None:
        callback = getattr(self._listener, name, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # pragma: no cover
            logger.exception("Transport listener %s failed for camera %s", name, self.camera_id)

    def _log(self, event: str, message: str, **metadata: object) -> None:
        if self._system_log is None:
            return
        self._system_log.record(
            "transport", event, message, camera=self.camera_id, metadata=dict(metadata)
        )


__all__ = [
    "ConfigMessage",
    "ConnectionClosedError",
    "ConnectionFailedError",
    "FrameTransport",
    "GET_FRAME",
    "REQUEST_FULL_CONFIG",
    "ReconnectPolicy",
    "TransportError",
    "TransportListener",
    "TransportState",
    "VideoMessage",
    "close_quietly",
    "open_connection",
    "parse_message",
    "set_video_quality",
]
