"""Tests for the camera websocket transport."""

from __future__ import annotations

import asyncio
import json
import socket

import pytest

websockets = pytest.importorskip("websockets")

from netcam.cameras import CameraID
from netcam.config import TransportSettings
from netcam.transport import (
    REQUEST_FULL_CONFIG,
    ConfigMessage,
    ConnectionFailedError,
    FrameTransport,
    ReconnectPolicy,
    TransportListener,
    TransportState,
    VideoMessage,
    open_connection,
    parse_message,
    set_video_quality,
)


class _Recorder(TransportListener):
    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []
        self.frames: list[object] = []
        self.frame_event = asyncio.Event()
        self.closed_event = asyncio.Event()
        self.opened = 0

    def on_opened(self) -> None:
        self.opened += 1
        self.events.append(("opened", None))

    def on_configured(self, width: int, height: int) -> None:
        self.events.append(("configured", (width, height)))

    def on_frame(self, payload: object) -> None:
        self.frames.append(payload)
        self.frame_event.set()

    def on_closed(self, error) -> None:
        self.events.append(("closed", str(error)))
        self.closed_event.set()

    def on_unreachable(self, error) -> None:
        self.events.append(("unreachable", str(error)))


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _fast_settings(**overrides) -> TransportSettings:
    values = {
        "connect_timeout_s": 1.0,
        "reconnect_delay_s": 0.05,
        "reconnect_max_delay_s": 0.1,
    }
    values.update(overrides)
    return TransportSettings(**values)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"type":"config","width":640,"height":480}', ConfigMessage(640, 480)),
        ('{"type":"config","width":"wide"}', ConfigMessage(None, None)),
        (b'{"type":"video","data":"QUJD"}', VideoMessage("QUJD")),
        ('{"type":"status"}', None),
        ("not json", None),
        ("[1, 2]", None),
        (b"\xff\xfe", None),
    ],
)
def test_parse_message(raw, expected) -> None:
    assert parse_message(raw) == expected


def test_outbound_commands() -> None:
    assert set_video_quality() == {"command": "setVideoQuality", "quality": "medium"}
    assert dict(REQUEST_FULL_CONFIG) == {"type": "config", "request": "full"}


def test_reconnect_policy_backs_off_and_caps() -> None:
    policy = ReconnectPolicy(initial_delay=5.0, multiplier=2.0, max_delay=60.0)
    assert [policy.delay(attempt) for attempt in range(1, 6)] == [5.0, 10.0, 20.0, 40.0, 60.0]
    assert policy.delay(50) == 60.0


def test_reconnect_policy_respects_attempt_limit() -> None:
    policy = ReconnectPolicy.from_settings(
        TransportSettings(reconnect_multiplier=1.0, reconnect_max_attempts=2)
    )
    assert policy.delay(1) == 5.0
    assert policy.delay(2) == 5.0
    assert policy.delay(3) is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_open_connection_times_out(anyio_backend) -> None:
    async def _hang(url, **kwargs):
        await asyncio.sleep(10)

    with pytest.raises(ConnectionFailedError):
        await open_connection("ws://10.0.0.1/ws", timeout=0.05, connect=_hang)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_transport_delivers_frames_and_sends_greeting(anyio_backend) -> None:
    received: list[dict] = []

    async def handler(connection) -> None:
        await connection.send(json.dumps({"type": "config", "width": 1280, "height": 720}))
        await connection.send(json.dumps({"type": "video", "data": "QUJD"}))
        async for message in connection:
            received.append(json.loads(message))

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        listener = _Recorder()
        transport = FrameTransport(
            CameraID(f"127.0.0.1:{port}"),
            listener,
            _fast_settings(),
            greeting=(REQUEST_FULL_CONFIG,),
        )
        assert await transport.open() is True
        assert transport.state is TransportState.CONNECTED
        await asyncio.wait_for(listener.frame_event.wait(), 2)
        assert await transport.send(set_video_quality("low")) is True
        for _ in range(50):
            if len(received) >= 2:
                break
            await asyncio.sleep(0.02)
        await transport.close()

    assert listener.frames == ["QUJD"]
    assert ("configured", (1280, 720)) in listener.events
    assert received[0] == {"type": "config", "request": "full"}
    assert received[1] == {"command": "setVideoQuality", "quality": "low"}
    assert transport.state is TransportState.CLOSED
    assert await transport.send(set_video_quality()) is False


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_unreachable_camera_reports_and_does_not_retry_without_consumer(anyio_backend) -> None:
    listener = _Recorder()
    transport = FrameTransport(
        CameraID(f"127.0.0.1:{_unused_port()}"),
        listener,
        _fast_settings(),
    )
    assert await transport.open() is False
    assert transport.state is TransportState.UNREACHABLE
    assert listener.events[0][0] == "unreachable"
    assert transport.reconnect_pending is False
    await transport.close()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_transport_reconnects_after_camera_drops(anyio_backend) -> None:
    connections = 0

    async def handler(connection) -> None:
        nonlocal connections
        connections += 1
        await connection.send(json.dumps({"type": "video", "data": f"frame{connections}"}))
        if connections == 1:
            await connection.close()
            return
        await connection.wait_closed()

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        listener = _Recorder()
        transport = FrameTransport(
            CameraID(f"127.0.0.1:{port}"),
            listener,
            _fast_settings(),
            wants_stream=lambda: True,
        )
        assert await transport.open() is True
        await asyncio.wait_for(listener.closed_event.wait(), 2)
        for _ in range(100):
            if listener.opened >= 2 and len(listener.frames) >= 2:
                break
            await asyncio.sleep(0.02)
        await transport.close()

    assert listener.opened == 2
    assert listener.frames == ["frame1", "frame2"]
    assert transport.reconnect_attempts == 0
    assert transport.reconnect_pending is False


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_close_cancels_pending_reconnect(anyio_backend) -> None:
    listener = _Recorder()
    transport = FrameTransport(
        CameraID(f"127.0.0.1:{_unused_port()}"),
        listener,
        _fast_settings(reconnect_delay_s=5.0, reconnect_max_delay_s=5.0),
        wants_stream=lambda: True,
    )
    assert await transport.open() is False
    assert transport.reconnect_pending is True
    assert transport.reconnect_attempts == 1
    await transport.close()
    assert transport.reconnect_pending is False
    assert transport.state is TransportState.CLOSED
    assert await transport.open() is False
