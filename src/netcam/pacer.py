"""Bounded-latency pacing of frames towards a display sink."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque

logger = logging.getLogger(__name__)

MIN_FPS = 5
MAX_FPS = 30

FrameSink = Callable[[object], "Awaitable[None] | None"]


def clamp_fps(fps: int | float) -> int:
    try:
        value = int(round(float(fps)))
    except (TypeError, ValueError):
        return MAX_FPS
    return max(MIN_FPS, min(MAX_FPS, value))


def target_fps_for_resolution(width: int, height: int) -> int:
    """Pick a display rate for a stream of ``width`` x ``height`` pixels."""

    pixels = int(width) * int(height)
    if pixels > 1_000_000:
        return 15
    if pixels > 500_000:
        return 20
    return 30


class FramePacer:
    """Queue frames and forward at most one per tick to ``sink``.

    Under sustained backlog the queue is cut back to its most recent frames,
    and when a tick finds more than ``freshness_threshold`` frames waiting the
    newest one wins over FIFO order. A forward never overlaps another.
    """

    def __init__(
        self,
        sink: FrameSink,
        *,
        fps: int = MAX_FPS,
        max_queue: int = 10,
        trim_to: int = 5,
        freshness_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_queue < 1 or not (1 <= trim_to <= max_queue):
            raise ValueError("trim_to must be between 1 and max_queue")
        self._sink = sink
        self._fps = clamp_fps(fps)
        self._max_queue = max_queue
        self._trim_to = trim_to
        self._freshness_threshold = freshness_threshold
        self._clock = clock
        self._queue: Deque[object] = deque()
        self._in_flight: asyncio.Task[None] | None = None
        self._last_forward: float | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self.forwarded = 0
        self.dropped = 0

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def interval(self) -> float:
        return 1.0 / float(self._fps)

    @property
    def depth(self) -> int:
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def pending(self) -> list[object]:
        return list(self._queue)

    def set_fps(self, fps: int | float) -> int:
        self._fps = clamp_fps(fps)
        return self._fps

    def configure(self, width: int, height: int) -> int:
        """Derive the target rate from the stream resolution."""

        fps = self.set_fps(target_fps_for_resolution(width, height))
        logger.debug("Pacing %dx%d stream at %d fps", width, height, fps)
        return fps

    def push(self, frame: object) -> None:
        self._queue.append(frame)
        if len(self._queue) > self._max_queue:
            excess = len(self._queue) - self._trim_to
            for _ in range(excess):
                self._queue.popleft()
            self.dropped += excess

    def clear(self) -> None:
        self._queue.clear()

    def tick(self, now: float | None = None) -> bool:
        """Forward one frame if allowed; returns whether a forward started."""

        if self.busy or not self._queue:
            return False
        current = self._clock() if now is None else now
        if self._last_forward is not None and current - self._last_forward < self.interval:
            return False
        if len(self._queue) > self._freshness_threshold:
            frame = self._queue.pop()
            self.dropped += len(self._queue)
            self._queue.clear()
        else:
            frame = self._queue.popleft()
        self._last_forward = current
        self.forwarded += 1
        self._in_flight = asyncio.get_running_loop().create_task(self._forward(frame))
        return True

    async def _forward(self, frame: object) -> None:
        try:
            result = self._sink(frame)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            logger.exception("Frame sink failed")

    async def wait_idle(self) -> None:
        task = self._in_flight
        if task is not None and not task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            self.tick()
            delay = self.interval
            if self._last_forward is not None:
                remaining = self._last_forward + self.interval - self._clock()
                if remaining > 0:
                    delay = remaining
            await asyncio.sleep(max(delay, 0.001))

    async def aclose(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        in_flight = self._in_flight
        self._in_flight = None
        if in_flight is not None and not in_flight.done():
            in_flight.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await in_flight
        self._queue.clear()


__all__ = ["FramePacer", "MAX_FPS", "MIN_FPS", "clamp_fps", "target_fps_for_resolution"]
