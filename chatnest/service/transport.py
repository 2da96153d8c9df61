from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Optional

from chatnest.logging import get_logger
from chatnest.protocol import EventType, encode_frame

logger = get_logger(__name__)

# Queue sentinel marking end of stream
_CLOSED = object()


class EventTransport:
    """Frames outbound events and hands them to the HTTP response body.

    Frames are queued whole, so a frame is never interleaved with another
    one or cut off by cancellation. Once closed, emitting is a no-op; a
    terminal frame (``done``/``error``) closes the transport so nothing can
    follow it.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.frames_emitted = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: EventType, payload: str = "") -> bool:
        """Queue one frame; returns False when the transport is already closed."""

        if self._closed:
            return False
        self._queue.put_nowait(encode_frame(event_type, payload))
        self.frames_emitted += 1
        if event_type.is_terminal:
            self.close()
        return True

    def start_heartbeat(self, interval_seconds: float) -> None:
        if self._heartbeat_task is not None or self._closed:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat(interval_seconds))

    async def _heartbeat(self, interval_seconds: float) -> None:
        while not self._closed:
            await asyncio.sleep(interval_seconds)
            if not self.emit(EventType.PING):
                return

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield encoded frames until the transport is closed."""

        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
