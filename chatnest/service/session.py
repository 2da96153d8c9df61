from __future__ import annotations

import asyncio
import contextlib
import time
from typing import AsyncIterator, Dict, Optional

from chatnest.logging import get_logger
from chatnest.protocol import EventType
from chatnest.service.admission import Accepted
from chatnest.service.relay import CompletionRelay, RelayOutcome
from chatnest.service.transport import EventTransport
from chatnest.service.usage import UsageLedger

logger = get_logger(__name__)


class StreamSession:
    """Owns everything one accepted request needs while it streams.

    One cancel event, one transport, one heartbeat and one relay task.
    ``close()`` is the single teardown path used for normal completion,
    provider failure, the cancel endpoint and peer disconnect; it is
    idempotent and records the admitted estimate against the ledger exactly
    once.
    """

    def __init__(
        self,
        request_id: str,
        admission: Accepted,
        relay: CompletionRelay,
        ledger: UsageLedger,
        *,
        heartbeat_interval_seconds: float,
        system_prompt: Optional[str] = None,
    ) -> None:
        self.request_id = request_id
        self.admission = admission
        self.relay = relay
        self.ledger = ledger
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.system_prompt = system_prompt
        self.cancel_event = asyncio.Event()
        self.transport = EventTransport()
        self.outcome: Optional[RelayOutcome] = None
        self._relay_task: Optional[asyncio.Task] = None
        self._closed = False
        self._started_at = time.monotonic()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self.transport.emit(EventType.START)
        self.transport.start_heartbeat(self.heartbeat_interval_seconds)
        self._relay_task = asyncio.create_task(self._run_relay())

    async def _run_relay(self) -> None:
        self.outcome = await self.relay.run(
            self.admission.trimmed_messages,
            self.admission.limits,
            self.transport.emit,
            self.cancel_event,
            system_prompt=self.system_prompt,
        )
        if self.outcome == RelayOutcome.CANCELLED:
            self.transport.close()

    def cancel(self) -> None:
        """Request cancellation; teardown happens in ``close``."""

        if not self.cancel_event.is_set():
            self.cancel_event.set()
            self.transport.close()

    async def stream(self) -> AsyncIterator[bytes]:
        """Response body: frames until a terminal event, cancel or disconnect.

        Closing or cancelling the iterator routes into ``close``; the HTTP
        response also closes the session when it ends without resuming it.
        """

        if self._relay_task is None:
            self.start()
        try:
            async for frame in self.transport.frames():
                yield frame
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.outcome is None:
            self.cancel_event.set()
        task = self._relay_task
        if task is not None and not task.done():
            task.cancel()
        self.transport.close()
        # Everything above the first await must run even when the response
        # task itself is being cancelled by a disconnect.
        # Admitted usage is recorded even for failed or cancelled streams
        self.ledger.record(self.admission.estimated_total)
        outcome = self.outcome.value if self.outcome else RelayOutcome.CANCELLED.value
        logger.info(
            "stream_session_closed",
            request_id=self.request_id,
            outcome=outcome,
            profile=self.admission.profile.value,
            estimated_total=self.admission.estimated_total,
            frames_emitted=self.transport.frames_emitted,
            duration_ms=int((time.monotonic() - self._started_at) * 1000),
        )
        await self.transport.stop_heartbeat()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task


class SessionRegistry:
    """Live sessions by request id, for the cancel endpoint."""

    def __init__(self) -> None:
        self._sessions: Dict[str, StreamSession] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: StreamSession) -> None:
        async with self._lock:
            self._sessions[session.request_id] = session

    async def unregister(self, request_id: str) -> None:
        async with self._lock:
            self._sessions.pop(request_id, None)

    async def cancel(self, request_id: str) -> bool:
        """Cancel a live session. Returns True if one was found and cancelled."""
        async with self._lock:
            session = self._sessions.get(request_id)
            if session is None or session.cancel_event.is_set():
                return False
            session.cancel()
            return True

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
