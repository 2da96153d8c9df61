from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import httpx

from chatnest.client.prompts import get_system_prompt_for_profile
from chatnest.logging import get_logger
from chatnest.models import DEFAULT_PROFILE, Message, UsageProfile
from chatnest.protocol import EventType, FrameParser, StreamEvent, decode_error, decode_token
from chatnest.service.profiles import ClientOverrides

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
MAX_BACKOFF_SECONDS = 3.0


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class FailureKind(str, Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    NON_RETRYABLE = "non_retryable"
    RETRYABLE = "retryable"


class RetryAction(str, Enum):
    RETRY = "retry"
    SURFACE = "surface"
    TERMINATE = "terminate"


def next_action(kind: FailureKind, attempt: int, max_retries: int) -> RetryAction:
    """Decide what follows a failed attempt.

    ``attempt`` is the 1-based number of the attempt that just failed, so
    ``max_retries`` retryable failures are retried and the next one is
    surfaced.
    """
    if kind in (FailureKind.CANCELLED, FailureKind.TIMEOUT):
        return RetryAction.TERMINATE
    if kind == FailureKind.NON_RETRYABLE:
        return RetryAction.SURFACE
    if attempt <= max_retries:
        return RetryAction.RETRY
    return RetryAction.SURFACE


def backoff_seconds(attempt: int) -> float:
    return min(1.0 * attempt, MAX_BACKOFF_SECONDS)


class ChatClientError(Exception):
    """Base error delivered to ``on_error``."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class HTTPStatusFailure(ChatClientError):
    """Non-2xx response before any stream started."""

    def __init__(self, status_code: int, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.code = code
        self.retryable = not 400 <= status_code < 500


class TransportFailure(ChatClientError):
    retryable = True


class MalformedStreamError(ChatClientError):
    retryable = True


class StreamTimeoutError(ChatClientError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Request timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class RemoteStreamError(ChatClientError):
    """An ``error`` frame sent by the relay mid-stream."""


class _Cancelled(Exception):
    pass


@dataclass
class StreamCallbacks:
    on_token: Callable[[str], Any]
    on_complete: Callable[[], Any]
    on_error: Callable[[ChatClientError], Any]
    # Called with the upcoming attempt number before a retry starts
    on_retry: Optional[Callable[[int], Any]] = None


def build_request_body(
    messages: List[Message],
    profile: UsageProfile,
    overrides: Optional[ClientOverrides] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "messages": [message.to_dict() for message in messages],
        "profile": profile.value,
        "systemPrompt": get_system_prompt_for_profile(profile),
    }
    if overrides is not None:
        if overrides.daily_token_limit is not None:
            body["dailyTokenLimit"] = overrides.daily_token_limit
        if overrides.max_tokens_per_request is not None:
            body["maxTokensPerRequest"] = overrides.max_tokens_per_request
    return body


def _error_message(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
    try:
        payload = response.json()
    except ValueError:
        return None, None
    if not isinstance(payload, dict):
        return None, None
    message = payload.get("error")
    code = payload.get("code")
    return (
        message if isinstance(message, str) and message else None,
        code if isinstance(code, str) else None,
    )


class StreamController:
    """Drives one chat stream at a time against the relay endpoint.

    Each attempt is raced against the cancel event and the per-attempt
    timeout. Failures are classified into a ``FailureKind`` and fed to
    ``next_action``; callbacks only ever see ``ChatClientError`` instances.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(None, connect=10.0),
        )
        self._cancel_event: Optional[asyncio.Event] = None
        self._state = StreamState.IDLE
        self.request_id: Optional[str] = None
        self.attempts = 0

    @property
    def state(self) -> StreamState:
        return self._state

    def cancel(self) -> None:
        """Abort the in-flight attempt or pending retry; no error is surfaced."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream_chat(
        self,
        messages: List[Message],
        callbacks: StreamCallbacks,
        profile: UsageProfile = DEFAULT_PROFILE,
        overrides: Optional[ClientOverrides] = None,
    ) -> StreamState:
        body = build_request_body(messages, profile, overrides)
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        self.attempts = 0

        while True:
            self.attempts += 1
            attempt = self.attempts
            try:
                await self._run_attempt(body, callbacks, cancel_event)
                return self._state
            except _Cancelled:
                kind, error = FailureKind.CANCELLED, None
            except StreamTimeoutError as exc:
                kind, error = FailureKind.TIMEOUT, exc
            except ChatClientError as exc:
                kind = FailureKind.RETRYABLE if exc.retryable else FailureKind.NON_RETRYABLE
                error = exc

            action = next_action(kind, attempt, self.max_retries)
            logger.info(
                "chat_stream_attempt_failed",
                attempt=attempt,
                failure=kind.value,
                action=action.value,
                error=error.message if error else None,
            )
            if action == RetryAction.TERMINATE:
                self._state = StreamState.CANCELLED
                if error is not None:
                    callbacks.on_error(error)
                return self._state
            if action == RetryAction.SURFACE:
                self._state = StreamState.FAILED
                callbacks.on_error(error)
                return self._state

            if not await self._backoff(attempt, cancel_event):
                self._state = StreamState.CANCELLED
                return self._state
            if callbacks.on_retry is not None:
                callbacks.on_retry(attempt + 1)

    async def _backoff(self, attempt: int, cancel_event: asyncio.Event) -> bool:
        """Wait before the next attempt; False when cancelled meanwhile."""
        if cancel_event.is_set():
            return False
        delay = backoff_seconds(attempt)
        logger.info("chat_stream_backoff", attempt=attempt, backoff_seconds=delay)
        if delay <= 0:
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def _run_attempt(
        self,
        body: Dict[str, Any],
        callbacks: StreamCallbacks,
        cancel_event: asyncio.Event,
    ) -> None:
        if cancel_event.is_set():
            raise _Cancelled()
        self._state = StreamState.SENDING
        attempt_task = asyncio.create_task(self._attempt(body, callbacks))
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {attempt_task, cancel_waiter},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()
            if not attempt_task.done():
                attempt_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await attempt_task

        if attempt_task in done:
            attempt_task.result()
            return
        if cancel_waiter in done:
            raise _Cancelled()
        raise StreamTimeoutError(self.timeout_seconds)

    async def _attempt(self, body: Dict[str, Any], callbacks: StreamCallbacks) -> None:
        self.request_id = str(uuid4())
        headers = {**self.headers, "X-Request-ID": self.request_id}
        parser = FrameParser()
        try:
            async with self._client.stream(
                "POST", self.endpoint, json=body, headers=headers
            ) as response:
                if not 200 <= response.status_code < 300:
                    await response.aread()
                    message, code = _error_message(response)
                    raise HTTPStatusFailure(response.status_code, message, code)
                async for chunk in response.aiter_bytes():
                    if self._state == StreamState.SENDING:
                        self._state = StreamState.STREAMING
                    if self._dispatch(parser.feed(chunk), callbacks):
                        return
                if self._dispatch(parser.close(), callbacks):
                    return
        except UnicodeDecodeError as exc:
            raise MalformedStreamError(f"Malformed stream: {exc.reason}") from exc
        except httpx.HTTPError as exc:
            raise TransportFailure(str(exc) or type(exc).__name__) from exc

        # Stream ended without a terminal frame
        self._state = StreamState.COMPLETED
        callbacks.on_complete()

    def _dispatch(self, events: List[StreamEvent], callbacks: StreamCallbacks) -> bool:
        """Deliver parsed events; True once a terminal event was handled."""
        for event in events:
            if event.type == EventType.TOKEN:
                callbacks.on_token(decode_token(event.data))
            elif event.type == EventType.DONE:
                self._state = StreamState.COMPLETED
                callbacks.on_complete()
                return True
            elif event.type == EventType.ERROR:
                self._state = StreamState.FAILED
                callbacks.on_error(RemoteStreamError(decode_error(event.data)))
                return True
        return False
