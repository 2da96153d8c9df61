from __future__ import annotations

import asyncio
import json
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from chatnest.api.schemas import ChatCancelRequest, ChatCancelResponse, ChatRequest
from chatnest.logging import get_correlation_id, get_logger
from chatnest.protocol import MEDIA_TYPE
from chatnest.service.admission import Rejected
from chatnest.service.errors import InvalidPayloadError
from chatnest.service.profiles import ClientOverrides
from chatnest.service.runtime import Runtime, get_runtime
from chatnest.service.session import StreamSession

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Disable proxy buffering so frames reach the peer as they are emitted
    "X-Accel-Buffering": "no",
}


async def _read_chat_request(request: Request) -> ChatRequest:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidPayloadError("Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Invalid messages payload")
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        details = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
        raise InvalidPayloadError("Invalid messages payload", detail={"errors": details}) from exc


def _request_id_for(runtime: Runtime) -> str:
    request_id = get_correlation_id() or str(uuid4())
    if request_id in runtime.sessions:
        # A client reusing a live X-Request-ID must not hijack the other stream
        request_id = str(uuid4())
    return request_id


class SessionStreamingResponse(StreamingResponse):
    """SSE response that closes and unregisters its session when it ends.

    A disconnect during a blocked frame write leaves the body generator
    suspended at ``yield``, so teardown hangs off the response call and
    runs shielded from the cancellation that ended it.
    """

    def __init__(self, runtime: Runtime, session: StreamSession, **kwargs: Any) -> None:
        super().__init__(session.stream(), media_type=MEDIA_TYPE, **kwargs)
        self.runtime = runtime
        self.session = session

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self._teardown())

    async def _teardown(self) -> None:
        await self.session.close()
        await self.runtime.sessions.unregister(self.session.request_id)
        await self.body_iterator.aclose()


@router.post("/chat")
async def chat(request: Request):
    """Admit a chat request and stream the completion as SSE frames.

    Rejections are answered with a JSON error before any stream starts.
    Once the response is committed, failures arrive in-band as ``error``
    frames.
    """
    runtime = get_runtime()
    body = await _read_chat_request(request)
    overrides = ClientOverrides(
        daily_token_limit=body.daily_token_limit,
        max_tokens_per_request=body.max_tokens_per_request,
    )

    decision = runtime.guard.admit(body.profile, overrides, body.messages)
    if isinstance(decision, Rejected):
        raise decision.to_error()

    request_id = _request_id_for(runtime)
    session = StreamSession(
        request_id,
        decision,
        runtime.relay(),
        runtime.ledger,
        heartbeat_interval_seconds=runtime.settings.heartbeat_interval_seconds,
        system_prompt=body.system_prompt,
    )
    await runtime.sessions.register(session)
    logger.info(
        "chat_stream_started",
        request_id=request_id,
        profile=decision.profile.value,
        estimated_total=decision.estimated_total,
        messages=len(decision.trimmed_messages),
    )
    return SessionStreamingResponse(
        runtime,
        session,
        headers={**_STREAM_HEADERS, "X-Request-ID": request_id},
    )


@router.post("/chat/cancel")
async def cancel_chat(body: ChatCancelRequest) -> dict:
    """Cancel an in-flight stream by request id.

    An unknown or already finished id is not an error; the response just
    reports ``cancelled: false``.
    """
    runtime = get_runtime()
    request_id = body.request_id
    cancelled = await runtime.sessions.cancel(request_id)

    if cancelled:
        logger.info("chat_request_cancelled", request_id=request_id)
        return ChatCancelResponse(
            request_id=request_id,
            cancelled=True,
            message="Request cancelled successfully",
        ).model_dump(by_alias=True)

    logger.info("chat_cancel_request_not_found", request_id=request_id)
    return ChatCancelResponse(
        request_id=request_id,
        cancelled=False,
        message="Request not found or already completed",
    ).model_dump(by_alias=True)
