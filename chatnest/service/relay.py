from __future__ import annotations

import asyncio
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

from chatnest.logging import get_logger, sanitize_error_message
from chatnest.models import Message, ProfileLimits
from chatnest.protocol import EventType, encode_error, encode_token
from chatnest.service.providers import CompletionProvider

logger = get_logger(__name__)

Emit = Callable[[EventType, str], object]


class RelayOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def build_provider_messages(
    messages: List[Message], system_prompt: Optional[str] = None
) -> List[dict]:
    provider_messages = [{"role": m.role.value, "content": m.content} for m in messages]
    if system_prompt:
        provider_messages.insert(0, {"role": "system", "content": system_prompt})
    return provider_messages


class CompletionRelay:
    """Forwards provider fragments to the peer as ``token`` frames.

    Mid-stream provider failures become an in-band ``error`` frame because
    response headers are already committed; they never propagate further.
    """

    def __init__(self, provider: CompletionProvider, model: str) -> None:
        self.provider = provider
        self.model = model

    async def run(
        self,
        messages: List[Message],
        limits: ProfileLimits,
        emit: Emit,
        cancel_event: asyncio.Event,
        *,
        system_prompt: Optional[str] = None,
    ) -> RelayOutcome:
        handle: Optional[AsyncIterator[str]] = None
        fragments = 0
        try:
            handle = self.provider.create_completion(
                self.model,
                build_provider_messages(messages, system_prompt),
                limits.max_output_tokens,
                limits.temperature,
                cancel_event,
            )
            async for fragment in handle:
                if cancel_event.is_set():
                    logger.info("relay_cancelled", fragments_forwarded=fragments)
                    return RelayOutcome.CANCELLED
                if not fragment:
                    continue
                emit(EventType.TOKEN, encode_token(fragment))
                fragments += 1
            if cancel_event.is_set():
                logger.info("relay_cancelled", fragments_forwarded=fragments)
                return RelayOutcome.CANCELLED
            emit(EventType.DONE, "")
            logger.info("relay_completed", fragments_forwarded=fragments)
            return RelayOutcome.COMPLETED
        except Exception as exc:
            if cancel_event.is_set():
                logger.info(
                    "relay_cancelled",
                    fragments_forwarded=fragments,
                    error_type=type(exc).__name__,
                )
                return RelayOutcome.CANCELLED
            logger.error(
                "relay_provider_failed",
                provider=self.provider.name,
                fragments_forwarded=fragments,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            emit(EventType.ERROR, encode_error(sanitize_error_message(str(exc))))
            return RelayOutcome.FAILED
        finally:
            # Propagate cancellation into the provider so the upstream stops
            aclose = getattr(handle, "aclose", None) if handle is not None else None
            if aclose is not None:
                await aclose()
