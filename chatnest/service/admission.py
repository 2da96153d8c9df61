from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import ValidationError

from chatnest.api.schemas import MAX_ARRAY_ITEMS, MessageList
from chatnest.logging import get_logger
from chatnest.models import Message, ProfileLimits, UsageProfile
from chatnest.service.errors import (
    DailyLimitReachedError,
    InvalidPayloadError,
    RateLimitedError,
    RequestTooLargeError,
    ServiceError,
)
from chatnest.service.profiles import ClientOverrides, apply_overrides, resolve_profile
from chatnest.service.rate_limit import FixedWindowRateLimiter
from chatnest.service.tokens import estimate_tokens
from chatnest.service.usage import UsageLedger

logger = get_logger(__name__)


class RejectReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    REQUEST_LIMIT = "request_limit"
    DAILY_LIMIT = "daily_limit"
    INVALID_PAYLOAD = "invalid_payload"


_REJECTION_ERRORS = {
    RejectReason.INVALID_PAYLOAD: InvalidPayloadError,
    RejectReason.RATE_LIMITED: RateLimitedError,
    RejectReason.REQUEST_LIMIT: RequestTooLargeError,
    RejectReason.DAILY_LIMIT: DailyLimitReachedError,
}


@dataclass(frozen=True)
class Accepted:
    trimmed_messages: List[Message]
    estimated_total: int
    limits: ProfileLimits
    profile: UsageProfile


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    message: str
    estimated_total: Optional[int] = None

    def to_error(self) -> ServiceError:
        detail = {"estimated_total": self.estimated_total} if self.estimated_total is not None else None
        return _REJECTION_ERRORS[self.reason](self.message, detail=detail)


Admission = Union[Accepted, Rejected]


def parse_messages(raw: Any) -> Optional[List[Message]]:
    """Validate a raw history into messages; ``None`` when malformed."""

    if not isinstance(raw, list) or not raw or len(raw) > MAX_ARRAY_ITEMS:
        return None
    try:
        payloads = MessageList.validate_python(raw)
    except ValidationError:
        return None
    return [payload.to_message() for payload in payloads]


def trim_messages(messages: List[Message], max_messages: int) -> List[Message]:
    """Keep the newest ``max_messages`` entries, dropping the oldest first."""

    if max_messages <= 0:
        return []
    return messages[-max_messages:]


class AdmissionGuard:
    """Accept/reject decision made before any provider call is issued.

    The rate limiter is consulted before any token estimation so an abusive
    burst costs one counter increment per request.
    """

    def __init__(self, rate_limiter: FixedWindowRateLimiter, ledger: UsageLedger) -> None:
        self.rate_limiter = rate_limiter
        self.ledger = ledger

    def admit(
        self,
        raw_profile: Any,
        overrides: Optional[ClientOverrides],
        raw_messages: Any,
    ) -> Admission:
        messages = parse_messages(raw_messages)
        if messages is None:
            return self._reject(RejectReason.INVALID_PAYLOAD, "Invalid messages payload")

        resolved = resolve_profile(raw_profile)
        limits = apply_overrides(resolved.limits, overrides)

        if self.rate_limiter.is_limited(limits):
            return self._reject(
                RejectReason.RATE_LIMITED,
                "Rate limit exceeded. Please slow down.",
                profile=resolved.profile.value,
            )

        trimmed = trim_messages(messages, limits.max_messages)
        estimated_total = estimate_tokens(trimmed) + limits.max_output_tokens

        if estimated_total > limits.max_tokens_per_request:
            return self._reject(
                RejectReason.REQUEST_LIMIT,
                "Request exceeds the per-request token limit.",
                estimated_total=estimated_total,
                profile=resolved.profile.value,
                max_tokens_per_request=limits.max_tokens_per_request,
            )
        if not self.ledger.can_spend(estimated_total, limits.daily_token_limit):
            return self._reject(
                RejectReason.DAILY_LIMIT,
                "Daily AI budget exceeded. Try again tomorrow.",
                estimated_total=estimated_total,
                profile=resolved.profile.value,
                daily_token_limit=limits.daily_token_limit,
            )

        logger.info(
            "admission_accepted",
            profile=resolved.profile.value,
            messages_received=len(messages),
            messages_kept=len(trimmed),
            estimated_total=estimated_total,
        )
        return Accepted(
            trimmed_messages=trimmed,
            estimated_total=estimated_total,
            limits=limits,
            profile=resolved.profile,
        )

    def _reject(
        self,
        reason: RejectReason,
        message: str,
        *,
        estimated_total: Optional[int] = None,
        **context: Any,
    ) -> Rejected:
        logger.warning(
            "admission_rejected",
            reason=reason.value,
            estimated_total=estimated_total,
            **context,
        )
        return Rejected(reason=reason, message=message, estimated_total=estimated_total)
