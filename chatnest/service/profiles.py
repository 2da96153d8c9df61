from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from chatnest.models import DEFAULT_PROFILE, ProfileLimits, RateLimit, UsageProfile

HARD_CAPS = ProfileLimits(
    max_output_tokens=4096,
    max_messages=20,
    temperature=2.0,
    daily_token_limit=500_000,
    max_tokens_per_request=16_000,
    rate_limit=RateLimit(window_ms=60_000, max_requests=60),
)

DEFAULT_MAX_TOKENS_PER_REQUEST = 2048


def clamp_to_caps(limits: ProfileLimits, caps: ProfileLimits = HARD_CAPS) -> ProfileLimits:
    """Bound every field of ``limits`` by the matching field of ``caps``."""

    return ProfileLimits(
        max_output_tokens=min(limits.max_output_tokens, caps.max_output_tokens),
        max_messages=min(limits.max_messages, caps.max_messages),
        temperature=min(limits.temperature, caps.temperature),
        daily_token_limit=min(limits.daily_token_limit, caps.daily_token_limit),
        max_tokens_per_request=min(
            limits.max_tokens_per_request, caps.max_tokens_per_request
        ),
        rate_limit=RateLimit(
            window_ms=min(limits.rate_limit.window_ms, caps.rate_limit.window_ms),
            max_requests=min(limits.rate_limit.max_requests, caps.rate_limit.max_requests),
        ),
    )


PROFILES: Dict[UsageProfile, ProfileLimits] = {
    UsageProfile.CONSTRAINED: clamp_to_caps(
        ProfileLimits(
            max_output_tokens=150,
            max_messages=4,
            temperature=0.5,
            daily_token_limit=30_000,
            max_tokens_per_request=DEFAULT_MAX_TOKENS_PER_REQUEST,
            rate_limit=RateLimit(window_ms=60_000, max_requests=15),
        )
    ),
    UsageProfile.BALANCED: clamp_to_caps(
        ProfileLimits(
            max_output_tokens=400,
            max_messages=6,
            temperature=0.7,
            daily_token_limit=70_000,
            max_tokens_per_request=DEFAULT_MAX_TOKENS_PER_REQUEST,
            rate_limit=RateLimit(window_ms=60_000, max_requests=30),
        )
    ),
    UsageProfile.EXPANDED: clamp_to_caps(
        ProfileLimits(
            max_output_tokens=3000,
            max_messages=12,
            temperature=0.8,
            daily_token_limit=200_000,
            # input (~9k) + output (3k) for 12 messages
            max_tokens_per_request=12_000,
            rate_limit=RateLimit(window_ms=60_000, max_requests=60),
        )
    ),
}

LEGACY_ALIASES: Dict[str, UsageProfile] = {
    "budget": UsageProfile.CONSTRAINED,
    "moderate": UsageProfile.BALANCED,
    "free": UsageProfile.EXPANDED,
}


@dataclass(frozen=True)
class ResolvedProfile:
    limits: ProfileLimits
    profile: UsageProfile


@dataclass(frozen=True)
class ClientOverrides:
    """Client-requested caps; only ever applied as a further ``min()``."""

    daily_token_limit: Optional[int] = None
    max_tokens_per_request: Optional[int] = None


def resolve_profile(label: Any) -> ResolvedProfile:
    """Map a client tier label to its clamped limit set.

    Never fails: non-string, empty and unknown labels resolve to the
    default profile.
    """

    normalized = label.strip().lower() if isinstance(label, str) else ""
    profile = LEGACY_ALIASES.get(normalized)
    if profile is None:
        try:
            profile = UsageProfile(normalized)
        except ValueError:
            profile = DEFAULT_PROFILE
    return ResolvedProfile(limits=clamp_to_caps(PROFILES[profile]), profile=profile)


def apply_overrides(
    limits: ProfileLimits, overrides: Optional[ClientOverrides]
) -> ProfileLimits:
    """Tighten ``limits`` with client overrides; overrides never loosen."""

    if overrides is None:
        return limits
    effective = limits
    if overrides.daily_token_limit is not None:
        effective = replace(
            effective,
            daily_token_limit=min(effective.daily_token_limit, overrides.daily_token_limit),
        )
    if overrides.max_tokens_per_request is not None:
        effective = replace(
            effective,
            max_tokens_per_request=min(
                effective.max_tokens_per_request, overrides.max_tokens_per_request
            ),
        )
    return effective
