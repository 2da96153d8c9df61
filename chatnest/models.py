from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class UsageProfile(str, Enum):
    """Named bundles of limits governing cost and verbosity."""

    CONSTRAINED = "constrained"
    BALANCED = "balanced"
    EXPANDED = "expanded"


DEFAULT_PROFILE = UsageProfile.BALANCED


@dataclass(frozen=True)
class Message:
    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "") -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content)

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class RateLimit:
    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class ProfileLimits:
    max_output_tokens: int
    max_messages: int
    temperature: float
    daily_token_limit: int
    max_tokens_per_request: int
    rate_limit: RateLimit
