from __future__ import annotations

import math
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from chatnest.models import Message, MessageRole

# Maximum array items to prevent memory exhaustion
MAX_ARRAY_ITEMS = 1000
# 100KB per message to prevent DoS
MAX_MESSAGE_LENGTH = 100_000
MAX_SYSTEM_PROMPT_LENGTH = 4000


class MessagePayload(BaseModel):
    """One history entry as sent on the wire."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid4()), min_length=1, max_length=128)
    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=MAX_MESSAGE_LENGTH)

    def to_message(self) -> Message:
        return Message(id=self.id, role=MessageRole(self.role), content=self.content)


MessageList = TypeAdapter(List[MessagePayload])


class ChatRequest(BaseModel):
    """Top-level request body for ``POST /api/chat``.

    ``messages`` is kept raw here; the admission guard owns validating it so
    that a malformed history is rejected through the same decision path as
    every other admission outcome.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: Any = None
    profile: Optional[Any] = None
    system_prompt: Optional[str] = Field(
        None, alias="systemPrompt", max_length=MAX_SYSTEM_PROMPT_LENGTH
    )
    daily_token_limit: Optional[float] = Field(
        None, alias="dailyTokenLimit", ge=0, allow_inf_nan=False
    )
    max_tokens_per_request: Optional[float] = Field(
        None, alias="maxTokensPerRequest", ge=0, allow_inf_nan=False
    )

    @field_validator("system_prompt")
    @classmethod
    def _blank_prompt_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("daily_token_limit", "max_tokens_per_request")
    @classmethod
    def _floor_override(cls, value: Optional[float]) -> Optional[int]:
        # Fractional limits round down
        if value is None:
            return None
        return math.floor(value)


class ChatCancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(..., alias="requestId", min_length=1, max_length=128)


class ChatCancelResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(..., alias="requestId")
    cancelled: bool
    message: str


class ErrorResponse(BaseModel):
    """Error body for every non-streaming failure."""

    error: str
    code: str
    details: Optional[Any] = None  # object, array, or null


class HealthResponse(BaseModel):
    status: str
    version: str
    provider: str
    day: str
    tokens_used_today: int
    active_streams: int
