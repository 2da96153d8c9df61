from __future__ import annotations

import math
from typing import Iterable

from chatnest.models import Message

CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
    """Character-based token estimate, roughly four characters per token."""

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_tokens(messages: Iterable[Message]) -> int:
    """Approximate prompt tokens for a message list.

    Contents are joined with single spaces before estimating, so the result
    never decreases as content grows. Avoids a tokenizer dependency; budget
    checks only need a consistent approximation, not an exact count.
    """

    text = " ".join(message.content for message in messages)
    return estimate_text_tokens(text)
