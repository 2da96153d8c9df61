from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable

from chatnest.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    day: date
    tokens_used_today: int


class UsageLedger:
    """Process-wide count of tokens spent in the current calendar day.

    Usage is reset exactly when ``today()`` returns a different date from
    the one stored; nothing persists across restarts.
    """

    def __init__(self, today: Callable[[], date] = date.today) -> None:
        self._today = today
        self._day = today()
        self._tokens_used_today = 0

    def _roll(self) -> None:
        current = self._today()
        if current != self._day:
            logger.info(
                "usage_ledger_day_rollover",
                previous_day=self._day.isoformat(),
                day=current.isoformat(),
                tokens_used_previous_day=self._tokens_used_today,
            )
            self._day = current
            self._tokens_used_today = 0

    def can_spend(self, estimated_tokens: int, daily_limit: int) -> bool:
        self._roll()
        return self._tokens_used_today + estimated_tokens <= daily_limit

    def record(self, used_tokens: int) -> None:
        self._roll()
        self._tokens_used_today += used_tokens

    @property
    def tokens_used_today(self) -> int:
        self._roll()
        return self._tokens_used_today

    def snapshot(self) -> UsageSnapshot:
        self._roll()
        return UsageSnapshot(day=self._day, tokens_used_today=self._tokens_used_today)
