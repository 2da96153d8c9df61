"""Tests for the admission guard decision order and outcomes."""

from datetime import date

import pytest

from chatnest.models import MessageRole, UsageProfile
from chatnest.service.admission import (
    Accepted,
    AdmissionGuard,
    Rejected,
    RejectReason,
    parse_messages,
    trim_messages,
)
from chatnest.service.errors import (
    DailyLimitReachedError,
    InvalidPayloadError,
    RateLimitedError,
    RequestTooLargeError,
)
from chatnest.service.profiles import PROFILES, ClientOverrides
from chatnest.service.rate_limit import FixedWindowRateLimiter
from chatnest.service.tokens import estimate_tokens
from chatnest.service.usage import UsageLedger


def _history(count: int, content: str = "hello there"):
    roles = ["user", "assistant"]
    return [
        {"id": f"m{i}", "role": roles[i % 2], "content": f"{content} {i}"} for i in range(count)
    ]


@pytest.fixture
def ledger():
    return UsageLedger(today=lambda: date(2026, 1, 1))


@pytest.fixture
def guard(ledger):
    return AdmissionGuard(FixedWindowRateLimiter(clock=lambda: 0.0), ledger)


class TestParseMessages:
    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "hello",
            {"role": "user", "content": "x"},
            [],
            [{"role": "system", "content": "x"}],
            [{"role": "user"}],
            [{"role": "user", "content": 5}],
            [{"role": "user", "content": "ok"}, "junk"],
        ],
    )
    def test_malformed_payloads(self, raw):
        assert parse_messages(raw) is None

    def test_too_many_items(self):
        assert parse_messages(_history(1001)) is None

    def test_valid_history(self):
        messages = parse_messages([{"id": "a", "role": "user", "content": "hi"}])
        assert len(messages) == 1
        assert messages[0].id == "a"
        assert messages[0].role == MessageRole.USER

    def test_missing_id_gets_generated(self):
        messages = parse_messages([{"role": "assistant", "content": ""}])
        assert messages[0].id


class TestTrimMessages:
    def test_keeps_newest(self):
        messages = parse_messages(_history(8))
        trimmed = trim_messages(messages, 3)
        assert [m.id for m in trimmed] == ["m5", "m6", "m7"]

    def test_short_history_unchanged(self):
        messages = parse_messages(_history(2))
        assert trim_messages(messages, 6) == messages


class TestAdmissionGuard:
    def test_accepts_and_trims_to_profile(self, guard):
        decision = guard.admit("constrained", None, _history(10))
        assert isinstance(decision, Accepted)
        assert decision.profile == UsageProfile.CONSTRAINED
        assert len(decision.trimmed_messages) == PROFILES[UsageProfile.CONSTRAINED].max_messages
        assert decision.trimmed_messages[-1].id == "m9"

    def test_estimated_total_includes_output_budget(self, guard):
        decision = guard.admit("balanced", None, _history(2))
        expected = estimate_tokens(decision.trimmed_messages) + 400
        assert decision.estimated_total == expected

    def test_unknown_profile_defaults_to_balanced(self, guard):
        decision = guard.admit("platinum", None, _history(1))
        assert decision.profile == UsageProfile.BALANCED

    def test_invalid_payload(self, guard):
        decision = guard.admit("balanced", None, "not a list")
        assert isinstance(decision, Rejected)
        assert decision.reason == RejectReason.INVALID_PAYLOAD
        assert isinstance(decision.to_error(), InvalidPayloadError)

    def test_invalid_payload_does_not_consume_rate_limit(self, guard):
        guard.admit("balanced", None, [])
        assert guard.rate_limiter.count == 0

    def test_rate_limited_after_ceiling(self, guard):
        for _ in range(15):
            assert isinstance(guard.admit("constrained", None, _history(1)), Accepted)
        decision = guard.admit("constrained", None, _history(1))
        assert isinstance(decision, Rejected)
        assert decision.reason == RejectReason.RATE_LIMITED
        error = decision.to_error()
        assert isinstance(error, RateLimitedError)
        assert error.status_code == 429

    def test_request_limit(self, guard):
        decision = guard.admit(
            "balanced", ClientOverrides(max_tokens_per_request=100), _history(1)
        )
        assert isinstance(decision, Rejected)
        assert decision.reason == RejectReason.REQUEST_LIMIT
        assert decision.estimated_total > 100
        error = decision.to_error()
        assert isinstance(error, RequestTooLargeError)
        assert error.error_code == "request_limit"
        assert error.detail == {"estimated_total": decision.estimated_total}

    def test_large_history_exceeds_request_limit(self, guard):
        decision = guard.admit("balanced", None, _history(6, content="z" * 2000))
        assert isinstance(decision, Rejected)
        assert decision.reason == RejectReason.REQUEST_LIMIT

    def test_daily_limit_when_ledger_full(self, guard, ledger):
        ledger.record(PROFILES[UsageProfile.BALANCED].daily_token_limit)
        decision = guard.admit("balanced", None, _history(2))
        assert isinstance(decision, Rejected)
        assert decision.reason == RejectReason.DAILY_LIMIT
        error = decision.to_error()
        assert isinstance(error, DailyLimitReachedError)
        assert error.status_code == 429
        assert error.error_code == "daily_limit"

    def test_daily_override_tightens_budget(self, guard, ledger):
        ledger.record(100)
        decision = guard.admit("balanced", ClientOverrides(daily_token_limit=500), _history(1))
        assert isinstance(decision, Rejected)
        assert decision.reason == RejectReason.DAILY_LIMIT

    def test_request_limit_checked_before_daily_limit(self, guard, ledger):
        ledger.record(PROFILES[UsageProfile.BALANCED].daily_token_limit)
        decision = guard.admit(
            "balanced", ClientOverrides(max_tokens_per_request=10), _history(1)
        )
        assert decision.reason == RejectReason.REQUEST_LIMIT

    def test_admission_does_not_record_usage(self, guard, ledger):
        guard.admit("balanced", None, _history(2))
        assert ledger.tokens_used_today == 0
