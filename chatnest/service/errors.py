from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - invalid_payload (400)
    - rate_limited (429)
    - request_limit (429)
    - daily_limit (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_payload"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidPayloadError(ServiceError):
    """Request body is malformed (400)."""
    status_code = 400
    error_code = "invalid_payload"


class RateLimitedError(ServiceError):
    """Request window exhausted for the active profile (429)."""
    status_code = 429
    error_code = "rate_limited"


class BudgetExceededError(ServiceError):
    """Token budget would be exceeded (429)."""
    status_code = 429
    error_code = "budget_exceeded"


class RequestTooLargeError(BudgetExceededError):
    """Estimated input plus output exceeds the per-request ceiling."""
    error_code = "request_limit"


class DailyLimitReachedError(BudgetExceededError):
    """Estimated total does not fit in what is left of today's budget."""
    error_code = "daily_limit"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InvalidPayloadError",
    "RateLimitedError",
    "BudgetExceededError",
    "RequestTooLargeError",
    "DailyLimitReachedError",
    "ServerError",
]
