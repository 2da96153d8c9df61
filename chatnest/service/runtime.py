from __future__ import annotations

import threading

from chatnest.config import get_settings, reset_settings_cache
from chatnest.logging import get_logger
from chatnest.service.admission import AdmissionGuard
from chatnest.service.providers import CompletionProvider, build_provider
from chatnest.service.rate_limit import FixedWindowRateLimiter
from chatnest.service.relay import CompletionRelay
from chatnest.service.session import SessionRegistry
from chatnest.service.usage import UsageLedger

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide service instances for the FastAPI app.

    The rate limiter and usage ledger live here as in-memory singletons; a
    second process would keep its own independent counters.
    """

    def __init__(self):
        self.settings = get_settings()
        self.ledger = UsageLedger()
        self.rate_limiter = FixedWindowRateLimiter()
        self.guard = AdmissionGuard(self.rate_limiter, self.ledger)
        self.sessions = SessionRegistry()
        try:
            self.provider: CompletionProvider = build_provider(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_provider_init_failed",
                provider=self.settings.provider.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        logger.info(
            "runtime_initialized",
            provider=self.provider.name,
            chat_model=self.settings.chat_model,
            heartbeat_interval_seconds=self.settings.heartbeat_interval_seconds,
            test_mode=self.settings.test_mode,
        )

    def relay(self) -> CompletionRelay:
        return CompletionRelay(self.provider, self.settings.chat_model)

    async def close(self) -> None:
        await self.provider.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use.

    The locked re-check guarantees one runtime, and so one ledger and one
    rate limiter, per process.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
