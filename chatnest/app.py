from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatnest.api.error_handling import register_exception_handlers
from chatnest.api.routes import router
from chatnest.api.schemas import HealthResponse
from chatnest.config import get_settings
from chatnest.logging import get_logger, set_correlation_id
from chatnest.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the provider on shutdown."""
    runtime = get_runtime()
    logger.info("app_started", version=__version__, provider=runtime.provider.name)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="Chatnest Relay", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Bind a correlation id for structured logging.

        Taken from the ``X-Request-ID`` header when the client sends one,
        otherwise generated. Streaming responses already carry the id their
        session registered under, so it is only filled in when missing.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", correlation_id)
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", response_model=HealthResponse)
    async def health() -> HealthResponse:
        runtime = get_runtime()
        usage = runtime.ledger.snapshot()
        return HealthResponse(
            status="healthy",
            version=__version__,
            provider=runtime.provider.name,
            day=usage.day.isoformat(),
            tokens_used_today=usage.tokens_used_today,
            active_streams=len(runtime.sessions),
        )

    return app


app = create_app()
