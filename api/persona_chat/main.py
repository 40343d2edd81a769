"""FastAPI application entrypoint with structured logging."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from persona_chat.api.dependencies import get_device_lookup, get_redis_client
from persona_chat.api.routers.admin import router as admin_router
from persona_chat.api.routers.chat import router as chat_router
from persona_chat.api.routers.health import router as health_router
from persona_chat.db.session import create_tables
from persona_chat.logging import configure_logging, correlation_scope, log_quota_event
from persona_chat.services.model_client import UpstreamUnavailable
from persona_chat.services.rate_limiter import QuotaExceeded
from persona_chat.services.session_coordinator import SessionOwnershipError
from persona_chat.settings import settings
from persona_chat.utils.datetime import utcnow

configure_logging(settings.log_level)

UPSTREAM_UNAVAILABLE_MESSAGE = "AI service temporarily unavailable. Please try again in a moment."


@asynccontextmanager
async def lifespan(_: FastAPI):
    await create_tables()
    logger.info("Database tables ready")
    yield
    await get_redis_client().aclose()
    get_device_lookup().close()


def quota_exceeded_response(exc: QuotaExceeded) -> JSONResponse:
    decision = exc.decision
    reset_at = decision.reset_at
    body = {
        "error": str(exc),
        "reason": exc.reason,
        "daily_count": decision.daily_count,
        "hourly_count": decision.hourly_count,
        "reset_at": reset_at.isoformat() if reset_at else None,
        "exceeded_by": decision.exceeded_by.value if decision.exceeded_by else None,
    }
    headers = {"Retry-After": str(exc.retry_after_seconds(utcnow()))}
    return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=body, headers=headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    application = FastAPI(title="Persona Chat API", version="0.1.0", lifespan=lifespan)
    application.include_router(chat_router)
    application.include_router(admin_router)
    application.include_router(health_router)

    @application.middleware("http")
    async def inject_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.exception_handler(QuotaExceeded)
    async def handle_quota_exceeded(_: Request, exc: QuotaExceeded) -> JSONResponse:
        log_quota_event(
            "quota_rejected",
            identifier_kind=exc.decision.exceeded_by.value if exc.decision.exceeded_by else None,
            daily_count=exc.decision.daily_count,
            hourly_count=exc.decision.hourly_count,
            reset_at=exc.decision.reset_at,
            level="WARNING",
        )
        return quota_exceeded_response(exc)

    @application.exception_handler(UpstreamUnavailable)
    async def handle_upstream_unavailable(_: Request, exc: UpstreamUnavailable) -> JSONResponse:
        logger.error("Model call failed: {}", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": UPSTREAM_UNAVAILABLE_MESSAGE},
        )

    @application.exception_handler(SessionOwnershipError)
    async def handle_session_ownership(_: Request, exc: SessionOwnershipError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"error": str(exc)})

    logger.info("Running environment: {}", settings.environment)
    return application


app = create_app()


if __name__ == "__main__":
    uvicorn.run("persona_chat.main:app", host=settings.api_host, port=settings.api_port)
