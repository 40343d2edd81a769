"""Health and readiness checks for the API."""

from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends
from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from persona_chat.api.dependencies import get_quota_service, get_redis_client
from persona_chat.api.deps import get_db_session
from persona_chat.services.quota_service import QuotaService

router = APIRouter(tags=["health"])


async def _check_db(session: AsyncSession) -> str:
    try:
        await session.execute(text("SELECT 1"))
        return "ok"
    except SQLAlchemyError as exc:
        logger.error("DB health check failed: {}", exc)
        return f"fail: {exc}"


async def _check_redis(client: Redis) -> str:
    try:
        await client.ping()
        return "ok"
    except (RedisError, OSError) as exc:
        logger.error("Redis health check failed: {}", exc)
        return f"fail: {exc}"


@router.get("/health")
async def health() -> Dict[str, str]:
    """Simple health endpoint for legacy health checks."""

    return {"status": "ok"}


@router.get("/healthz")
async def healthz(
    session: AsyncSession = Depends(get_db_session),
    redis_client: Redis = Depends(get_redis_client),
    quota_service: QuotaService = Depends(get_quota_service),
) -> Dict[str, str]:
    """Readiness checks for the database and the durable counter store."""

    store = quota_service.rate_limiter.store
    return {
        "db": await _check_db(session),
        "redis": await _check_redis(redis_client),
        "counter_store": "durable" if store.durable_available else "fallback",
    }
