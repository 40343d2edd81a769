"""Service factories and singletons used across API routes."""

from __future__ import annotations

from functools import lru_cache

from redis.asyncio import Redis

from persona_chat.db.session import SessionLocal
from persona_chat.services.assistant import PersonaAssistant
from persona_chat.services.chat_orchestrator import ChatOrchestrator
from persona_chat.services.counter_store import CounterStore, RedisCounterBackend
from persona_chat.services.device_lookup import DeviceLookupService
from persona_chat.services.model_client import OpenAIModelClient
from persona_chat.services.quota_cache import QuotaCache
from persona_chat.services.quota_service import QuotaService
from persona_chat.services.rate_limiter import RateLimitConfig, RateLimiter
from persona_chat.services.session_coordinator import SessionCoordinator
from persona_chat.settings import settings


@lru_cache(maxsize=1)
def _redis_client() -> Redis:
    return Redis.from_url(
        settings.redis.url,
        decode_responses=True,
        socket_connect_timeout=settings.quota.store_timeout_seconds,
        socket_timeout=settings.quota.store_timeout_seconds,
        health_check_interval=settings.redis.health_check_interval,
    )


def get_redis_client() -> Redis:
    return _redis_client()


@lru_cache(maxsize=1)
def _counter_store() -> CounterStore:
    return CounterStore(
        RedisCounterBackend(_redis_client()),
        timeout_seconds=settings.quota.store_timeout_seconds,
        retry_seconds=settings.quota.store_retry_seconds,
    )


@lru_cache(maxsize=1)
def _quota_service() -> QuotaService:
    config = RateLimitConfig(
        daily_limit=settings.quota.daily_limit,
        hourly_limit=settings.quota.hourly_limit,
    )
    return QuotaService(
        RateLimiter(_counter_store(), config),
        QuotaCache(ttl_seconds=settings.quota.cache_ttl_seconds),
    )


def get_quota_service() -> QuotaService:
    return _quota_service()


@lru_cache(maxsize=1)
def _device_lookup() -> DeviceLookupService:
    return DeviceLookupService(settings.geoip_database_path)


def get_device_lookup() -> DeviceLookupService:
    return _device_lookup()


@lru_cache(maxsize=1)
def _session_coordinator() -> SessionCoordinator:
    return SessionCoordinator(SessionLocal)


@lru_cache(maxsize=1)
def _model_client() -> OpenAIModelClient:
    return OpenAIModelClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout_seconds=settings.openai_timeout_seconds,
    )


@lru_cache(maxsize=1)
def _chat_orchestrator() -> ChatOrchestrator:
    assistant = PersonaAssistant(
        model_client=_model_client(),
        coordinator=_session_coordinator(),
        persona=settings.persona,
        max_tool_rounds=settings.max_tool_rounds,
    )
    return ChatOrchestrator(
        quota_service=_quota_service(),
        coordinator=_session_coordinator(),
        assistant=assistant,
    )


def get_chat_orchestrator() -> ChatOrchestrator:
    return _chat_orchestrator()
