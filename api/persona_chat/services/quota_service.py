"""Quota facade used by the chat orchestrator and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict

from persona_chat.services.identity import RequestContext, resolve_identifiers
from persona_chat.services.quota_cache import QuotaCache
from persona_chat.services.rate_limiter import RateDecision, RateLimiter, RecordedCounts


@dataclass(frozen=True)
class QuotaHeaders:
    daily_limit: int
    daily_remaining: int
    hourly_limit: int
    hourly_remaining: int
    daily_reset_at: datetime
    hourly_reset_at: datetime

    def as_http_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Daily-Limit": str(self.daily_limit),
            "X-RateLimit-Daily-Remaining": str(self.daily_remaining),
            "X-RateLimit-Daily-Reset": str(int(self.daily_reset_at.timestamp())),
            "X-RateLimit-Hourly-Limit": str(self.hourly_limit),
            "X-RateLimit-Hourly-Remaining": str(self.hourly_remaining),
            "X-RateLimit-Hourly-Reset": str(int(self.hourly_reset_at.timestamp())),
        }


class QuotaService:
    """Evaluate, commit and describe quota for a request context."""

    def __init__(self, rate_limiter: RateLimiter, cache: QuotaCache) -> None:
        self._limiter = rate_limiter
        self._cache = cache

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @staticmethod
    def _identifiers(context: RequestContext):
        if context.identifiers:
            return list(context.identifiers)
        return resolve_identifiers(context.network_address, context.client_token, context.device)

    async def evaluate(self, context: RequestContext) -> RateDecision:
        cached = self._cache.get(context.cache_key)
        if cached is not None:
            return cached

        identifiers = self._identifiers(context)
        generation = self._cache.generation
        decision = await self._limiter.check(identifiers)
        # A commit that finished while check was suspended makes this decision stale.
        self._cache.put(context.cache_key, decision, identifiers, generation=generation)
        return decision

    async def commit(self, context: RequestContext) -> RecordedCounts:
        identifiers = self._identifiers(context)
        try:
            return await self._limiter.record(identifiers)
        finally:
            self._cache.invalidate(identifiers)

    async def headers_for(self, context: RequestContext) -> QuotaHeaders:
        decision = await self.evaluate(context)
        config = self._limiter.config
        return QuotaHeaders(
            daily_limit=config.daily_limit,
            daily_remaining=max(0, config.daily_limit - decision.daily_count),
            hourly_limit=config.hourly_limit,
            hourly_remaining=max(0, config.hourly_limit - decision.hourly_count),
            daily_reset_at=decision.daily_reset_at,
            hourly_reset_at=decision.hourly_reset_at,
        )
