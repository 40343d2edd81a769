"""Daily and hourly request counters per identifier.

Counters live in Redis when it is reachable. When a Redis call fails or does not
answer within the configured timeout, the store switches to a process-local
in-memory tier with the same window semantics and tries Redis again after a
retry interval.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple, TypeVar

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from persona_chat.services.identity import Identifier, IdentifierKind
from persona_chat.utils.datetime import Clock, as_utc, next_day_boundary, next_hour_boundary, utcnow

T = TypeVar("T")

KEY_PREFIX = "ratelimit"
# Bucket keys outlive their window briefly so late readers still see them.
EXPIRY_GRACE = timedelta(minutes=5)


@dataclass(frozen=True)
class RateLimitRecord:
    identifier: str
    kind: IdentifierKind
    daily_count: int
    hourly_count: int
    daily_reset_at: datetime
    hourly_reset_at: datetime


class StoreUnavailable(Exception):
    """Raised when the durable counter store cannot be reached."""


class CounterBackend(Protocol):
    async def check_and_maybe_reset(self, identifier: Identifier, now: datetime) -> RateLimitRecord: ...

    async def increment(self, identifier: Identifier, now: datetime) -> RateLimitRecord: ...


class InMemoryCounterBackend:
    """Counters held in a dict for the lifetime of the process."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[IdentifierKind, str], RateLimitRecord] = {}
        self._lock = threading.Lock()

    def _current(self, identifier: Identifier, now: datetime) -> RateLimitRecord:
        key = (identifier.kind, identifier.value)
        record = self._records.get(key)
        if record is None:
            record = RateLimitRecord(
                identifier=identifier.value,
                kind=identifier.kind,
                daily_count=0,
                hourly_count=0,
                daily_reset_at=next_day_boundary(now),
                hourly_reset_at=next_hour_boundary(now),
            )
        if now >= record.daily_reset_at:
            record = replace(record, daily_count=0, daily_reset_at=next_day_boundary(now))
        if now >= record.hourly_reset_at:
            record = replace(record, hourly_count=0, hourly_reset_at=next_hour_boundary(now))
        self._records[key] = record
        return record

    async def check_and_maybe_reset(self, identifier: Identifier, now: datetime) -> RateLimitRecord:
        with self._lock:
            return self._current(identifier, now)

    async def increment(self, identifier: Identifier, now: datetime) -> RateLimitRecord:
        with self._lock:
            record = self._current(identifier, now)
            record = replace(
                record,
                daily_count=record.daily_count + 1,
                hourly_count=record.hourly_count + 1,
            )
            self._records[(identifier.kind, identifier.value)] = record
            return record


class RedisCounterBackend:
    """Counters stored as one Redis key per identifier and window bucket.

    A bucket key embeds the window it counts (UTC date or UTC hour), so crossing a
    boundary starts from a fresh, absent key. INCR and EXPIREAT for both windows
    run inside one MULTI/EXEC transaction.
    """

    def __init__(self, redis_client: Redis, *, prefix: str = KEY_PREFIX) -> None:
        self._redis = redis_client
        self._prefix = prefix

    def _keys(self, identifier: Identifier, now: datetime) -> Tuple[str, str]:
        base = f"{self._prefix}:{identifier.kind.value}:{identifier.value}"
        return (
            f"{base}:daily:{now.strftime('%Y%m%d')}",
            f"{base}:hourly:{now.strftime('%Y%m%d%H')}",
        )

    def _record(self, identifier: Identifier, now: datetime, daily: Optional[object], hourly: Optional[object]) -> RateLimitRecord:
        return RateLimitRecord(
            identifier=identifier.value,
            kind=identifier.kind,
            daily_count=int(daily or 0),
            hourly_count=int(hourly or 0),
            daily_reset_at=next_day_boundary(now),
            hourly_reset_at=next_hour_boundary(now),
        )

    async def check_and_maybe_reset(self, identifier: Identifier, now: datetime) -> RateLimitRecord:
        daily_key, hourly_key = self._keys(identifier, now)
        daily, hourly = await self._redis.mget(daily_key, hourly_key)
        return self._record(identifier, now, daily, hourly)

    async def increment(self, identifier: Identifier, now: datetime) -> RateLimitRecord:
        daily_key, hourly_key = self._keys(identifier, now)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(daily_key)
            pipe.expireat(daily_key, next_day_boundary(now) + EXPIRY_GRACE)
            pipe.incr(hourly_key)
            pipe.expireat(hourly_key, next_hour_boundary(now) + EXPIRY_GRACE)
            daily, _, hourly, _ = await pipe.execute()
        return self._record(identifier, now, daily, hourly)


class CounterStore:
    """Counter store with a durable Redis tier and an in-memory fallback tier."""

    def __init__(
        self,
        durable: Optional[CounterBackend] = None,
        *,
        fallback: Optional[InMemoryCounterBackend] = None,
        timeout_seconds: float = 0.5,
        retry_seconds: float = 30.0,
        clock: Clock = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._durable = durable
        self._fallback = fallback or InMemoryCounterBackend()
        self._timeout = timeout_seconds
        self._retry_seconds = retry_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._retry_at: Optional[float] = None

    @property
    def durable_available(self) -> bool:
        if self._durable is None:
            return False
        return self._retry_at is None or self._monotonic() >= self._retry_at

    def now(self) -> datetime:
        return as_utc(self._clock())

    async def check_and_maybe_reset(self, identifier: Identifier) -> RateLimitRecord:
        now = as_utc(self._clock())
        return await self._dispatch(
            lambda backend: backend.check_and_maybe_reset(identifier, now),
            operation="check",
        )

    async def increment(self, identifier: Identifier) -> RateLimitRecord:
        now = as_utc(self._clock())
        return await self._dispatch(
            lambda backend: backend.increment(identifier, now),
            operation="increment",
        )

    async def _dispatch(
        self,
        call: Callable[[CounterBackend], Awaitable[T]],
        *,
        operation: str,
    ) -> T:
        if self.durable_available:
            try:
                result = await self._call_durable(call, operation=operation)
            except StoreUnavailable as exc:
                self._mark_unavailable(operation, exc)
            else:
                if self._retry_at is not None:
                    logger.info("Counter store reconnected; leaving in-memory fallback")
                    self._retry_at = None
                return result
        return await call(self._fallback)

    async def _call_durable(self, call: Callable[[CounterBackend], Awaitable[T]], *, operation: str) -> T:
        try:
            return await asyncio.wait_for(call(self._durable), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            if operation == "increment":
                # MULTI/EXEC may have run before the cancellation landed.
                logger.warning(
                    "Counter increment timed out after {}s; Redis may already hold this request "
                    "and the in-memory tier will count it again",
                    self._timeout,
                )
            raise StoreUnavailable(f"no answer within {self._timeout}s") from exc
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(str(exc)) from exc

    def _mark_unavailable(self, operation: str, exc: StoreUnavailable) -> None:
        logger.warning(
            "Counter store unavailable during {}: {} (using in-memory fallback for {}s)",
            operation,
            exc,
            self._retry_seconds,
        )
        self._retry_at = self._monotonic() + self._retry_seconds


__all__ = [
    "CounterBackend",
    "CounterStore",
    "InMemoryCounterBackend",
    "RateLimitRecord",
    "RedisCounterBackend",
    "StoreUnavailable",
]
