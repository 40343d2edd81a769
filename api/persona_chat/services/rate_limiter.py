"""Multi-identifier rate limiter over the counter store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from persona_chat.logging import log_quota_event
from persona_chat.services.counter_store import CounterStore, RateLimitRecord
from persona_chat.services.identity import Identifier, IdentifierKind
from persona_chat.utils.datetime import next_day_boundary, next_hour_boundary, seconds_until


class LimitWindow(str, Enum):
    NONE = "none"
    DAILY = "daily"
    HOURLY = "hourly"


@dataclass(frozen=True)
class RateLimitConfig:
    daily_limit: int
    hourly_limit: int

    def __post_init__(self) -> None:
        if self.daily_limit <= 0 or self.hourly_limit <= 0:
            raise ValueError("Rate limits must be positive integers.")


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limiting_window: LimitWindow
    daily_count: int
    hourly_count: int
    daily_reset_at: datetime
    hourly_reset_at: datetime
    exceeded_by: Optional[IdentifierKind] = None

    @property
    def reset_at(self) -> Optional[datetime]:
        """Reset time of the window that denied the request."""

        if self.limiting_window is LimitWindow.DAILY:
            return self.daily_reset_at
        if self.limiting_window is LimitWindow.HOURLY:
            return self.hourly_reset_at
        return None


@dataclass(frozen=True)
class RecordedCounts:
    daily_count: int
    hourly_count: int


class QuotaExceeded(Exception):
    """Raised when a caller has used up a daily or hourly allowance."""

    def __init__(self, decision: RateDecision, limit: int) -> None:
        window = decision.limiting_window.value
        super().__init__(
            f"{window.capitalize()} limit reached. You can send up to {limit} messages per "
            f"{'day' if decision.limiting_window is LimitWindow.DAILY else 'hour'}."
        )
        self.decision = decision
        self.limit = limit

    @property
    def reason(self) -> str:
        return f"{self.decision.limiting_window.value}_limit"

    def retry_after_seconds(self, now: datetime) -> int:
        reset_at = self.decision.reset_at
        return seconds_until(reset_at, now) if reset_at else 0


class RateLimiter:
    """Check and record requests across every identifier of a request.

    ``check`` reports the highest counts seen over the evaluated identifiers and
    stops at the first identifier that has used up a window. ``record``
    increments every identifier. Callers must only record after an allowed
    check.
    """

    def __init__(self, store: CounterStore, config: RateLimitConfig) -> None:
        self._store = store
        self._config = config

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def store(self) -> CounterStore:
        return self._store

    def _exceeded_window(self, record: RateLimitRecord) -> LimitWindow:
        # A window is exhausted once its count has reached the limit: one more
        # request would take it over.
        if record.daily_count >= self._config.daily_limit:
            return LimitWindow.DAILY
        if record.hourly_count >= self._config.hourly_limit:
            return LimitWindow.HOURLY
        return LimitWindow.NONE

    async def check(self, identifiers: Sequence[Identifier]) -> RateDecision:
        now = self._store.now()
        max_daily = 0
        max_hourly = 0
        daily_reset_at = next_day_boundary(now)
        hourly_reset_at = next_hour_boundary(now)

        for identifier in identifiers:
            record = await self._store.check_and_maybe_reset(identifier)
            max_daily = max(max_daily, record.daily_count)
            max_hourly = max(max_hourly, record.hourly_count)
            daily_reset_at = record.daily_reset_at
            hourly_reset_at = record.hourly_reset_at

            window = self._exceeded_window(record)
            if window is not LimitWindow.NONE:
                decision = RateDecision(
                    allowed=False,
                    limiting_window=window,
                    daily_count=max_daily,
                    hourly_count=max_hourly,
                    daily_reset_at=daily_reset_at,
                    hourly_reset_at=hourly_reset_at,
                    exceeded_by=identifier.kind,
                )
                log_quota_event(
                    "quota_denied",
                    identifier_kind=identifier.kind.value,
                    daily_count=max_daily,
                    hourly_count=max_hourly,
                    reset_at=decision.reset_at,
                    window=window.value,
                    level="WARNING",
                )
                return decision

        return RateDecision(
            allowed=True,
            limiting_window=LimitWindow.NONE,
            daily_count=max_daily,
            hourly_count=max_hourly,
            daily_reset_at=daily_reset_at,
            hourly_reset_at=hourly_reset_at,
        )

    async def record(self, identifiers: Sequence[Identifier]) -> RecordedCounts:
        records = await asyncio.gather(*(self._store.increment(identifier) for identifier in identifiers))
        counts = RecordedCounts(
            daily_count=max((record.daily_count for record in records), default=0),
            hourly_count=max((record.hourly_count for record in records), default=0),
        )
        log_quota_event(
            "quota_recorded",
            identifier_kind=None,
            daily_count=counts.daily_count,
            hourly_count=counts.hourly_count,
            identifiers=len(records),
            level="DEBUG",
        )
        return counts

    def limit_for(self, window: LimitWindow) -> int:
        if window is LimitWindow.HOURLY:
            return self._config.hourly_limit
        return self._config.daily_limit

    def ensure_allowed(self, decision: RateDecision) -> RateDecision:
        """Return the decision, raising QuotaExceeded when it is a denial."""

        if not decision.allowed:
            raise QuotaExceeded(decision, self.limit_for(decision.limiting_window))
        return decision


__all__ = [
    "LimitWindow",
    "QuotaExceeded",
    "RateDecision",
    "RateLimitConfig",
    "RateLimiter",
    "RecordedCounts",
]
