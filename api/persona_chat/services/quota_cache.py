"""Short-lived memoization of allowed quota decisions."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Hashable, Iterable, Optional

from persona_chat.services.identity import Identifier
from persona_chat.services.rate_limiter import RateDecision


@dataclass(frozen=True)
class _Entry:
    decision: RateDecision
    identifiers: FrozenSet[Identifier]
    stored_at: float


class QuotaCache:
    """Cache allowed decisions for a few seconds per (network address, token).

    Entries remember which identifiers they were computed from so a write to any
    of those identifiers drops them immediately.
    """

    def __init__(self, ttl_seconds: float = 3.0, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._entries: Dict[Hashable, _Entry] = {}
        self._generation = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def generation(self) -> int:
        """Bumped by every invalidation; snapshot it before computing a decision."""

        return self._generation

    def get(self, key: Hashable) -> Optional[RateDecision]:
        now = self._monotonic()
        self._drop_expired(now)
        entry = self._entries.get(key)
        return entry.decision if entry else None

    def put(
        self,
        key: Hashable,
        decision: RateDecision,
        identifiers: Iterable[Identifier],
        *,
        generation: Optional[int] = None,
    ) -> bool:
        """Store an allowed decision unless an invalidation ran since ``generation``."""

        if self._ttl <= 0 or not decision.allowed:
            return False
        if generation is not None and generation != self._generation:
            return False
        now = self._monotonic()
        self._drop_expired(now)
        self._entries[key] = _Entry(decision=decision, identifiers=frozenset(identifiers), stored_at=now)
        return True

    def invalidate(self, identifiers: Iterable[Identifier]) -> int:
        """Drop every entry that shares an identifier with ``identifiers``."""

        self._generation += 1
        written = frozenset(identifiers)
        stale = [key for key, entry in self._entries.items() if entry.identifiers & written]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def _drop_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at >= self._ttl]
        for key in expired:
            del self._entries[key]
