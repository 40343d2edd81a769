"""Service layer package."""

from persona_chat.services.counter_store import CounterStore
from persona_chat.services.quota_service import QuotaService
from persona_chat.services.rate_limiter import RateLimiter
from persona_chat.services.session_coordinator import SessionCoordinator

__all__ = ["CounterStore", "QuotaService", "RateLimiter", "SessionCoordinator"]
