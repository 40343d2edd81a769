"""Logging utilities providing JSON output and correlation IDs."""

from __future__ import annotations

import re
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Generator, Optional

from loguru import logger

_CORRELATION_ID: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"\+?\d[\d\-\s]{6,}\d")


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru to emit JSON logs to stdout."""

    logger.remove()
    logger.add(sys.stdout, level=level, enqueue=True, serialize=True, backtrace=False, diagnose=False)


def get_correlation_id() -> Optional[str]:
    """Return the correlation ID for the current context, if any."""

    return _CORRELATION_ID.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Generator[None, None, None]:
    """Context manager that sets a correlation ID for the duration of the scope."""

    cid = correlation_id or get_correlation_id() or str(uuid.uuid4())
    token = _CORRELATION_ID.set(cid)
    with logger.contextualize(correlation_id=cid):
        try:
            yield
        finally:
            _CORRELATION_ID.reset(token)


def redact_pii(value: str) -> str:
    """Redact email addresses and phone numbers from log messages."""

    if not value:
        return value

    redacted = EMAIL_PATTERN.sub("[REDACTED_EMAIL]", value)
    redacted = PHONE_PATTERN.sub("[REDACTED_PHONE]", redacted)
    return redacted


def log_quota_event(
    event: str,
    *,
    identifier_kind: Optional[str],
    daily_count: int,
    hourly_count: int,
    reset_at: Optional[datetime] = None,
    level: str = "INFO",
    **extra: Any,
) -> None:
    """Emit a structured log line for a quota decision or commit."""

    payload: Dict[str, Any] = {
        "event": event,
        "identifier_kind": identifier_kind,
        "daily_count": daily_count,
        "hourly_count": hourly_count,
        "reset_at": reset_at.isoformat() if reset_at else None,
    }
    payload.update(extra)

    cleaned = {key: value for key, value in payload.items() if value is not None}
    logger.bind(**cleaned).log(level, event)


__all__ = [
    "configure_logging",
    "correlation_scope",
    "get_correlation_id",
    "log_quota_event",
    "redact_pii",
]
