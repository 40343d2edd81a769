"""FastAPI dependencies for shared concerns."""

from __future__ import annotations

import hmac
from collections.abc import AsyncIterator
from typing import Optional

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from persona_chat.db.session import get_session
from persona_chat.services.device_lookup import DeviceLookupService
from persona_chat.services.identity import RequestContext, build_request_context
from persona_chat.settings import settings


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """Provide a database session dependency."""

    async for session in get_session():
        yield session


def client_address(request: Request) -> str:
    """Caller address, honouring the first hop of X-Forwarded-For."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def request_context(
    request: Request,
    device_lookup: DeviceLookupService,
    client_token: Optional[str] = None,
) -> RequestContext:
    address = client_address(request)
    user_agent = request.headers.get("user-agent", "")
    device = device_lookup.lookup(address, user_agent)
    return build_request_context(address, client_token, user_agent, device)


def require_admin_token(x_admin_token: str = Header(..., alias="X-Admin-Token")) -> None:
    expected = settings.admin_api_key
    if not expected or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token.")
