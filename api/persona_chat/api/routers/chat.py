"""Chat endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from persona_chat.api.dependencies import get_chat_orchestrator, get_device_lookup
from persona_chat.api.deps import request_context
from persona_chat.services.chat_orchestrator import ChatOrchestrator
from persona_chat.services.device_lookup import DeviceLookupService

router = APIRouter(prefix="/api", tags=["chat"])

MAX_MESSAGE_LENGTH = 1000


class ChatInitRequest(BaseModel):
    token: Optional[str] = Field(default=None, description="Token returned by a previous init call.")


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    session_id: str = Field(..., min_length=1, max_length=64)
    user_token: Optional[str] = None


class RateLimitsBody(BaseModel):
    daily_count: int
    hourly_count: int
    daily_limit: int
    hourly_limit: int
    daily_remaining: Optional[int] = None
    hourly_remaining: Optional[int] = None


class VisitorInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    device_name: Optional[str] = None
    device_version: Optional[str] = None
    os: Optional[str] = None


class ChatInitResponse(BaseModel):
    session_id: str
    user_token: str
    user_info: VisitorInfo
    rate_limits: RateLimitsBody


class ChatResponseBody(BaseModel):
    message: str
    session_id: str
    user_token: Optional[str] = None
    user_info: VisitorInfo
    rate_limits: RateLimitsBody


class ChatStatusResponse(BaseModel):
    session_id: Optional[str]
    allowed: bool
    rate_limits: RateLimitsBody


@router.post("/chat/init", response_model=ChatInitResponse)
async def chat_init(
    payload: ChatInitRequest,
    request: Request,
    response: Response,
    *,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    device_lookup: DeviceLookupService = Depends(get_device_lookup),
) -> ChatInitResponse:
    """Open a chat session and return the visitor's token and quota."""

    context = request_context(request, device_lookup, payload.token)
    init = await orchestrator.init_chat(context)
    response.headers.update(init.headers.as_http_headers())

    return ChatInitResponse(
        session_id=init.session_id,
        user_token=init.user_token,
        user_info=VisitorInfo(name=init.name, email=init.email, **init.device.as_dict()),
        rate_limits=RateLimitsBody(
            daily_count=init.decision.daily_count,
            hourly_count=init.decision.hourly_count,
            daily_limit=init.headers.daily_limit,
            hourly_limit=init.headers.hourly_limit,
        ),
    )


@router.post("/chat", response_model=ChatResponseBody)
async def chat_endpoint(
    payload: ChatRequest,
    request: Request,
    response: Response,
    *,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    device_lookup: DeviceLookupService = Depends(get_device_lookup),
) -> ChatResponseBody:
    """Conduct a chat turn and return the persona's reply."""

    if not payload.message.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message is required and must be a non-empty string",
        )

    context = request_context(request, device_lookup, payload.user_token)
    result = await orchestrator.handle_chat(context, message=payload.message, session_id=payload.session_id)

    response.headers.update(result.headers.as_http_headers())
    return ChatResponseBody(
        message=result.message,
        session_id=result.session_id,
        user_token=result.user_token,
        user_info=VisitorInfo(name=result.name, email=result.email),
        rate_limits=RateLimitsBody(
            daily_count=result.counts.daily_count,
            hourly_count=result.counts.hourly_count,
            daily_limit=result.headers.daily_limit,
            hourly_limit=result.headers.hourly_limit,
            daily_remaining=result.headers.daily_remaining,
            hourly_remaining=result.headers.hourly_remaining,
        ),
    )


@router.get("/chat/status", response_model=ChatStatusResponse)
async def chat_status(
    request: Request,
    response: Response,
    session_id: Optional[str] = None,
    user_token: Optional[str] = None,
    *,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    device_lookup: DeviceLookupService = Depends(get_device_lookup),
) -> ChatStatusResponse:
    """Report the caller's current quota without consuming any."""

    context = request_context(request, device_lookup, user_token)
    quota = await orchestrator.status(context)
    response.headers.update(quota.headers.as_http_headers())

    return ChatStatusResponse(
        session_id=session_id,
        allowed=quota.decision.allowed,
        rate_limits=RateLimitsBody(
            daily_count=quota.decision.daily_count,
            hourly_count=quota.decision.hourly_count,
            daily_limit=quota.headers.daily_limit,
            hourly_limit=quota.headers.hourly_limit,
            daily_remaining=quota.headers.daily_remaining,
            hourly_remaining=quota.headers.hourly_remaining,
        ),
    )
