"""Request-level control flow for chat turns."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from persona_chat.db.models import UserProfile
from persona_chat.logging import redact_pii
from persona_chat.services.assistant import PersonaAssistant
from persona_chat.services.identity import DeviceInfo, RequestContext
from persona_chat.services.quota_service import QuotaHeaders, QuotaService
from persona_chat.services.rate_limiter import RateDecision, RecordedCounts
from persona_chat.services.session_coordinator import SessionCoordinator, new_session_id


@dataclass
class ChatResult:
    message: str
    session_id: str
    user_token: Optional[str]
    name: Optional[str]
    email: Optional[str]
    counts: RecordedCounts
    headers: QuotaHeaders


@dataclass
class ChatInit:
    session_id: str
    user_token: str
    device: DeviceInfo
    name: Optional[str]
    email: Optional[str]
    decision: RateDecision
    headers: QuotaHeaders


@dataclass
class QuotaStatus:
    decision: RateDecision
    headers: QuotaHeaders


class ChatOrchestrator:
    """Check quota, call the persona assistant, then record the turn."""

    def __init__(
        self,
        *,
        quota_service: QuotaService,
        coordinator: SessionCoordinator,
        assistant: PersonaAssistant,
    ) -> None:
        self._quota = quota_service
        self._coordinator = coordinator
        self._assistant = assistant

    async def init_chat(self, context: RequestContext) -> ChatInit:
        """Resolve the visitor, open a session and report the current quota."""

        user = await self._coordinator.resolve_user(
            context.client_token,
            network_address=context.network_address,
            device=context.device,
        )
        session_id = new_session_id()
        await self._coordinator.continue_session(user, session_id)
        decision = await self._quota.evaluate(context)
        headers = await self._quota.headers_for(context)
        return ChatInit(
            session_id=session_id,
            user_token=user.token,
            device=context.device or DeviceInfo(),
            name=user.name,
            email=user.email,
            decision=decision,
            headers=headers,
        )

    async def handle_chat(self, context: RequestContext, *, message: str, session_id: str) -> ChatResult:
        """Process one chat turn.

        Raises QuotaExceeded before any model call when the caller is out of
        quota, and UpstreamUnavailable when the model fails. Neither is retried,
        and quota is only consumed once the model has answered.
        """

        decision = await self._quota.evaluate(context)
        self._quota.rate_limiter.ensure_allowed(decision)

        sanitized_message = message.strip() if message else ""
        self._log_user_message(sanitized_message)

        # Profiles are only minted by init_chat; a tokenless turn stays anonymous.
        user: Optional[UserProfile] = None
        if context.client_token:
            user = await self._coordinator.resolve_user(
                context.client_token,
                network_address=context.network_address,
                device=context.device,
            )
        chat_session = await self._coordinator.continue_session(user, session_id)
        history = await self._coordinator.conversation_history(user, session_id)

        reply = await self._assistant.reply(
            message=sanitized_message,
            history=history,
            user=user,
            session_id=session_id,
        )

        counts = await self._quota.commit(context)
        try:
            await self._coordinator.record_exchange(
                chat_session,
                reply.user,
                sanitized_message,
                reply.text,
                reply.tool_outputs,
            )
        except SQLAlchemyError as exc:
            logger.error("Failed to store transcript for session {}: {}", session_id, exc)

        headers = await self._quota.headers_for(context)
        return ChatResult(
            message=reply.text,
            session_id=session_id,
            user_token=reply.user.token if reply.user else None,
            name=reply.user.name if reply.user else None,
            email=reply.user.email if reply.user else None,
            counts=counts,
            headers=headers,
        )

    async def status(self, context: RequestContext) -> QuotaStatus:
        decision = await self._quota.evaluate(context)
        headers = await self._quota.headers_for(context)
        return QuotaStatus(decision=decision, headers=headers)

    def _log_user_message(self, message: str) -> None:
        if message:
            logger.info("Received chat message: {}", redact_pii(message))
