"""User profiles, chat sessions and the conversation continuity policy."""

from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from persona_chat.db.models import ChatMessage, ChatSession, UnknownQuestion, UserProfile
from persona_chat.services.identity import DeviceInfo
from persona_chat.utils.datetime import Clock, utcnow


HISTORY_LIMIT = 10
NOTES_MAX_LENGTH = 1000
EMAIL_MAX_LENGTH = 254
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SessionOwnershipError(Exception):
    """Raised when a session id already belongs to another user."""


class InvalidEmail(ValueError):
    """Raised when a supplied email address is not usable."""


@dataclass
class DetailsUpdate:
    user: UserProfile
    updated_fields: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.updated_fields)


def normalize_email(email: str) -> str:
    candidate = email.strip()
    if not candidate:
        raise InvalidEmail("Email cannot be empty")
    if " " in candidate:
        raise InvalidEmail("Email address cannot contain spaces")
    if len(candidate) > EMAIL_MAX_LENGTH:
        raise InvalidEmail("Email address is too long")
    if not EMAIL_PATTERN.match(candidate):
        raise InvalidEmail("Please provide a valid email address (e.g., user@example.com)")
    return candidate.lower()


def new_token() -> str:
    return secrets.token_hex(32)


def new_session_id() -> str:
    return uuid.uuid4().hex


class SessionCoordinator:
    """Map client tokens to profiles and profiles to chat sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def resolve_user(
        self,
        token: Optional[str],
        *,
        network_address: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> UserProfile:
        """Return the profile for ``token``, creating it when unseen.

        Without a token a fresh one is minted. Concurrent creation of the same
        token resolves to whichever row won the unique constraint.
        """

        now = self._clock()
        async with self._session_factory() as session:
            if token:
                user = await self._find_by_token(session, token)
                if user is not None:
                    user.last_seen_ip = network_address or user.last_seen_ip
                    user.last_activity = now
                    await session.commit()
                    return user

            user = UserProfile(
                token=token or new_token(),
                first_seen_ip=network_address,
                last_seen_ip=network_address,
                device_info=device.as_dict() if device else {},
                total_messages=0,
                last_activity=now,
                created_at=now,
            )
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_by_token(session, user.token)
                if existing is None:
                    raise
                existing.last_seen_ip = network_address or existing.last_seen_ip
                existing.last_activity = now
                await session.commit()
                logger.info("Concurrent profile creation for token resolved to existing user {}", existing.id)
                return existing

            logger.info("Created user profile {}", user.id)
            return user

    async def find_user(self, token: str) -> Optional[UserProfile]:
        async with self._session_factory() as session:
            return await self._find_by_token(session, token)

    async def continue_session(self, user: Optional[UserProfile], session_id: str) -> ChatSession:
        """Attach ``session_id`` to ``user`` unless another user already owns it.

        Without a user the session is fetched or opened as-is and ownership is
        not checked.
        """

        now = self._clock()
        async with self._session_factory() as session:
            chat_session = await session.get(ChatSession, session_id)
            if chat_session is None:
                chat_session = ChatSession(
                    session_id=session_id,
                    user_id=user.id if user else None,
                    message_count=0,
                    last_activity=now,
                    created_at=now,
                )
                session.add(chat_session)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    chat_session = await session.get(ChatSession, session_id)
                    if chat_session is None:
                        raise
                else:
                    return chat_session

            if user is None:
                return chat_session
            if chat_session.user_id is None:
                chat_session.user_id = user.id
                await session.commit()
            elif chat_session.user_id != user.id:
                raise SessionOwnershipError(f"Session {session_id} belongs to another user.")
            return chat_session

    async def record_exchange(
        self,
        chat_session: ChatSession,
        user: Optional[UserProfile],
        message: str,
        reply: str,
        tool_outputs: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Count the exchange on the session and the profile and store the transcript.

        Returns the session's message count after the exchange.
        """

        now = self._clock()
        async with self._session_factory() as session:
            await session.execute(
                update(ChatSession)
                .where(ChatSession.session_id == chat_session.session_id)
                .values(message_count=ChatSession.message_count + 1, last_activity=now)
            )
            if user is not None:
                await session.execute(
                    update(UserProfile)
                    .where(UserProfile.id == user.id)
                    .values(total_messages=UserProfile.total_messages + 1, last_activity=now)
                )
            session.add(
                ChatMessage(
                    session_id=chat_session.session_id,
                    user_id=user.id if user else None,
                    user_message=message,
                    assistant_message=reply,
                    tool_outputs=tool_outputs or [],
                    created_at=now,
                )
            )
            message_count = await session.scalar(
                select(ChatSession.message_count).where(ChatSession.session_id == chat_session.session_id)
            )
            await session.commit()
        return int(message_count or 0)

    async def conversation_history(
        self,
        user: Optional[UserProfile],
        session_id: str,
        limit: int = HISTORY_LIMIT,
    ) -> List[ChatMessage]:
        """Most recent exchanges from this session or this user, oldest first.

        Anonymous turns only see their own session.
        """

        condition = ChatMessage.session_id == session_id
        if user is not None:
            condition = or_(condition, ChatMessage.user_id == user.id)
        async with self._session_factory() as session:
            query = (
                select(ChatMessage)
                .where(condition)
                .order_by(ChatMessage.created_at.desc())
                .limit(limit)
            )
            rows = (await session.execute(query)).scalars().all()
        return list(reversed(rows))

    async def update_details(
        self,
        user: UserProfile,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DetailsUpdate:
        """Apply whichever of name, email and notes were supplied.

        Re-supplying a value the profile already holds changes nothing.
        """

        normalized_email = normalize_email(email) if email and email.strip() else None
        async with self._session_factory() as session:
            record = await session.get(UserProfile, user.id)
            if record is None:
                raise LookupError(f"User {user.id} not found.")

            updated: List[str] = []
            if normalized_email and normalized_email != record.email:
                record.email = normalized_email
                updated.append("email")

            cleaned_name = name.strip() if name else ""
            if cleaned_name and cleaned_name != record.name:
                record.name = cleaned_name
                updated.append("name")

            cleaned_notes = notes.strip() if notes else ""
            if cleaned_notes:
                merged = self._append_note(record.notes, cleaned_notes)
                if merged != record.notes:
                    record.notes = merged
                    updated.append("notes")

            if updated:
                record.last_activity = self._clock()
                await session.commit()
                logger.info("Updated {} for user {}", ", ".join(updated), record.id)
            return DetailsUpdate(user=record, updated_fields=updated)

    async def record_unknown_question(
        self,
        question: str,
        *,
        session_id: Optional[str],
        user_id: Optional[uuid.UUID],
    ) -> UnknownQuestion:
        async with self._session_factory() as session:
            entry = UnknownQuestion(question=question, session_id=session_id, user_id=user_id, created_at=self._clock())
            session.add(entry)
            await session.commit()
            return entry

    def _append_note(self, existing: Optional[str], note: str) -> str:
        line = f"[{self._clock().date().isoformat()}] {note}"
        if not existing:
            return line[-NOTES_MAX_LENGTH:]
        if line in existing:
            return existing
        lines = existing.splitlines() + [line]
        # Oldest notes go first when the profile grows past its cap.
        while len(lines) > 1 and len("\n".join(lines)) > NOTES_MAX_LENGTH:
            lines.pop(0)
        return "\n".join(lines)[-NOTES_MAX_LENGTH:]

    @staticmethod
    async def _find_by_token(session: AsyncSession, token: str) -> Optional[UserProfile]:
        return (await session.execute(select(UserProfile).where(UserProfile.token == token))).scalar_one_or_none()


__all__ = [
    "DetailsUpdate",
    "InvalidEmail",
    "SessionCoordinator",
    "SessionOwnershipError",
    "new_session_id",
    "new_token",
    "normalize_email",
]
