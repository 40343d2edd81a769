"""ORM models for user profiles, chat sessions and transcripts."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from persona_chat.db.base import Base


class UserProfile(Base):
    """Durable visitor identity keyed by the client token."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    token: Mapped[str] = mapped_column(sa.String(128), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(sa.String(255))
    email: Mapped[Optional[str]] = mapped_column(sa.String(254), index=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text)
    first_seen_ip: Mapped[Optional[str]] = mapped_column(sa.String(64))
    last_seen_ip: Mapped[Optional[str]] = mapped_column(sa.String(64))
    device_info: Mapped[Dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    total_messages: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default="0")
    last_activity: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    sessions: Mapped[List["ChatSession"]] = relationship(back_populates="user")

    @property
    def is_named(self) -> bool:
        return bool(self.name)

    @property
    def is_emailed(self) -> bool:
        return bool(self.email)


class ChatSession(Base):
    """Logical conversation; owned by at most one user."""

    __tablename__ = "chat_sessions"

    session_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        sa.Uuid, sa.ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    message_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default="0")
    last_activity: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )

    user: Mapped[Optional["UserProfile"]] = relationship(back_populates="sessions")


class ChatMessage(Base):
    """One user/assistant exchange in the transcript."""

    __tablename__ = "chat_messages"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, index=True)
    user_message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    assistant_message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    tool_outputs: Mapped[List[Dict[str, Any]]] = mapped_column(sa.JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, index=True
    )


class UnknownQuestion(Base):
    """Question the assistant could not answer."""

    __tablename__ = "unknown_questions"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    question: Mapped[str] = mapped_column(sa.Text, nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(sa.String(64), index=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


__all__ = [
    "Base",
    "ChatMessage",
    "ChatSession",
    "UnknownQuestion",
    "UserProfile",
]
