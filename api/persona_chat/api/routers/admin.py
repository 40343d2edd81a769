"""Admin observability endpoints."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from persona_chat.api.deps import get_db_session, require_admin_token
from persona_chat.db.models import ChatMessage, ChatSession, UnknownQuestion, UserProfile

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _iso(value) -> str | None:
    return value.isoformat() if value else None


@router.get("/users")
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    _: None = Depends(require_admin_token),
) -> List[Dict[str, Any]]:
    stmt = select(UserProfile).order_by(UserProfile.last_activity.desc()).limit(limit)
    users = (await session.execute(stmt)).scalars().all()
    results: List[Dict[str, Any]] = []
    for user in users:
        results.append(
            {
                "id": str(user.id),
                "name": user.name,
                "email": user.email,
                "is_named": user.is_named,
                "is_emailed": user.is_emailed,
                "notes": user.notes,
                "total_messages": user.total_messages,
                "first_seen_ip": user.first_seen_ip,
                "last_seen_ip": user.last_seen_ip,
                "device_info": user.device_info or {},
                "last_activity": _iso(user.last_activity),
                "created_at": _iso(user.created_at),
            }
        )
    return results


@router.get("/sessions/{session_id}")
async def session_transcript(
    session_id: str,
    session: AsyncSession = Depends(get_db_session),
    _: None = Depends(require_admin_token),
) -> Dict[str, Any]:
    chat_session = await session.get(ChatSession, session_id)
    if chat_session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found.")

    stmt = (
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.created_at.asc())
    )
    messages = (await session.execute(stmt)).scalars().all()
    return {
        "session_id": chat_session.session_id,
        "user_id": str(chat_session.user_id) if chat_session.user_id else None,
        "message_count": chat_session.message_count,
        "last_activity": _iso(chat_session.last_activity),
        "messages": [
            {
                "user_message": message.user_message,
                "assistant_message": message.assistant_message,
                "tool_outputs": message.tool_outputs or [],
                "created_at": _iso(message.created_at),
            }
            for message in messages
        ],
    }


@router.get("/unknown-questions")
async def unknown_questions(
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    _: None = Depends(require_admin_token),
) -> List[Dict[str, Any]]:
    stmt = select(UnknownQuestion).order_by(UnknownQuestion.created_at.desc()).limit(limit)
    questions = (await session.execute(stmt)).scalars().all()
    return [
        {
            "id": str(question.id),
            "question": question.question,
            "session_id": question.session_id,
            "user_id": str(question.user_id) if question.user_id else None,
            "created_at": _iso(question.created_at),
        }
        for question in questions
    ]
