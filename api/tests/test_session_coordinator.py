from __future__ import annotations

import pytest
from sqlalchemy import func, select

from persona_chat.db.models import ChatMessage, UnknownQuestion
from persona_chat.services.identity import DeviceInfo
from persona_chat.services.session_coordinator import (
    InvalidEmail,
    SessionOwnershipError,
    new_session_id,
    normalize_email,
)


def test_normalize_email() -> None:
    assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
    with pytest.raises(InvalidEmail):
        normalize_email("not an email")
    with pytest.raises(InvalidEmail):
        normalize_email("missing-at.example.com")


@pytest.mark.asyncio
async def test_resolve_user_creates_then_reuses(coordinator) -> None:
    device = DeviceInfo(device_name="Firefox", os="Linux")

    created = await coordinator.resolve_user(None, network_address="203.0.113.7", device=device)
    again = await coordinator.resolve_user(created.token, network_address="198.51.100.20")

    assert len(created.token) == 64
    assert created.device_info["device_name"] == "Firefox"
    assert again.id == created.id
    assert again.last_seen_ip == "198.51.100.20"
    assert again.first_seen_ip == "203.0.113.7"


@pytest.mark.asyncio
async def test_unknown_token_is_adopted(coordinator) -> None:
    user = await coordinator.resolve_user("tok_from_client", network_address="203.0.113.7")

    assert user.token == "tok_from_client"
    assert (await coordinator.find_user("tok_from_client")).id == user.id


@pytest.mark.asyncio
async def test_session_belongs_to_its_first_user(coordinator) -> None:
    owner = await coordinator.resolve_user(None)
    intruder = await coordinator.resolve_user(None)
    session_id = new_session_id()

    await coordinator.continue_session(owner, session_id)
    resumed = await coordinator.continue_session(owner, session_id)

    assert resumed.user_id == owner.id
    with pytest.raises(SessionOwnershipError):
        await coordinator.continue_session(intruder, session_id)


@pytest.mark.asyncio
async def test_record_exchange_counts_and_stores_transcript(coordinator, session_factory, clock) -> None:
    user = await coordinator.resolve_user(None)
    chat_session = await coordinator.continue_session(user, "session-1")

    first = await coordinator.record_exchange(chat_session, user, "hi", "hello!")
    clock.advance(seconds=5)
    second = await coordinator.record_exchange(chat_session, user, "how are you?", "great", [{"tool": "x"}])

    assert (first, second) == (1, 2)
    refreshed = await coordinator.find_user(user.token)
    assert refreshed.total_messages == 2
    async with session_factory() as session:
        stored = await session.scalar(select(func.count()).select_from(ChatMessage))
    assert stored == 2


@pytest.mark.asyncio
async def test_history_is_oldest_first_and_limited(coordinator, clock) -> None:
    user = await coordinator.resolve_user(None)
    chat_session = await coordinator.continue_session(user, "session-1")
    for index in range(12):
        await coordinator.record_exchange(chat_session, user, f"q{index}", f"a{index}")
        clock.advance(seconds=1)

    history = await coordinator.conversation_history(user, "session-1")

    assert [entry.user_message for entry in history] == [f"q{index}" for index in range(2, 12)]


@pytest.mark.asyncio
async def test_history_includes_other_sessions_of_the_user(coordinator, clock) -> None:
    user = await coordinator.resolve_user(None)
    earlier = await coordinator.continue_session(user, "session-old")
    await coordinator.record_exchange(earlier, user, "remember me?", "sure")
    clock.advance(minutes=1)
    await coordinator.continue_session(user, "session-new")

    history = await coordinator.conversation_history(user, "session-new")

    assert [entry.user_message for entry in history] == ["remember me?"]


@pytest.mark.asyncio
async def test_anonymous_exchange_stays_on_its_session(coordinator, clock) -> None:
    owner = await coordinator.resolve_user(None)
    owned = await coordinator.continue_session(owner, "session-owned")
    await coordinator.record_exchange(owned, owner, "private", "noted")
    clock.advance(seconds=5)

    anonymous = await coordinator.continue_session(None, "session-anon")
    resumed = await coordinator.continue_session(None, "session-anon")
    count = await coordinator.record_exchange(resumed, None, "hi", "hello!")
    history = await coordinator.conversation_history(None, "session-anon")

    assert anonymous.user_id is None
    assert count == 1
    assert [entry.user_message for entry in history] == ["hi"]
    assert history[0].user_id is None
    assert (await coordinator.find_user(owner.token)).total_messages == 1


@pytest.mark.asyncio
async def test_anonymous_turn_skips_the_ownership_check(coordinator) -> None:
    owner = await coordinator.resolve_user(None)
    await coordinator.continue_session(owner, "session-1")

    resumed = await coordinator.continue_session(None, "session-1")

    assert resumed.user_id == owner.id


@pytest.mark.asyncio
async def test_update_details_is_idempotent(coordinator) -> None:
    user = await coordinator.resolve_user(None)

    first = await coordinator.update_details(user, name="Ada", email="Ada@Example.com")
    repeat = await coordinator.update_details(user, name="Ada", email="ada@example.com")

    assert sorted(first.updated_fields) == ["email", "name"]
    assert repeat.changed is False
    assert repeat.user.email == "ada@example.com"


@pytest.mark.asyncio
async def test_notes_are_dated_and_not_duplicated(coordinator) -> None:
    user = await coordinator.resolve_user(None)

    await coordinator.update_details(user, notes="Interested in consulting")
    update = await coordinator.update_details(user, notes="Interested in consulting")

    assert update.changed is False
    assert update.user.notes == "[2030-01-15] Interested in consulting"


@pytest.mark.asyncio
async def test_notes_are_capped(coordinator) -> None:
    user = await coordinator.resolve_user(None)
    for index in range(40):
        update = await coordinator.update_details(user, notes=f"note number {index} " + "x" * 20)

    assert len(update.user.notes) <= 1000
    assert update.user.notes.endswith("note number 39 " + "x" * 20)


@pytest.mark.asyncio
async def test_invalid_email_is_rejected(coordinator) -> None:
    user = await coordinator.resolve_user(None)

    with pytest.raises(InvalidEmail):
        await coordinator.update_details(user, email="nobody at example")


@pytest.mark.asyncio
async def test_record_unknown_question(coordinator, session_factory) -> None:
    user = await coordinator.resolve_user(None)

    await coordinator.record_unknown_question("What is your shoe size?", session_id="session-1", user_id=user.id)

    async with session_factory() as session:
        questions = (await session.execute(select(UnknownQuestion))).scalars().all()
    assert [question.question for question in questions] == ["What is your shoe size?"]
