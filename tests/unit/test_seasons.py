"""Unit tests for persona seasons."""

from datetime import timedelta
from uuid import uuid4

import pytest

from cadence.core.exceptions import RecordNotFoundError
from cadence.locks import SEASON_ROTATION_KEY, conversation_lock_key
from cadence.scheduling import ActionType
from cadence.storage import SENDER_AGENT, session_scope
from cadence.storage.repositories import ConversationRepository, PersonaRepository
from conftest import all_messages


async def test_check_without_persona(runtime):
    result = await runtime.seasons.check()
    assert result.persona_id is None
    assert not result.warned and not result.ended


async def test_young_season_is_left_alone(runtime, persona):
    result = await runtime.seasons.check(now=persona.started_at + timedelta(days=10))
    assert result.persona_id == persona.id
    assert not result.warned and not result.ended


async def test_warns_once_before_the_end(runtime, persona, session_maker):
    first = await runtime.seasons.check(now=persona.started_at + timedelta(days=71))
    second = await runtime.seasons.check(now=persona.started_at + timedelta(days=72))

    assert first.warned
    assert not second.warned
    async with session_scope(session_maker) as session:
        stored = await PersonaRepository(session).get(persona.id)
    assert stored.deactivation_warned_at is not None
    assert stored.active


async def test_warning_sends_goodbye_turn(runtime, queue, persona, conversation, session_maker, provider):
    provider.script("farewell", "나 곧 이사가\n연락 자주 하자")

    result = await runtime.seasons.check(now=persona.started_at + timedelta(days=71))

    assert result.warned
    assert result.farewells == 1
    assert "user-1" in provider.prompts[provider.calls.index("farewell")]
    assert await runtime.locks.is_held(conversation_lock_key(conversation.id))

    while (step := queue.pop(ActionType.FRAGMENT)) is not None:
        await runtime.scheduler.handle(step)

    sent = [m.content for m in await all_messages(session_maker, conversation.id) if m.sender == SENDER_AGENT]
    assert sent == ["나 곧 이사가", "연락 자주 하자"]
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))


async def test_busy_conversation_gets_no_goodbye(runtime, persona, conversation, locks, provider):
    provider.script("farewell", "bye")
    await locks.acquire(conversation_lock_key(conversation.id))

    result = await runtime.seasons.check(now=persona.started_at + timedelta(days=71))

    assert result.warned
    assert result.farewells == 0
    assert "farewell" not in provider.calls


async def test_failed_goodbye_releases_lock(runtime, queue, persona, conversation, provider):
    # No scripted farewell: the provider rejects the request
    result = await runtime.seasons.check(now=persona.started_at + timedelta(days=71))

    assert result.warned
    assert result.farewells == 0
    assert queue.of(ActionType.FRAGMENT) == []
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))



async def test_ends_season_and_conversations(runtime, persona, conversation, session_maker):
    end = persona.started_at + timedelta(days=90)
    result = await runtime.seasons.check(now=end)

    assert result.ended
    async with session_scope(session_maker) as session:
        stored = await PersonaRepository(session).get(persona.id)
        conv = await ConversationRepository(session).get(conversation.id)
        active = await PersonaRepository(session).get_active()
    assert not stored.active
    assert stored.ended_at == end
    assert not conv.active
    assert active is None


async def test_check_skipped_while_rotation_locked(runtime, persona, locks):
    await locks.acquire(SEASON_ROTATION_KEY)
    result = await runtime.seasons.check(now=persona.started_at + timedelta(days=95))
    assert result.skipped
    assert not result.ended


async def test_start_season_rotates_persona(runtime, persona, conversation, session_maker):
    nxt = await runtime.seasons.start_season("Hana", {"emotions": ["excited"]})

    assert nxt.season_number == persona.season_number + 1
    async with session_scope(session_maker) as session:
        active = await PersonaRepository(session).get_active()
        old = await PersonaRepository(session).get(persona.id)
        conv = await ConversationRepository(session).get(conversation.id)
    assert active.id == nxt.id
    assert not old.active
    assert not conv.active


async def test_deactivate_counts_conversations(runtime, persona, conversation):
    assert await runtime.seasons.deactivate(persona.id) == 1


async def test_deactivate_unknown_persona(runtime):
    with pytest.raises(RecordNotFoundError):
        await runtime.seasons.deactivate(uuid4())
