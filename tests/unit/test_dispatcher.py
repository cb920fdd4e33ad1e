"""Unit tests for timed fragment delivery."""

from datetime import timedelta

import pytest

from cadence.locks import conversation_lock_key
from cadence.messaging import FragmentTurn, TurnOutcome, TurnPhase
from cadence.scheduling import ActionType
from cadence.storage import SENDER_AGENT, utcnow
from conftest import add_message, all_messages


async def start_turn(runtime, conversation, fragments, started_at=None):
    token = await runtime.locks.acquire(conversation_lock_key(conversation.id))
    turn = FragmentTurn(
        conversation_id=conversation.id,
        participant_id="user-1",
        persona_name="Mina",
        fragments=fragments,
        started_at=started_at or utcnow(),
        lock_token=token,
    )
    return await runtime.dispatcher.start(turn)


async def drain(runtime, queue):
    """Run queued fragment steps until the turn ends; returns the last outcome."""
    outcome = None
    while True:
        action = queue.pop(ActionType.FRAGMENT)
        if action is None:
            return outcome
        outcome = await runtime.scheduler.handle(action)


async def agent_messages(session_maker, conversation_id):
    return [m for m in await all_messages(session_maker, conversation_id) if m.sender == SENDER_AGENT]


async def test_turn_sends_every_fragment_in_order(runtime, queue, conversation, session_maker, notifier):
    assert await start_turn(runtime, conversation, ["안녕", "ㅋㅋ", "뭐해"]) is TurnOutcome.CONTINUING

    step = queue.of(ActionType.FRAGMENT)[0]
    assert step.payload["phase"] == TurnPhase.SEND.value
    assert step.payload["typing_shown"] is True
    assert 0.5 <= step.countdown() <= 8.0

    assert await drain(runtime, queue) is TurnOutcome.COMPLETED

    sent = await agent_messages(session_maker, conversation.id)
    assert [m.content for m in sent] == ["안녕", "ㅋㅋ", "뭐해"]
    assert [m.fragment_index for m in sent] == [0, 1, 2]
    assert all(m.is_fragment for m in sent)
    assert [body for _, _, body in notifier.sent] == ["안녕", "ㅋㅋ", "뭐해"]
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))


async def test_finalize_schedules_evolution_and_next_decision(runtime, queue, conversation):
    await start_turn(runtime, conversation, ["hi"])
    await drain(runtime, queue)

    assert len(queue.of(ActionType.EVOLVE)) == 1
    decide = queue.of(ActionType.DECIDE)
    assert len(decide) == 1
    assert 25 <= decide[0].countdown() <= 120


async def test_typing_indicator_wraps_each_fragment(runtime, queue, conversation, broadcaster):
    await start_turn(runtime, conversation, ["a", "b"])
    await drain(runtime, queue)

    kinds = [
        ("typing", e["is_typing"]) if e["type"] == "typing" else (e["type"], e["message"]["content"])
        for _, e in broadcaster.events
    ]
    assert kinds == [
        ("typing", True), ("message", "a"), ("typing", False),
        ("typing", True), ("message", "b"), ("typing", False),
    ]


async def test_reevaluation_can_stop_mid_turn(runtime, queue, conversation, session_maker, provider):
    runtime.dispatcher.reevaluation_probability = 1.0
    provider.script("reevaluation", {"should_continue": True}, {"should_continue": False, "reason": "enough"})

    await start_turn(runtime, conversation, ["안녕", "ㅋㅋ", "뭐해"])
    assert await drain(runtime, queue) is TurnOutcome.STOPPED

    sent = await agent_messages(session_maker, conversation.id)
    assert [m.content for m in sent] == ["안녕", "ㅋㅋ"]
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))
    assert len(queue.of(ActionType.DECIDE)) == 1


async def test_spliced_fragments_keep_gap_free_indices(runtime, queue, conversation, session_maker, provider):
    runtime.dispatcher.reevaluation_probability = 1.0
    provider.script(
        "reevaluation",
        {"should_continue": True, "updated_fragments": ["B1", "B2", "B3"]},
        {"should_continue": True},
    )

    await start_turn(runtime, conversation, ["a", "b", "c"])
    assert await drain(runtime, queue) is TurnOutcome.COMPLETED

    sent = await agent_messages(session_maker, conversation.id)
    assert [m.content for m in sent] == ["a", "B1", "B2", "B3"]
    assert [m.fragment_index for m in sent] == [0, 1, 2, 3]


async def test_failed_reevaluation_continues(runtime, queue, conversation, session_maker, provider):
    runtime.dispatcher.reevaluation_probability = 1.0
    provider.script("reevaluation", "not json at all")

    await start_turn(runtime, conversation, ["a", "b"])
    assert await drain(runtime, queue) is TurnOutcome.COMPLETED
    assert len(await agent_messages(session_maker, conversation.id)) == 2


async def test_interrupted_before_first_fragment(runtime, queue, conversation, session_maker):
    started_at = utcnow()
    await add_message(session_maker, conversation.id, "wait!", created_at=started_at + timedelta(seconds=1))

    assert await start_turn(runtime, conversation, ["a", "b"], started_at) is TurnOutcome.INTERRUPTED

    assert await agent_messages(session_maker, conversation.id) == []
    decide = queue.of(ActionType.DECIDE)
    assert len(decide) == 1
    assert decide[0].countdown() == 0.0
    assert len(queue.of(ActionType.EVOLVE)) == 1
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))


async def test_interrupted_between_fragments(runtime, queue, conversation, session_maker, broadcaster):
    started_at = utcnow()
    await start_turn(runtime, conversation, ["a", "b", "c"], started_at)
    await runtime.scheduler.handle(queue.pop(ActionType.FRAGMENT))

    await add_message(session_maker, conversation.id, "hold on", created_at=started_at + timedelta(seconds=1))
    assert await drain(runtime, queue) is TurnOutcome.INTERRUPTED

    assert [m.content for m in await agent_messages(session_maker, conversation.id)] == ["a"]
    assert queue.of(ActionType.DECIDE)[0].countdown() == 0.0
    # The indicator shown for "b" is cleared
    assert broadcaster.of_type("typing")[-1]["is_typing"] is False


async def test_unread_messages_trigger_immediate_decision(runtime, queue, conversation, session_maker):
    await add_message(session_maker, conversation.id, "are you there?")
    await start_turn(runtime, conversation, ["hi"])
    assert await drain(runtime, queue) is TurnOutcome.COMPLETED
    assert queue.of(ActionType.DECIDE)[0].countdown() == 0.0


async def test_failed_notification_does_not_stop_turn(runtime, queue, conversation, session_maker, notifier):
    notifier.fail = True
    await start_turn(runtime, conversation, ["a", "b"])
    assert await drain(runtime, queue) is TurnOutcome.COMPLETED
    assert len(await agent_messages(session_maker, conversation.id)) == 2


async def test_lock_released_when_step_raises(runtime, queue, conversation, broadcaster, monkeypatch):
    await start_turn(runtime, conversation, ["a", "b"])

    async def broken_publish(conversation_id, event):
        raise RuntimeError("socket closed")

    monkeypatch.setattr(broadcaster, "publish", broken_publish)
    with pytest.raises(RuntimeError):
        await runtime.scheduler.handle(queue.pop(ActionType.FRAGMENT))
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))


async def test_empty_turn_finalizes(runtime, queue, conversation):
    assert await start_turn(runtime, conversation, []) is TurnOutcome.COMPLETED
    assert len(queue.of(ActionType.DECIDE)) == 1
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))


async def test_stale_step_is_dropped_without_side_effects(runtime, queue, conversation, session_maker, broadcaster):
    key = conversation_lock_key(conversation.id)
    stale = await runtime.locks.acquire(key)
    await runtime.locks.release(key, stale)
    current = await runtime.locks.acquire(key)

    turn = FragmentTurn(
        conversation_id=conversation.id,
        participant_id="user-1",
        persona_name="Mina",
        fragments=["x"],
        phase=TurnPhase.SEND,
        started_at=utcnow(),
        lock_token=stale,
    )
    assert await runtime.dispatcher.step(turn) is TurnOutcome.ABANDONED

    assert await agent_messages(session_maker, conversation.id) == []
    assert queue.actions == []
    assert broadcaster.events == []
    assert await runtime.locks.owns(key, current)


async def test_step_after_season_end_stops_silently(runtime, queue, persona, conversation, session_maker, broadcaster):
    await start_turn(runtime, conversation, ["bye", "again"])
    step = queue.pop(ActionType.FRAGMENT)
    await runtime.seasons.deactivate(persona.id)

    assert await runtime.scheduler.handle(step) is TurnOutcome.INACTIVE

    assert await agent_messages(session_maker, conversation.id) == []
    assert queue.of(ActionType.DECIDE) == []
    assert queue.of(ActionType.FRAGMENT) == []
    assert broadcaster.of_type("typing")[-1]["is_typing"] is False
    assert not await runtime.locks.is_held(conversation_lock_key(conversation.id))
