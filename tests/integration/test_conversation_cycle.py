"""
End-to-end conversation cycles through the in-process action queue.

These tests run the real scheduler, dispatcher and storage against a
scripted provider, with delays shortened so a whole turn takes well under
a second.
"""

import asyncio
import random

import pytest

from cadence.runtime import Runtime
from cadence.scheduling import AsyncioActionQueue
from cadence.storage import SENDER_AGENT, SENDER_HUMAN
from conftest import all_messages


async def wait_until(predicate, timeout=10.0, interval=0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not reached before timeout")


@pytest.fixture
def fast_settings(settings):
    return settings.model_copy(update={"FRAGMENT_MIN_DELAY": 0.05, "FRAGMENT_MAX_DELAY": 0.1})


@pytest.fixture
async def live_runtime(fast_settings, engine, provider, broadcaster, notifier):
    runtime = Runtime.build(
        fast_settings,
        engine=engine,
        provider=provider,
        broadcaster=broadcaster,
        notifier=notifier,
        rng=random.Random(3),
    )
    yield runtime
    await runtime.queue.close()


async def agent_contents(runtime, conversation_id):
    return [m.content for m in await all_messages(runtime.session_maker, conversation_id) if m.sender == SENDER_AGENT]


async def test_human_message_gets_fragmented_reply(live_runtime, provider, persona, broadcaster, notifier):
    assert isinstance(live_runtime.queue, AsyncioActionQueue)
    provider.script("decision", {"action": "respond", "reason": "they said hi"})
    provider.script("response", "hii\nhow was your day?")
    provider.script("evolution", {"emotions": ["cheerful"]})

    message = await live_runtime.scheduler.receive("user-42", "hi Mina")
    conversation_id = message.conversation_id

    async def replied():
        return len(await agent_contents(live_runtime, conversation_id)) == 2 and "evolution" in provider.calls

    await wait_until(replied)

    assert await agent_contents(live_runtime, conversation_id) == ["hii", "how was your day?"]
    messages = await all_messages(live_runtime.session_maker, conversation_id)
    assert all(m.read_at is not None for m in messages if m.sender == SENDER_HUMAN)
    assert [m.fragment_index for m in messages if m.sender == SENDER_AGENT] == [0, 1]
    assert [body for _, _, body in notifier.sent] == ["hii", "how was your day?"]
    assert broadcaster.of_type("typing")[-1]["is_typing"] is False
    assert provider.calls.index("decision") < provider.calls.index("response")


async def test_new_message_interrupts_a_turn(live_runtime, provider, persona, fast_settings):
    live_runtime.dispatcher.timing.settings = fast_settings.model_copy(
        update={"FRAGMENT_MIN_DELAY": 0.3, "FRAGMENT_MAX_DELAY": 0.3}
    )
    provider.script("decision", {"action": "respond"})
    provider.script("response", "one\ntwo\nthree", "oh ok")
    provider.script("evolution", {})

    message = await live_runtime.scheduler.receive("user-42", "tell me a story")
    conversation_id = message.conversation_id

    async def started():
        return "one" in await agent_contents(live_runtime, conversation_id)

    await wait_until(started)
    await live_runtime.scheduler.receive("user-42", "actually nvm")

    async def answered_again():
        return "oh ok" in await agent_contents(live_runtime, conversation_id)

    await wait_until(answered_again)

    sent = await agent_contents(live_runtime, conversation_id)
    assert sent[0] == "one"
    assert "three" not in sent
    assert sent[-1] == "oh ok"
