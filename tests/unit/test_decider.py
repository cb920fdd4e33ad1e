"""Unit tests for the action decider."""

import asyncio

import pytest

from cadence.core.exceptions import (
    ContentBlockedError,
    MalformedProviderOutput,
    ProviderError,
    RateLimitedError,
)
from cadence.generation import Action, ActionDecider, CancellationToken
from conftest import make_snapshot


@pytest.fixture
def decider(provider, settings):
    return ActionDecider(provider, settings)


def test_parse_respond(decider):
    decision = decider.parse({"action": "respond", "reason": "they asked something"})
    assert decision.action is Action.RESPOND
    assert decision.reason == "they asked something"
    assert decision.wait_seconds is None


def test_parse_normalises_case(decider):
    assert decider.parse({"action": " READ_ONLY "}).action is Action.READ_ONLY


@pytest.mark.parametrize("seconds, expected", [(5, 10.0), (45, 45.0), (9999, 300.0), ("60", 60.0)])
def test_parse_wait_clamped(decider, seconds, expected):
    assert decider.parse({"action": "wait", "wait_seconds": seconds}).wait_seconds == expected


def test_parse_wait_without_seconds(decider):
    assert decider.parse({"action": "wait"}).wait_seconds == 30.0


@pytest.mark.parametrize("data", [{}, {"action": "dance"}, {"reason": "no action"}])
def test_parse_rejects_malformed(decider, data):
    with pytest.raises(MalformedProviderOutput):
        decider.parse(data)


@pytest.mark.parametrize(
    "error, seconds",
    [
        (ContentBlockedError("blocked"), 60.0),
        (RateLimitedError("slow down"), 60.0),
        (ProviderError("down"), 30.0),
        (None, 30.0),
    ],
)
def test_default_for_errors(decider, error, seconds):
    decision = decider.default_for(error)
    assert decision.action is Action.WAIT
    assert decision.wait_seconds == seconds


async def test_decide_uses_provider(decider, provider):
    provider.script("decision", {"action": "respond", "reason": "hello"})
    outcome = await decider.decide(make_snapshot())
    assert outcome.ok
    assert outcome.value.action is Action.RESPOND
    assert provider.calls == ["decision"]


async def test_decide_prompt_mentions_unread_counts(decider, provider):
    provider.script("decision", {"action": "wait", "wait_seconds": 20})
    await decider.decide(make_snapshot(unread_agent_count=2))
    assert "Your messages they have not read yet: 2" in provider.prompts[0]


async def test_decide_failure_waits(decider, provider):
    provider.script("decision", ProviderError("connection refused"))
    outcome = await decider.decide(make_snapshot())
    assert outcome.failed
    assert outcome.value.action is Action.WAIT
    assert outcome.value.wait_seconds == 30.0


async def test_decide_unparseable_waits(decider, provider):
    provider.script("decision", "I think I will answer")
    outcome = await decider.decide(make_snapshot())
    assert outcome.failed
    assert outcome.value.wait_seconds == 30.0


async def test_decide_blocked_waits_longer(decider, provider):
    provider.script("decision", ContentBlockedError("blocked"))
    outcome = await decider.decide(make_snapshot())
    assert outcome.value.wait_seconds == 60.0


async def test_decide_cancelled(decider, provider):
    provider.script("decision", {"action": "respond"})
    provider.delays["decision"] = 1.0
    flag = {"interrupted": False}

    async def probe():
        return flag["interrupted"]

    async def interrupt():
        await asyncio.sleep(0.05)
        flag["interrupted"] = True

    outcome, _ = await asyncio.gather(decider.decide(make_snapshot(), CancellationToken(probe)), interrupt())
    assert outcome.cancelled
