"""Pytest configuration and shared fixtures."""

import asyncio
import json
import random
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

import pytest

from cadence.config import Settings
from cadence.core.exceptions import InvalidResponseError
from cadence.generation import ConversationSnapshot
from cadence.locks import LocalExclusiveLock
from cadence.messaging import Broadcaster, Notifier
from cadence.providers import ContentProvider
from cadence.runtime import Runtime
from cadence.scheduling import ActionQueue, ActionType, ScheduledAction
from cadence.storage import (
    SENDER_HUMAN,
    build_engine,
    build_session_maker,
    init_db,
    session_scope,
)
from cadence.storage.repositories import (
    ConversationRepository,
    MessageRepository,
    PersonaRepository,
)


# ============================================================================
# Fakes
# ============================================================================

# Text that identifies each prompt kind
PROMPT_MARKERS = {
    "decision": "Decide what to do now",
    "timing": "Timing decision:",
    "reevaluation": "Should you continue as planned",
    "response": "Answer them naturally",
    "initiation": "You want to start a conversation yourself",
    "evolution": "Reflect on this conversation",
    "natural": "without talking to anyone",
    "farewell": "You will be leaving soon",
}


class FakeProvider(ContentProvider):
    """Scripted provider.

    Replies are given per prompt kind; a list is consumed in order and its
    last element repeats. Dicts are returned as JSON, exceptions are raised.
    A kind without a script raises InvalidResponseError.
    """

    name = "fake"

    def __init__(self, **replies: Any):
        self.replies: Dict[str, List[Any]] = {
            kind: list(value) if isinstance(value, list) else [value]
            for kind, value in replies.items()
        }
        self.delays: Dict[str, float] = {}
        self.calls: List[str] = []
        self.prompts: List[str] = []

    def script(self, kind: str, *replies: Any) -> None:
        self.replies[kind] = list(replies)

    @staticmethod
    def kind_of(prompt: str) -> str:
        for kind, marker in PROMPT_MARKERS.items():
            if marker in prompt:
                return kind
        return "other"

    async def generate_text(self, prompt: str, temperature: float = 1.0) -> str:
        kind = self.kind_of(prompt)
        self.calls.append(kind)
        self.prompts.append(prompt)

        if self.delays.get(kind):
            await asyncio.sleep(self.delays[kind])

        queue = self.replies.get(kind)
        if not queue:
            raise InvalidResponseError(f"no scripted reply for {kind}", self.name)
        reply = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply


class RecordingQueue(ActionQueue):
    """Collects actions instead of running them."""

    def __init__(self):
        self.actions: List[ScheduledAction] = []

    async def enqueue(self, action: ScheduledAction) -> None:
        self.actions.append(action)

    def of(self, action_type: ActionType) -> List[ScheduledAction]:
        return [a for a in self.actions if a.action is action_type]

    def pop(self, action_type: ActionType) -> Optional[ScheduledAction]:
        for i, action in enumerate(self.actions):
            if action.action is action_type:
                return self.actions.pop(i)
        return None

    def clear(self) -> None:
        self.actions.clear()


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        self.events: List[tuple[UUID, Dict[str, Any]]] = []

    async def publish(self, conversation_id: UUID, event: Dict[str, Any]) -> None:
        self.events.append((conversation_id, event))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for _, e in self.events if e.get("type") == event_type]


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: List[tuple[str, str, str]] = []
        self.fail = fail

    async def notify(self, user_id: str, title: str, body: str) -> None:
        if self.fail:
            raise ConnectionError("push service down")
        self.sent.append((user_id, title, body))


class FakeRedis:
    """The subset of redis.asyncio used by the lock and the broadcaster."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[tuple[str, str]] = []

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def eval(self, script, numkeys, key, token):
        # Compare-and-delete release script
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def close(self):
        pass


# ============================================================================
# Settings and storage
# ============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings with short polling and no random reevaluation."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'cadence.db'}",
        POLL_INTERVAL=0.01,
        TIMING_POLICY_TIMEOUT=0.5,
        LOCK_RETRY_DELAY=0.01,
        MAINTENANCE_LOCK_MAX_WAIT=0.1,
        FRAGMENT_REEVALUATION_PROBABILITY=0.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.DATABASE_URL)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def locks():
    return LocalExclusiveLock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, engine, queue, provider, locks, broadcaster, notifier):
    """Fully wired services with recording sinks and a seeded RNG."""
    return Runtime.build(
        settings,
        engine=engine,
        queue=queue,
        provider=provider,
        locks=locks,
        broadcaster=broadcaster,
        notifier=notifier,
        rng=random.Random(7),
    )


# ============================================================================
# Data factories
# ============================================================================

@pytest.fixture
async def persona(session_maker):
    async with session_scope(session_maker) as session:
        return await PersonaRepository(session).create_with_state(
            "Mina",
            {"emotions": ["calm"], "context": "reading a book", "birthday_year": 2001},
        )


@pytest.fixture
async def conversation(session_maker, persona):
    async with session_scope(session_maker) as session:
        return await ConversationRepository(session).get_or_create("user-1", persona.id)


def make_snapshot(**fields) -> ConversationSnapshot:
    values = dict(
        conversation_id=uuid4(),
        persona_id=uuid4(),
        participant_id="user-1",
        persona_name="Mina",
        conversation_active=True,
        persona_active=True,
        state={"emotions": ["calm"]},
        age=23,
    )
    values.update(fields)
    return ConversationSnapshot(**values)


async def add_message(
    session_maker,
    conversation_id: UUID,
    content: str,
    sender: str = SENDER_HUMAN,
    created_at: Optional[datetime] = None,
):
    async with session_scope(session_maker) as session:
        return await MessageRepository(session).add(conversation_id, sender, content, created_at=created_at)


async def all_messages(session_maker, conversation_id: UUID):
    async with session_scope(session_maker) as session:
        return await MessageRepository(session).recent(conversation_id, limit=1000)
