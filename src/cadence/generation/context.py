"""
Conversation snapshots and system context for prompts.

A snapshot is read in one short session and holds plain values only, so it
can be used long after the session closed (for example across a provider
call that takes several seconds).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import RecordNotFoundError
from ..memory.store import MemoryStore
from ..storage.database import Message, session_scope, utcnow
from ..storage.repositories import (
    ConversationRepository,
    MessageRepository,
    PersonaRepository,
    PersonaStateRepository,
)
from . import prompts


@dataclass(frozen=True)
class MessageView:
    id: UUID
    sender: str
    content: str
    created_at: datetime
    read_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, message: Message) -> "MessageView":
        return cls(
            id=message.id,
            sender=message.sender,
            content=message.content,
            created_at=message.created_at,
            read_at=message.read_at,
        )


@dataclass
class ConversationSnapshot:
    """Everything a prompt needs about one conversation at one moment."""
    conversation_id: UUID
    persona_id: UUID
    participant_id: str
    persona_name: str
    conversation_active: bool
    persona_active: bool
    state: dict[str, Any]
    age: Optional[int]
    history: List[MessageView] = field(default_factory=list)
    unread: List[MessageView] = field(default_factory=list)
    unread_agent_count: int = 0
    memories: List[Any] = field(default_factory=list)
    taken_at: datetime = field(default_factory=utcnow)

    @property
    def unread_count(self) -> int:
        return len(self.unread)

    @property
    def emotions(self) -> list[str]:
        return list(self.state.get("emotions") or [])


class SystemContextBuilder:
    """Loads snapshots and renders the persona's system context."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        memory_store: Optional[MemoryStore] = None,
    ):
        self.session_maker = session_maker
        self.memory_store = memory_store

    async def snapshot(
        self,
        conversation_id: UUID,
        history_limit: int = 20,
        with_memories: bool = True,
    ) -> ConversationSnapshot:
        """Read the conversation, its persona state and recent messages.

        Raises:
            RecordNotFoundError: If the conversation does not exist
        """
        async with session_scope(self.session_maker) as session:
            found = await ConversationRepository(session).get_with_persona(conversation_id)
            if found is None:
                raise RecordNotFoundError("Conversation", conversation_id)
            conversation, persona = found

            messages = MessageRepository(session)
            state = await PersonaStateRepository(session).for_persona(persona.id)
            snapshot = ConversationSnapshot(
                conversation_id=conversation.id,
                persona_id=persona.id,
                participant_id=conversation.participant_id,
                persona_name=persona.display_name,
                conversation_active=conversation.active,
                persona_active=persona.active,
                state=dict(state.state_data) if state else {},
                age=state.age() if state else None,
                history=[MessageView.from_model(m) for m in await messages.recent(conversation_id, history_limit)],
                unread=[MessageView.from_model(m) for m in await messages.unread_human(conversation_id)],
                unread_agent_count=await messages.count_unread_agent(conversation_id),
            )

        if with_memories and self.memory_store is not None:
            snapshot.memories = await self.memory_store.relevant(snapshot.persona_id)
        return snapshot

    async def persona_system(self, persona_id: UUID, now: Optional[datetime] = None) -> str:
        """System context for reflection calls that have no conversation."""
        async with session_scope(self.session_maker) as session:
            persona = await PersonaRepository(session).get(persona_id)
            if persona is None:
                raise RecordNotFoundError("Persona", persona_id)
            state = await PersonaStateRepository(session).for_persona(persona_id)
            name = persona.display_name
            data = dict(state.state_data) if state else {}
            age = state.age() if state else None

        memories = []
        if self.memory_store is not None:
            memories = await self.memory_store.relevant(persona_id)
        return prompts.render_system(name, age, data, memories, now or utcnow(), conversational=False)

    @staticmethod
    def build(snapshot: ConversationSnapshot, now: Optional[datetime] = None) -> str:
        """Render the conversational system context for ``snapshot``."""
        return prompts.render_system(
            snapshot.persona_name,
            snapshot.age,
            snapshot.state,
            snapshot.memories,
            now or utcnow(),
        )
