"""Conversation repository."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update

from .base import BaseRepository
from ..database import Conversation, Persona


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation operations."""

    model = Conversation

    async def get_with_persona(self, conversation_id: UUID) -> Optional[tuple[Conversation, Persona]]:
        """Conversation and its persona in one query."""
        result = await self.session.execute(
            select(Conversation, Persona)
            .join(Persona, Conversation.persona_id == Persona.id)
            .where(Conversation.id == conversation_id)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def get_or_create(self, participant_id: str, persona_id: UUID) -> Conversation:
        """The participant's conversation with ``persona_id``, created on first use."""
        result = await self.session.execute(
            select(Conversation).where(
                Conversation.participant_id == participant_id,
                Conversation.persona_id == persona_id,
            )
        )
        conversation = result.scalar_one_or_none()
        if conversation:
            return conversation
        return await self.create(participant_id=participant_id, persona_id=persona_id)

    async def list_active(self, persona_id: UUID) -> List[Conversation]:
        result = await self.session.execute(
            select(Conversation).where(
                Conversation.persona_id == persona_id,
                Conversation.active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def touch(self, conversation_id: UUID, at: datetime) -> None:
        """Update the last-activity timestamp."""
        await self.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_at=at)
        )

    async def deactivate_for_persona(self, persona_id: UUID) -> int:
        """Deactivate every conversation of a persona. Returns count updated."""
        result = await self.session.execute(
            update(Conversation)
            .where(Conversation.persona_id == persona_id, Conversation.active.is_(True))
            .values(active=False)
        )
        return result.rowcount
