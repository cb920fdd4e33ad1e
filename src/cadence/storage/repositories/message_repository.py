"""Message repository for conversation messages."""

from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update

from .base import BaseRepository
from .conversation_repository import ConversationRepository
from ..database import Message, SENDER_AGENT, SENDER_HUMAN, utcnow


class MessageRepository(BaseRepository[Message]):
    """Repository for Message operations.

    Creating a message touches the conversation's last-activity timestamp
    here rather than through an ORM hook.
    """

    model = Message

    async def add(
        self,
        conversation_id: UUID,
        sender: str,
        content: str,
        is_fragment: bool = False,
        fragment_index: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        """Persist a message and touch its conversation."""
        if sender not in (SENDER_HUMAN, SENDER_AGENT):
            raise ValueError(f"Unknown sender: {sender}")

        created_at = created_at or utcnow()
        message = await self.create(
            conversation_id=conversation_id,
            sender=sender,
            content=content,
            is_fragment=is_fragment,
            fragment_index=fragment_index,
            created_at=created_at,
        )
        await ConversationRepository(self.session).touch(conversation_id, created_at)
        return message

    async def recent(self, conversation_id: UUID, limit: int = 20) -> List[Message]:
        """Latest messages of a conversation in chronological order."""
        query = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        messages = list(result.scalars().all())

        # Return in chronological order
        return list(reversed(messages))

    async def unread_human(self, conversation_id: UUID) -> List[Message]:
        result = await self.session.execute(
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender == SENDER_HUMAN,
                Message.read_at.is_(None),
            )
            .order_by(Message.created_at)
        )
        return list(result.scalars().all())

    async def count_unread_human(self, conversation_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.sender == SENDER_HUMAN,
                Message.read_at.is_(None),
            )
        )
        return result.scalar_one()

    async def count_unread_agent(self, conversation_id: UUID) -> int:
        """Agent messages the participant has not read yet."""
        result = await self.session.execute(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.sender == SENDER_AGENT,
                Message.read_at.is_(None),
            )
        )
        return result.scalar_one()

    async def human_since(self, conversation_id: UUID, since: datetime) -> int:
        """Count human messages created strictly after ``since``."""
        result = await self.session.execute(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.sender == SENDER_HUMAN,
                Message.created_at > since,
            )
        )
        return result.scalar_one()

    async def mark_read(
        self,
        conversation_id: UUID,
        message_ids: Sequence[UUID],
        at: Optional[datetime] = None,
    ) -> List[UUID]:
        """Set ``read_at`` on the given unread messages. Returns the ids updated."""
        if not message_ids:
            return []
        result = await self.session.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.id.in_(list(message_ids)),
                Message.read_at.is_(None),
            )
            .values(read_at=at or utcnow())
            .returning(Message.id)
        )
        return list(result.scalars())

    async def fragments(self, conversation_id: UUID) -> List[Message]:
        """Agent fragments in send order."""
        result = await self.session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id, Message.is_fragment.is_(True))
            .order_by(Message.created_at, Message.fragment_index)
        )
        return list(result.scalars().all())
