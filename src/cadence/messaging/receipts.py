"""Read receipts for human messages."""

from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..storage.database import session_scope
from ..storage.repositories import MessageRepository
from .broadcast import Broadcaster, read_receipt_events


class ReadReceiptManager:
    """Marks messages read and announces it.

    Normally a message only counts as read while the participant has the
    conversation focused; autonomous reads by the agent pass
    ``bypass_focus=True``.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], broadcaster: Broadcaster):
        self.session_maker = session_maker
        self.broadcaster = broadcaster

    async def mark_read(
        self,
        conversation_id: UUID,
        message_ids: Sequence[UUID],
        bypass_focus: bool = False,
        focused: bool = False,
        at: Optional[datetime] = None,
    ) -> int:
        """Returns number of messages newly marked read."""
        if not (bypass_focus or focused) or not message_ids:
            return 0

        async with session_scope(self.session_maker) as session:
            marked = await MessageRepository(session).mark_read(conversation_id, message_ids, at)

        if marked:
            logger.debug(f"[receipts] Marked {len(marked)} messages read in {conversation_id}")
            for event in read_receipt_events(marked):
                await self.broadcaster.publish(conversation_id, event)
        return len(marked)
