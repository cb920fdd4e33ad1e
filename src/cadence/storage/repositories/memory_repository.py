"""Memory repository."""

from typing import List, Sequence
from uuid import UUID

from sqlalchemy import delete, func, select

from .base import BaseRepository
from ..database import Memory


class MemoryRepository(BaseRepository[Memory]):
    """Repository for Memory operations."""

    model = Memory

    async def for_persona(self, persona_id: UUID) -> List[Memory]:
        result = await self.session.execute(
            select(Memory)
            .where(Memory.persona_id == persona_id)
            .order_by(Memory.memory_timestamp)
        )
        return list(result.scalars().all())

    async def count(self, persona_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count(Memory.id)).where(Memory.persona_id == persona_id)
        )
        return result.scalar_one()

    async def delete_many(self, memory_ids: Sequence[UUID]) -> int:
        """Delete memories by id. Returns count deleted."""
        if not memory_ids:
            return 0
        result = await self.session.execute(
            delete(Memory).where(Memory.id.in_(list(memory_ids)))
        )
        return result.rowcount
