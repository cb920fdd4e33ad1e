"""Persona repository: seasons and the active persona."""

from typing import Optional

from sqlalchemy import func, select

from .base import BaseRepository
from ..database import Persona, PersonaState


class PersonaRepository(BaseRepository[Persona]):
    """Repository for Persona operations."""

    model = Persona

    async def get_active(self) -> Optional[Persona]:
        """The single active persona, if any."""
        result = await self.session.execute(
            select(Persona)
            .where(Persona.active.is_(True))
            .order_by(Persona.season_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def next_season_number(self) -> int:
        result = await self.session.execute(select(func.max(Persona.season_number)))
        current = result.scalar_one_or_none()
        return (current or 0) + 1

    async def create_with_state(self, display_name: str, state: Optional[dict] = None) -> Persona:
        """Create a new active persona for the next season, with its state row."""
        persona = await self.create(
            display_name=display_name,
            season_number=await self.next_season_number(),
            active=True,
        )
        self.session.add(PersonaState(persona_id=persona.id, state_data=dict(state or {})))
        await self.session.flush()
        return persona
