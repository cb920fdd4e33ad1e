"""Persona state repository with atomic deep-merge updates."""

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select

from .base import BaseRepository
from ..database import PersonaState


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``updates`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class PersonaStateRepository(BaseRepository[PersonaState]):
    """Repository for PersonaState operations."""

    model = PersonaState

    async def for_persona(self, persona_id: UUID, lock: bool = False) -> Optional[PersonaState]:
        query = select(PersonaState).where(PersonaState.persona_id == persona_id)
        if lock:
            # FOR UPDATE is ignored by SQLite
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def merge(self, persona_id: UUID, updates: dict[str, Any]) -> PersonaState:
        """Read-modify-write deep merge under a row lock."""
        state = await self.for_persona(persona_id, lock=True)
        if state is None:
            state = PersonaState(persona_id=persona_id, state_data={})
            self.session.add(state)

        # Reassign so the JSON column is flagged dirty
        state.state_data = deep_merge(state.state_data or {}, updates)
        await self.session.flush()
        return state
