"""Deferred pipeline steps carried by the action queue."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..storage.database import utcnow


class ActionType(str, Enum):
    DECIDE = "decide"
    GENERATE = "generate"
    FRAGMENT = "fragment"
    EVOLVE = "evolve"
    MAINTAIN_MEMORY = "maintain_memory"
    NATURAL_EVOLUTION = "natural_evolution"
    SEASON_CHECK = "season_check"


class ScheduledAction(BaseModel):
    """One queued step. Serialises to JSON for the durable queue."""

    action: ActionType
    payload: Dict[str, Any] = Field(default_factory=dict)
    not_before: Optional[datetime] = None

    @classmethod
    def after(
        cls,
        action: ActionType,
        payload: Optional[Dict[str, Any]] = None,
        delay: float = 0.0,
        now: Optional[datetime] = None,
    ) -> "ScheduledAction":
        not_before = (now or utcnow()) + timedelta(seconds=delay) if delay > 0 else None
        return cls(action=action, payload=payload or {}, not_before=not_before)

    @classmethod
    def decide(cls, conversation_id: UUID, delay: float = 0.0, now: Optional[datetime] = None) -> "ScheduledAction":
        return cls.after(ActionType.DECIDE, {"conversation_id": str(conversation_id)}, delay, now)

    @classmethod
    def evolve(cls, conversation_id: UUID) -> "ScheduledAction":
        return cls.after(ActionType.EVOLVE, {"conversation_id": str(conversation_id)})

    @classmethod
    def for_persona(cls, action: ActionType, persona_id: UUID) -> "ScheduledAction":
        return cls.after(action, {"persona_id": str(persona_id)})

    def countdown(self, now: Optional[datetime] = None) -> float:
        """Seconds until the action may run (0 when due)."""
        if self.not_before is None:
            return 0.0
        return max((self.not_before - (now or utcnow())).total_seconds(), 0.0)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "ScheduledAction":
        return cls.model_validate(data)

    @property
    def conversation_id(self) -> Optional[UUID]:
        """Conversation the step belongs to, if any."""
        value = self.payload.get("conversation_id")
        return UUID(value) if value else None
