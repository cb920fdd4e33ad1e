"""
Persona state evolution.

StateEvolver reflects on a finished turn; NaturalEvolver lets the mood drift
while nobody is talking. Both are best-effort: a failure is logged and the
state stays as it was.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..core.exceptions import CadenceException
from ..generation import prompts
from ..generation.context import SystemContextBuilder
from ..memory.store import MemoryStore
from ..providers.base import ContentProvider
from ..storage.database import session_scope, utcnow
from ..storage.repositories import PersonaStateRepository


def epoch(moment: datetime) -> float:
    """Unix timestamp of a naive UTC datetime."""
    return moment.replace(tzinfo=timezone.utc).timestamp()


def _emotion_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, list):
        cleaned = [str(v).strip() for v in value if str(v).strip()]
        return cleaned or None
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return None


class StateEvolver:
    """Updates persona state and memories after a conversation turn."""

    def __init__(
        self,
        provider: ContentProvider,
        session_maker: async_sessionmaker[AsyncSession],
        context_builder: SystemContextBuilder,
        memory_store: MemoryStore,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.session_maker = session_maker
        self.context_builder = context_builder
        self.memory_store = memory_store
        self.settings = settings or get_settings()

    async def evolve_from_conversation(self, conversation_id: UUID, now: Optional[datetime] = None) -> bool:
        """Returns True when the provider's updates were applied."""
        now = now or utcnow()
        try:
            snapshot = await self.context_builder.snapshot(
                conversation_id, self.settings.CONTEXT_MESSAGES_FOR_EVOLUTION
            )
            prompt = prompts.evolution_prompt(
                SystemContextBuilder.build(snapshot, now),
                prompts.format_history(snapshot.history),
            )
            data = await self.provider.generate_json(prompt, temperature=self.settings.TEMPERATURE_CREATIVE)
            if not data:
                logger.info(f"[evolution] No updates for conversation {conversation_id}")
                return False

            await self.apply(snapshot.persona_id, data, snapshot.emotions, now)
            return True
        except CadenceException as e:
            logger.error(f"[evolution] State evolution failed for {conversation_id}: {e}")
            return False

    async def apply(
        self,
        persona_id: UUID,
        data: Dict[str, Any],
        current_emotions: List[str],
        now: datetime,
    ) -> Dict[str, Any]:
        """Merge provider output into persona state and store new memories."""
        updates: Dict[str, Any] = {}

        state_updates = data.get("state_updates")
        if isinstance(state_updates, dict):
            updates.update({k: v for k, v in state_updates.items() if v is not None})

        emotions = _emotion_list(data.get("emotions"))
        if emotions is not None:
            updates["emotions"] = emotions
            if emotions != current_emotions:
                updates["emotion_timestamp"] = epoch(now)
        for key in ("emotion_description", "context"):
            if data.get(key):
                updates[key] = str(data[key])

        if updates:
            async with session_scope(self.session_maker) as session:
                await PersonaStateRepository(session).merge(persona_id, updates)
            logger.info(f"[evolution] Persona {persona_id} updated: {sorted(updates)}")

        memories = data.get("new_memories") or []
        if isinstance(data.get("new_memory"), dict):
            memories = list(memories) + [data["new_memory"]]
        for memory in memories:
            if not isinstance(memory, dict) or not str(memory.get("content") or "").strip():
                continue
            await self.memory_store.add(
                persona_id,
                str(memory["content"]).strip(),
                significance=_number(memory.get("significance"), 5.0),
                emotional_intensity=_number(memory.get("emotional_intensity"), 5.0),
                tags=memory.get("tags") if isinstance(memory.get("tags"), list) else [],
                memory_timestamp=now,
            )
        return updates


class NaturalEvolver:
    """Lets emotions drift with time when there is no conversation."""

    def __init__(
        self,
        provider: ContentProvider,
        session_maker: async_sessionmaker[AsyncSession],
        context_builder: SystemContextBuilder,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.session_maker = session_maker
        self.context_builder = context_builder
        self.settings = settings or get_settings()

    async def evolve_naturally(self, persona_id: UUID, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        try:
            async with session_scope(self.session_maker) as session:
                state = await PersonaStateRepository(session).for_persona(persona_id)
                data = dict(state.state_data) if state else {}

            emotions = list(data.get("emotions") or [])
            since = _number(data.get("emotion_timestamp"), epoch(now))
            hours = max(epoch(now) - since, 0.0) / 3600.0

            prompt = prompts.natural_evolution_prompt(
                await self.context_builder.persona_system(persona_id, now), emotions, hours
            )
            result = await self.provider.generate_json(prompt, temperature=self.settings.TEMPERATURE_CREATIVE)
        except CadenceException as e:
            logger.error(f"[evolution] Natural evolution failed for persona {persona_id}: {e}")
            return False

        updates: Dict[str, Any] = {}
        new_emotions = _emotion_list(result.get("emotions"))
        if new_emotions and new_emotions != emotions:
            updates["emotions"] = new_emotions
            updates["emotion_timestamp"] = epoch(now)
            if result.get("emotion_description"):
                updates["emotion_description"] = str(result["emotion_description"])
        if result.get("context") and result["context"] != data.get("context"):
            updates["context"] = str(result["context"])

        if not updates:
            logger.debug(f"[evolution] Persona {persona_id} unchanged after {hours:.1f}h")
            return False

        try:
            async with session_scope(self.session_maker) as session:
                await PersonaStateRepository(session).merge(persona_id, updates)
        except CadenceException as e:
            logger.error(f"[evolution] Could not save natural evolution for {persona_id}: {e}")
            return False

        logger.info(f"[evolution] Persona {persona_id} drifted after {hours:.1f}h: {sorted(updates)}")
        return True


def _number(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
