"""Persona seasons: one active persona at a time, rotated after a fixed period."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..core.exceptions import CadenceException, RecordNotFoundError
from ..generation.context import SystemContextBuilder
from ..generation.generator import MessageGenerator
from ..locks import SEASON_ROTATION_KEY, ExclusiveLock, conversation_lock_key
from ..messaging.dispatcher import FragmentDispatcher, FragmentTurn
from ..storage.database import Persona, session_scope, utcnow
from ..storage.repositories import ConversationRepository, PersonaRepository

ROTATION_LOCK_TTL = 600


@dataclass
class SeasonCheck:
    persona_id: Optional[UUID] = None
    warned: bool = False
    ended: bool = False
    skipped: bool = False
    farewells: int = 0


class SeasonManager:
    """Warns before a season ends and deactivates it when it does.

    The warning is delivered as a goodbye turn in every active conversation.
    Generating the next season's persona is not done here.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: ExclusiveLock,
        settings: Optional[Settings] = None,
        generator: Optional[MessageGenerator] = None,
        context_builder: Optional[SystemContextBuilder] = None,
        dispatcher: Optional[FragmentDispatcher] = None,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.settings = settings or get_settings()
        self.generator = generator
        self.context_builder = context_builder
        self.dispatcher = dispatcher

    async def check(self, now: Optional[datetime] = None) -> SeasonCheck:
        now = now or utcnow()
        token = await self.locks.wait_and_acquire(
            SEASON_ROTATION_KEY,
            ttl=ROTATION_LOCK_TTL,
            max_wait=self.settings.MAINTENANCE_LOCK_MAX_WAIT,
            retry_delay=self.settings.LOCK_RETRY_DELAY,
        )
        if token is None:
            return SeasonCheck(skipped=True)

        try:
            async with session_scope(self.session_maker) as session:
                persona = await PersonaRepository(session).get_active()
                if persona is None:
                    return SeasonCheck()

                result = SeasonCheck(persona_id=persona.id)
                age = now - persona.started_at
                if age >= timedelta(days=self.settings.SEASON_LENGTH_DAYS):
                    await self._deactivate(session, persona, now)
                    result.ended = True
                elif (
                    age >= timedelta(days=self.settings.SEASON_WARNING_DAYS)
                    and persona.deactivation_warned_at is None
                ):
                    persona.deactivation_warned_at = now
                    result.warned = True
                    logger.info(f"[season] Season {persona.season_number} ends soon")

            # Warning is committed before any goodbye goes out
            if result.warned:
                result.farewells = await self.send_farewells(result.persona_id)
            return result
        finally:
            await self.locks.release(SEASON_ROTATION_KEY, token)

    async def send_farewells(self, persona_id: UUID) -> int:
        """Start a goodbye turn in each active conversation. Returns turns started."""
        if self.dispatcher is None or self.generator is None or self.context_builder is None:
            logger.warning("[season] No dispatcher wired, farewells not sent")
            return 0

        async with session_scope(self.session_maker) as session:
            conversations = await ConversationRepository(session).list_active(persona_id)

        days_left = int(self.settings.SEASON_LENGTH_DAYS - self.settings.SEASON_WARNING_DAYS)
        started = 0
        for conversation in conversations:
            try:
                if await self._farewell(conversation.id, days_left):
                    started += 1
            except CadenceException as e:
                logger.error(f"[season] Farewell failed for {conversation.id}: {e}")
        logger.info(f"[season] Farewells started in {started}/{len(conversations)} conversations")
        return started

    async def _farewell(self, conversation_id: UUID, days_left: int) -> bool:
        key = conversation_lock_key(conversation_id)
        token = await self.locks.wait_and_acquire(
            key,
            ttl=self.settings.LOCK_TTL,
            max_wait=self.settings.MAINTENANCE_LOCK_MAX_WAIT,
            retry_delay=self.settings.LOCK_RETRY_DELAY,
        )
        if token is None:
            logger.warning(f"[season] Conversation {conversation_id} busy, farewell skipped")
            return False

        async with self.locks.retained(key, token) as handle:
            started_at = utcnow()
            snapshot = await self.context_builder.snapshot(
                conversation_id, self.settings.CONTEXT_MESSAGES_FOR_INITIATION
            )
            outcome = await self.generator.farewell(snapshot, days_left)
            if not outcome.ok or not outcome.value:
                logger.warning(f"[season] No farewell generated for {conversation_id}")
                return False

            turn = FragmentTurn(
                conversation_id=conversation_id,
                participant_id=snapshot.participant_id,
                persona_name=snapshot.persona_name,
                fragments=outcome.value,
                started_at=started_at,
                lock_token=handle.hand_off(),
            )
        await self.dispatcher.start(turn)
        return True

    async def deactivate(self, persona_id: UUID, now: Optional[datetime] = None) -> int:
        """End a persona's season. Returns number of conversations deactivated."""
        async with session_scope(self.session_maker) as session:
            persona = await PersonaRepository(session).get(persona_id)
            if persona is None:
                raise RecordNotFoundError("Persona", persona_id)
            return await self._deactivate(session, persona, now or utcnow())

    async def start_season(self, display_name: str, state: Optional[Dict[str, Any]] = None) -> Persona:
        """Create the next season's persona, ending the current one first."""
        async with session_scope(self.session_maker) as session:
            repo = PersonaRepository(session)
            current = await repo.get_active()
            if current is not None:
                await self._deactivate(session, current, utcnow())
            persona = await repo.create_with_state(display_name, state)
        logger.info(f"[season] Season {persona.season_number} started: {display_name}")
        return persona

    @staticmethod
    async def _deactivate(session: AsyncSession, persona: Persona, now: datetime) -> int:
        persona.active = False
        persona.ended_at = now
        count = await ConversationRepository(session).deactivate_for_persona(persona.id)
        logger.info(
            f"[season] Season {persona.season_number} ended, {count} conversations deactivated"
        )
        return count
