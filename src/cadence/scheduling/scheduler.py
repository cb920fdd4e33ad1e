"""
Per-conversation action scheduler.

    Idle -> Deciding -> {Responding | ReadingOnly | Waiting | Initiating} -> Idle(next)

Every cycle starts from a queued ``decide`` action. The conversation lock is
taken without waiting; a held lock means another cycle is in flight and this
one is skipped. While the provider works, the unread count is re-read from
storage and compared to the count at cycle start: if the human wrote again,
the work is cancelled and a fresh decision is queued immediately.
"""

import random
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..core.exceptions import LockLostError
from ..generation.context import SystemContextBuilder
from ..generation.decider import Action, ActionDecider
from ..generation.generator import MessageGenerator
from ..generation.task import CancellationToken
from ..locks import ExclusiveLock, LockHandle, conversation_lock_key
from ..memory.store import MemoryStore
from ..messaging.dispatcher import FragmentDispatcher, FragmentTurn, SideEffects
from ..messaging.receipts import ReadReceiptManager
from ..persona.evolution import NaturalEvolver, StateEvolver
from ..persona.seasons import SeasonManager
from ..storage.database import SENDER_HUMAN, Message, session_scope, utcnow
from ..storage.repositories import (
    ConversationRepository,
    MessageRepository,
    PersonaRepository,
)
from ..timing import TimingKind, TimingOracle
from .actions import ActionType, ScheduledAction
from .queue import ActionQueue


class CycleResult(str, Enum):
    SKIPPED = "skipped"
    STOPPED = "stopped"
    INTERRUPTED = "interrupted"
    WAITING = "waiting"
    READ_ONLY = "read_only"
    RESPONDING = "responding"
    INITIATING = "initiating"
    RETRYING = "retrying"


THINKING_KINDS = {
    Action.RESPOND: TimingKind.THINKING_BEFORE_RESPONSE,
    Action.INITIATE: TimingKind.THINKING_BEFORE_INITIATE,
}


class ActionScheduler:
    """Runs decision cycles and routes every queued action to its handler."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: ExclusiveLock,
        queue: ActionQueue,
        context_builder: SystemContextBuilder,
        decider: ActionDecider,
        generator: MessageGenerator,
        dispatcher: FragmentDispatcher,
        timing: TimingOracle,
        receipts: ReadReceiptManager,
        memory_store: MemoryStore,
        state_evolver: StateEvolver,
        natural_evolver: NaturalEvolver,
        seasons: SeasonManager,
        side_effects: Optional[SideEffects] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.queue = queue
        self.context_builder = context_builder
        self.decider = decider
        self.generator = generator
        self.dispatcher = dispatcher
        self.timing = timing
        self.receipts = receipts
        self.memory_store = memory_store
        self.state_evolver = state_evolver
        self.natural_evolver = natural_evolver
        self.seasons = seasons
        self.side_effects = side_effects or dispatcher.side_effects
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def handle(self, action: ScheduledAction) -> Any:
        """Execute one queued action."""
        payload = action.payload
        logger.debug(f"[scheduler] Handling {action.action.value}")

        if action.action is ActionType.DECIDE:
            return await self.run_cycle(UUID(payload["conversation_id"]))
        if action.action is ActionType.GENERATE:
            return await self.generate(payload)
        if action.action is ActionType.FRAGMENT:
            return await self.dispatcher.step(FragmentTurn.model_validate(payload))
        if action.action is ActionType.EVOLVE:
            return await self.state_evolver.evolve_from_conversation(UUID(payload["conversation_id"]))
        if action.action is ActionType.MAINTAIN_MEMORY:
            return await self.memory_store.run_maintenance(UUID(payload["persona_id"]))
        if action.action is ActionType.NATURAL_EVOLUTION:
            return await self.natural_evolver.evolve_naturally(UUID(payload["persona_id"]))
        if action.action is ActionType.SEASON_CHECK:
            return await self.seasons.check()
        raise ValueError(f"Unknown action: {action.action}")

    # ------------------------------------------------------------------
    # Deciding
    # ------------------------------------------------------------------

    async def run_cycle(self, conversation_id: UUID) -> CycleResult:
        """Decide what to do for a conversation and start doing it."""
        if not await self._is_active(conversation_id):
            logger.info(f"[scheduler] Conversation {conversation_id} inactive, scheduler stopped")
            return CycleResult.STOPPED

        key = conversation_lock_key(conversation_id)
        token = await self.locks.acquire(key, self.settings.LOCK_TTL)
        if token is None:
            logger.info(f"[scheduler] Cycle already running for {conversation_id}, skipping")
            return CycleResult.SKIPPED

        async with self.locks.retained(key, token) as handle:
            cycle_started_at = utcnow()
            snapshot = await self.context_builder.snapshot(
                conversation_id, self.settings.CONTEXT_MESSAGES_FOR_DECISION
            )
            baseline = snapshot.unread_count
            interruption = self._interruption_token(conversation_id, baseline)

            outcome = await self.decider.decide(snapshot, interruption)
            if outcome.cancelled:
                logger.info(f"[scheduler] Human interrupted the decision in {conversation_id}, requeueing")
                return await self._reschedule(handle, conversation_id, 0.0, CycleResult.INTERRUPTED)

            decision = outcome.value
            if decision.action is Action.WAIT:
                return await self._reschedule(
                    handle, conversation_id, decision.wait_seconds or 0.0, CycleResult.WAITING
                )

            if decision.action is Action.READ_ONLY:
                await self.receipts.mark_read(
                    conversation_id, [m.id for m in snapshot.unread], bypass_focus=True
                )
                await self.side_effects.after_read_only(conversation_id)
                return await self._reschedule(
                    handle, conversation_id, self._next_decision_delay(), CycleResult.READ_ONLY
                )

            delay = await self.timing.delay_for(
                THINKING_KINDS[decision.action],
                token=interruption,
                persona=SystemContextBuilder.build(snapshot),
            )
            await self.queue.enqueue(
                ScheduledAction.after(
                    ActionType.GENERATE,
                    {
                        "conversation_id": str(conversation_id),
                        "mode": decision.action.value,
                        "lock_token": token,
                        "unread_baseline": baseline,
                        "cycle_started_at": cycle_started_at.isoformat(),
                    },
                    delay,
                )
            )
            handle.hand_off()
            logger.info(f"[scheduler] Thinking {delay:.2f}s before {decision.action.value} in {conversation_id}")
            return CycleResult.RESPONDING if decision.action is Action.RESPOND else CycleResult.INITIATING

    # ------------------------------------------------------------------
    # Responding / Initiating
    # ------------------------------------------------------------------

    async def generate(self, payload: Dict[str, Any]) -> Any:
        """Queued step after the thinking delay: generate fragments and start dispatch.

        Skipped without side effects when the handed-over lock was lost.
        """
        conversation_id = UUID(payload["conversation_id"])
        key = conversation_lock_key(conversation_id)

        try:
            async with self.locks.retained(key, payload["lock_token"]) as handle:
                return await self._generate(conversation_id, payload, handle)
        except LockLostError:
            logger.warning(f"[scheduler] Lock lost for {conversation_id}, generation dropped")
            return CycleResult.SKIPPED

    async def _generate(self, conversation_id: UUID, payload: Dict[str, Any], handle: LockHandle) -> Any:
        mode = Action(payload.get("mode", Action.RESPOND.value))
        if not await self._is_active(conversation_id):
            return CycleResult.STOPPED

        if await self._unread_rose(conversation_id, int(payload.get("unread_baseline", 0))):
            logger.info(f"[scheduler] Human interrupted the thinking delay in {conversation_id}")
            return await self._reschedule(handle, conversation_id, 0.0, CycleResult.INTERRUPTED)

        started_at = utcnow()
        limit = (
            self.settings.CONTEXT_MESSAGES_FOR_RESPONSE
            if mode is Action.RESPOND
            else self.settings.CONTEXT_MESSAGES_FOR_INITIATION
        )
        snapshot = await self.context_builder.snapshot(conversation_id, limit)
        interruption = self._interruption_token(conversation_id, snapshot.unread_count)

        if mode is Action.RESPOND:
            outcome = await self.generator.respond(snapshot, interruption)
        else:
            outcome = await self.generator.initiate(snapshot, interruption)

        if outcome.cancelled:
            logger.info(f"[scheduler] Human interrupted generation in {conversation_id}")
            return await self._reschedule(handle, conversation_id, 0.0, CycleResult.INTERRUPTED)
        if outcome.failed:
            return await self._reschedule(
                handle, conversation_id, self.settings.DECISION_FAILURE_RETRY_DELAY, CycleResult.RETRYING
            )

        if mode is Action.RESPOND:
            await self.receipts.mark_read(
                conversation_id, [m.id for m in snapshot.unread], bypass_focus=True
            )

        turn = FragmentTurn(
            conversation_id=conversation_id,
            participant_id=snapshot.participant_id,
            persona_name=snapshot.persona_name,
            fragments=outcome.value,
            started_at=started_at,
            lock_token=handle.hand_off(),
        )
        return await self.dispatcher.start(turn)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def kick(self, conversation_id: UUID, delay: float = 0.0) -> None:
        """Queue a decision cycle for a conversation."""
        await self.queue.enqueue(ScheduledAction.decide(conversation_id, delay))

    async def receive(self, participant_id: str, content: str, at: Optional[datetime] = None) -> Message:
        """Store a human message for the active persona and queue a decision."""
        async with session_scope(self.session_maker) as session:
            persona = await PersonaRepository(session).get_active()
            if persona is None:
                raise ValueError("No active persona")
            conversation = await ConversationRepository(session).get_or_create(participant_id, persona.id)
            message = await MessageRepository(session).add(conversation.id, SENDER_HUMAN, content, created_at=at)

        await self.kick(message.conversation_id)
        return message

    async def tick(self) -> int:
        """Queue periodic upkeep for the active persona. Returns actions queued."""
        async with session_scope(self.session_maker) as session:
            persona = await PersonaRepository(session).get_active()

        await self.queue.enqueue(ScheduledAction.after(ActionType.SEASON_CHECK))
        if persona is None:
            return 1
        for action in (ActionType.NATURAL_EVOLUTION, ActionType.MAINTAIN_MEMORY):
            await self.queue.enqueue(ScheduledAction.for_persona(action, persona.id))
        return 3

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _reschedule(
        self,
        handle: LockHandle,
        conversation_id: UUID,
        delay: float,
        result: CycleResult,
    ) -> CycleResult:
        # Release first so the next cycle can take the lock
        await handle.release()
        await self.queue.enqueue(ScheduledAction.decide(conversation_id, delay))
        logger.info(f"[scheduler] {conversation_id}: {result.value}, next decision in {delay:.0f}s")
        return result

    def _next_decision_delay(self) -> float:
        return self.rng.uniform(self.settings.DECISION_MIN_DELAY, self.settings.DECISION_MAX_DELAY)

    def _interruption_token(self, conversation_id: UUID, baseline: int) -> CancellationToken:
        return CancellationToken(probe=lambda: self._unread_rose(conversation_id, baseline))

    async def _unread_rose(self, conversation_id: UUID, baseline: int) -> bool:
        async with session_scope(self.session_maker) as session:
            return await MessageRepository(session).count_unread_human(conversation_id) > baseline

    async def _is_active(self, conversation_id: UUID) -> bool:
        async with session_scope(self.session_maker) as session:
            found = await ConversationRepository(session).get_with_persona(conversation_id)
        if found is None:
            return False
        conversation, persona = found
        return conversation.active and persona.active
