"""
Timed, interruptible delivery of a reply's fragments.

A turn moves through ``Typing(i) -> Send(i) -> Typing(i+1) ... -> Finalize``.
Each Send is its own queued action, so the delay between fragments never
blocks a worker. The conversation lock travels with the turn and is adopted
by every step with ``ExclusiveLock.retained``; it is released exactly once,
when the turn finalizes or a step fails.
"""

import random
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..core.exceptions import LockLostError
from ..generation.context import SystemContextBuilder
from ..generation.reevaluator import FragmentReevaluator
from ..generation.task import CancellationToken
from ..locks import ExclusiveLock, LockHandle, conversation_lock_key
from ..scheduling.actions import ActionType, ScheduledAction
from ..scheduling.queue import ActionQueue
from ..storage.database import SENDER_AGENT, session_scope
from ..storage.repositories import ConversationRepository, MessageRepository
from ..timing import TimingKind, TimingOracle
from .broadcast import Broadcaster, message_event, typing_event
from .notifications import Notifier, notify_safely


class TurnPhase(str, Enum):
    TYPING = "typing"
    SEND = "send"


class TurnOutcome(str, Enum):
    CONTINUING = "continuing"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"
    INACTIVE = "inactive"
    ABANDONED = "abandoned"


class FragmentTurn(BaseModel):
    """State of one turn, carried from step to step through the queue."""

    conversation_id: UUID
    participant_id: str = ""
    persona_name: str = ""
    fragments: List[str]
    index: int = 0
    sent_count: int = 0
    phase: TurnPhase = TurnPhase.TYPING
    typing_shown: bool = False
    started_at: datetime
    lock_token: str

    @property
    def remaining(self) -> List[str]:
        return self.fragments[self.index + 1:]


class SideEffects:
    """Hooks run after the agent acts. The default only logs."""

    async def after_read_only(self, conversation_id: UUID) -> None:
        logger.debug(f"[side-effects] after read-only: {conversation_id}")

    async def after_response(self, conversation_id: UUID) -> None:
        logger.debug(f"[side-effects] after response: {conversation_id}")


class FragmentDispatcher:
    """Drives FragmentTurns for every conversation."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: ExclusiveLock,
        queue: ActionQueue,
        timing: TimingOracle,
        reevaluator: FragmentReevaluator,
        context_builder: SystemContextBuilder,
        broadcaster: Broadcaster,
        notifier: Notifier,
        side_effects: Optional[SideEffects] = None,
        settings: Optional[Settings] = None,
        reevaluation_probability: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.queue = queue
        self.timing = timing
        self.reevaluator = reevaluator
        self.context_builder = context_builder
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.side_effects = side_effects or SideEffects()
        self.settings = settings or get_settings()
        self.reevaluation_probability = (
            reevaluation_probability
            if reevaluation_probability is not None
            else self.settings.FRAGMENT_REEVALUATION_PROBABILITY
        )
        self.rng = rng or random.Random()

    async def start(self, turn: FragmentTurn) -> TurnOutcome:
        """Begin a turn whose lock is already held by ``turn.lock_token``."""
        logger.info(
            f"[dispatcher] Starting turn for {turn.conversation_id} with {len(turn.fragments)} fragments"
        )
        return await self.step(turn.model_copy(update={"index": 0, "phase": TurnPhase.TYPING}))

    async def step(self, turn: FragmentTurn) -> TurnOutcome:
        """Run one queued step of ``turn``.

        A step whose token no longer holds the conversation lock is dropped
        without sending, enqueueing or releasing anything.
        """
        key = conversation_lock_key(turn.conversation_id)
        try:
            async with self.locks.retained(key, turn.lock_token) as handle:
                return await self._advance(turn, handle)
        except LockLostError:
            logger.warning(
                f"[dispatcher] Lock lost for {turn.conversation_id}, dropping step {turn.index + 1}"
            )
            return TurnOutcome.ABANDONED

    async def _advance(self, turn: FragmentTurn, handle: LockHandle) -> TurnOutcome:
        if not await self._active(turn.conversation_id):
            # Season over: stop silently, no next decision
            if turn.typing_shown:
                await self.broadcaster.publish(turn.conversation_id, typing_event(False))
            logger.info(f"[dispatcher] Conversation {turn.conversation_id} inactive, turn dropped")
            return TurnOutcome.INACTIVE

        if turn.index >= len(turn.fragments):
            return await self._finalize(turn, TurnOutcome.COMPLETED, handle)

        if await self._interrupted(turn):
            logger.info(
                f"[dispatcher] Interrupted before fragment {turn.index + 1} "
                f"in {turn.conversation_id}"
            )
            return await self._finalize(turn, TurnOutcome.INTERRUPTED, handle)

        if turn.phase is TurnPhase.TYPING:
            return await self._typing(turn, handle)
        return await self._send(turn, handle)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _typing(self, turn: FragmentTurn, handle: LockHandle) -> TurnOutcome:
        fragment = turn.fragments[turn.index]
        delay = await self.timing.delay_for(
            TimingKind.DELAY_BETWEEN_FRAGMENTS,
            {
                "fragment": fragment,
                "fragment_length": len(fragment),
                "remaining_fragments": len(turn.fragments) - turn.index - 1,
            },
            token=self._token(turn),
        )

        await self.broadcaster.publish(turn.conversation_id, typing_event(True))
        next_turn = turn.model_copy(update={"phase": TurnPhase.SEND, "typing_shown": True})
        await self.queue.enqueue(
            ScheduledAction.after(ActionType.FRAGMENT, next_turn.model_dump(mode="json"), delay)
        )
        handle.hand_off()
        logger.debug(f"[dispatcher] Typing fragment {turn.index + 1}, send in {delay:.2f}s")
        return TurnOutcome.CONTINUING

    async def _send(self, turn: FragmentTurn, handle: LockHandle) -> TurnOutcome:
        i = turn.index
        fragment = turn.fragments[i]

        async with session_scope(self.session_maker) as session:
            message = await MessageRepository(session).add(
                turn.conversation_id,
                SENDER_AGENT,
                fragment,
                is_fragment=True,
                fragment_index=i,
            )

        await self.broadcaster.publish(turn.conversation_id, message_event(message.to_event()))
        await notify_safely(
            self.notifier,
            turn.participant_id,
            turn.persona_name,
            fragment,
            self.settings.NOTIFICATION_TRUNCATE_LENGTH,
        )
        await self.broadcaster.publish(turn.conversation_id, typing_event(False))

        turn = turn.model_copy(update={"sent_count": turn.sent_count + 1, "typing_shown": False})
        logger.info(f"[dispatcher] Sent fragment {i + 1}/{len(turn.fragments)} to {turn.conversation_id}")

        fragments = turn.fragments
        remaining = turn.remaining
        if remaining and self.rng.random() < self.reevaluation_probability:
            snapshot = await self.context_builder.snapshot(
                turn.conversation_id,
                self.settings.CONTEXT_MESSAGES_FOR_REEVALUATION,
                with_memories=False,
            )
            outcome = await self.reevaluator.reevaluate(
                snapshot, fragments[: i + 1], remaining, token=self._token(turn)
            )
            if outcome.cancelled:
                return await self._finalize(turn, TurnOutcome.INTERRUPTED, handle)
            if not outcome.value.continue_:
                return await self._finalize(turn, TurnOutcome.STOPPED, handle)
            fragments = fragments[: i + 1] + outcome.value.fragments

        turn = turn.model_copy(update={"fragments": fragments, "index": i + 1, "phase": TurnPhase.TYPING})
        if turn.index >= len(turn.fragments):
            return await self._finalize(turn, TurnOutcome.COMPLETED, handle)

        if await self._interrupted(turn):
            return await self._finalize(turn, TurnOutcome.INTERRUPTED, handle)
        return await self._typing(turn, handle)

    async def _finalize(self, turn: FragmentTurn, outcome: TurnOutcome, handle: LockHandle) -> TurnOutcome:
        """Close the turn: evolve state, run hooks, release, schedule the next decision."""
        conversation_id = turn.conversation_id
        try:
            if turn.typing_shown:
                await self.broadcaster.publish(conversation_id, typing_event(False))
            await self.queue.enqueue(ScheduledAction.evolve(conversation_id))
            if outcome is not TurnOutcome.INTERRUPTED:
                await self.side_effects.after_response(conversation_id)
            unread = await self._unread_count(conversation_id)
        finally:
            await handle.release()

        if outcome is TurnOutcome.INTERRUPTED or unread > 0:
            delay = 0.0
        else:
            delay = self.rng.uniform(self.settings.DECISION_MIN_DELAY, self.settings.DECISION_MAX_DELAY)
        await self.queue.enqueue(ScheduledAction.decide(conversation_id, delay))

        logger.info(
            f"[dispatcher] Turn {outcome.value} for {conversation_id} after {turn.sent_count} fragments, "
            f"next decision in {delay:.0f}s"
        )
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _interrupted(self, turn: FragmentTurn) -> bool:
        """Whether the human wrote anything since the turn began."""
        async with session_scope(self.session_maker) as session:
            return await MessageRepository(session).human_since(turn.conversation_id, turn.started_at) > 0

    async def _unread_count(self, conversation_id: UUID) -> int:
        async with session_scope(self.session_maker) as session:
            return await MessageRepository(session).count_unread_human(conversation_id)

    def _token(self, turn: FragmentTurn) -> CancellationToken:
        return CancellationToken(probe=lambda: self._interrupted(turn))

    async def _active(self, conversation_id: UUID) -> bool:
        async with session_scope(self.session_maker) as session:
            found = await ConversationRepository(session).get_with_persona(conversation_id)
        return found is not None and found[0].active and found[1].active
