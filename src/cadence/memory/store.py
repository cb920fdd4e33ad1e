"""
Bounded, decaying memory store for a persona.

Maintenance runs decay, then consolidation, then pruning, under a
persona-scoped lock:
    - decay lowers detail with age (never raises it)
    - consolidation folds old, faded, related memories into one summary
    - pruning drops the lowest-scoring memories down to the hard cap
"""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..locks import ExclusiveLock, memory_lock_key
from ..storage.database import Memory, session_scope, utcnow
from ..storage.repositories import MemoryRepository
from .scoring import age_in_days, decayed_detail, pruning_score, tag_similarity


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance run."""
    persona_id: UUID
    decayed: int = 0
    consolidated: int = 0
    pruned: int = 0
    skipped: bool = False


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


class MemoryStore:
    """Lifecycle operations over one persona's memory collection."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: ExclusiveLock,
        settings: Optional[Settings] = None,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Creation and recall
    # ------------------------------------------------------------------

    async def add(
        self,
        persona_id: UUID,
        content: str,
        significance: float = 5.0,
        emotional_intensity: float = 5.0,
        tags: Optional[Iterable[str]] = None,
        memory_timestamp: Optional[datetime] = None,
    ) -> Memory:
        """Create a memory at full detail."""
        async with session_scope(self.session_maker) as session:
            memory = await MemoryRepository(session).create(
                persona_id=persona_id,
                content=content,
                significance=_clamp(significance, 0.0, 10.0),
                emotional_intensity=_clamp(emotional_intensity, 0.0, 10.0),
                detail_level=1.0,
                recall_count=0,
                tags=[str(t) for t in (tags or [])],
                memory_timestamp=memory_timestamp or utcnow(),
            )
        logger.debug(f"[memory] Added memory for persona {persona_id}: {content[:50]}")
        return memory

    async def recall(self, memory: Memory, now: Optional[datetime] = None) -> Memory:
        """Record that ``memory`` was surfaced into a generation context."""
        now = now or utcnow()
        async with session_scope(self.session_maker) as session:
            await session.execute(
                update(Memory)
                .where(Memory.id == memory.id)
                .values(recall_count=Memory.recall_count + 1, last_recalled_at=now)
            )
        memory.recall_count = (memory.recall_count or 0) + 1
        memory.last_recalled_at = now
        return memory

    async def relevant(
        self,
        persona_id: UUID,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Memory]:
        """Highest-scoring memories for prompt context, each recorded as recalled."""
        now = now or utcnow()
        limit = limit if limit is not None else self.settings.CONTEXT_MEMORIES_LIMIT
        async with session_scope(self.session_maker) as session:
            memories = await MemoryRepository(session).for_persona(persona_id)
            ranked = sorted(memories, key=lambda m: self._score(m, now), reverse=True)[:limit]
            for memory in ranked:
                memory.recall_count = (memory.recall_count or 0) + 1
                memory.last_recalled_at = now
        return ranked

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def apply_decay(self, persona_id: UUID, now: Optional[datetime] = None) -> int:
        """Lower each memory's detail by age. Returns count of significant changes."""
        now = now or utcnow()
        noise = self.settings.MEMORY_DECAY_NOISE_THRESHOLD
        changed = 0

        async with session_scope(self.session_maker) as session:
            for memory in await MemoryRepository(session).for_persona(persona_id):
                new_detail = decayed_detail(
                    memory.significance,
                    memory.emotional_intensity,
                    age_in_days(memory.memory_timestamp, now),
                    self.settings.MEMORY_MIN_DETAIL,
                )
                # Detail only ever goes down outside consolidation
                if new_detail < memory.detail_level and memory.detail_level - new_detail > noise:
                    memory.detail_level = new_detail
                    changed += 1

        if changed:
            logger.info(f"[memory] Decay applied: {changed} memories significantly decayed")
        return changed

    async def consolidate(self, persona_id: UUID, now: Optional[datetime] = None) -> int:
        """Merge clusters of related faded memories. Returns number of clusters."""
        now = now or utcnow()

        async with session_scope(self.session_maker) as session:
            repo = MemoryRepository(session)
            memories = await repo.for_persona(persona_id)
            if len(memories) < self.settings.MEMORY_MIN_FOR_CONSOLIDATION:
                return 0

            logger.info(f"[memory] Checking for memories to consolidate (total: {len(memories)})")

            absorbed: set[UUID] = set()
            summaries: list[Memory] = []
            for primary in memories:
                if primary.id in absorbed or not self._consolidatable(primary, now):
                    continue

                related = [
                    other for other in memories
                    if other.id != primary.id
                    and other.id not in absorbed
                    and self._consolidatable(other, now)
                    and tag_similarity(primary.tags, other.tags)
                    >= self.settings.MEMORY_SIMILARITY_THRESHOLD
                ]
                if not related:
                    continue

                cluster = [primary] + related
                summaries.append(self._summarize(persona_id, cluster))
                absorbed.update(m.id for m in cluster)

            if not summaries:
                logger.info("[memory] No memories consolidated (not enough related old memories)")
                return 0

            await repo.delete_many(list(absorbed))
            session.add_all(summaries)
            await session.flush()

        logger.info(
            f"[memory] Consolidated {len(absorbed)} old memories into {len(summaries)} summaries"
        )
        return len(summaries)

    async def prune(self, persona_id: UUID, now: Optional[datetime] = None) -> int:
        """Delete lowest-scoring memories down to the cap. Returns number deleted."""
        now = now or utcnow()
        cap = self.settings.MEMORY_MAX_BEFORE_PRUNING

        async with session_scope(self.session_maker) as session:
            repo = MemoryRepository(session)
            memories = await repo.for_persona(persona_id)
            if len(memories) <= cap:
                return 0

            ranked = sorted(memories, key=lambda m: self._score(m, now))
            doomed = ranked[: len(memories) - cap]
            await repo.delete_many([m.id for m in doomed])

        logger.info(f"[memory] Pruned {len(doomed)} lowest-scoring memories, {cap} remaining")
        return len(doomed)

    async def run_maintenance(self, persona_id: UUID, now: Optional[datetime] = None) -> MaintenanceReport:
        """Decay, consolidate, prune, in that order, under the persona's lock."""
        key = memory_lock_key(persona_id)
        token = await self.locks.wait_and_acquire(
            key,
            ttl=self.settings.LOCK_TTL,
            max_wait=self.settings.MAINTENANCE_LOCK_MAX_WAIT,
            retry_delay=self.settings.LOCK_RETRY_DELAY,
        )
        if token is None:
            logger.warning(f"[memory] Maintenance for persona {persona_id} skipped: lock busy")
            return MaintenanceReport(persona_id=persona_id, skipped=True)

        try:
            report = MaintenanceReport(persona_id=persona_id)
            report.decayed = await self.apply_decay(persona_id, now)
            report.consolidated = await self.consolidate(persona_id, now)
            report.pruned = await self.prune(persona_id, now)
        finally:
            await self.locks.release(key, token)

        logger.info(
            f"[memory] Maintenance done for persona {persona_id}: "
            f"decayed={report.decayed}, consolidated={report.consolidated}, pruned={report.pruned}"
        )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _score(self, memory: Memory, now: datetime) -> float:
        return pruning_score(
            memory.significance,
            memory.detail_level,
            memory.emotional_intensity,
            memory.recall_count or 0,
            age_in_days(memory.memory_timestamp, now),
        )

    def _consolidatable(self, memory: Memory, now: datetime) -> bool:
        s = self.settings
        return (
            age_in_days(memory.memory_timestamp, now) >= s.MEMORY_MIN_AGE_FOR_CONSOLIDATION_DAYS
            and memory.detail_level <= s.MEMORY_MAX_DETAIL_FOR_CONSOLIDATION
            and memory.significance < s.MEMORY_MIN_SIGNIFICANCE_FOR_PROTECTION
        )

    @staticmethod
    def _summarize(persona_id: UUID, cluster: List[Memory]) -> Memory:
        primary = cluster[0]
        counts: Counter[str] = Counter()
        for memory in cluster:
            counts.update(dict.fromkeys(memory.tags or [], 1))
        top_tags = [tag for tag, _ in counts.most_common(3)]

        size = len(cluster)
        return Memory(
            persona_id=persona_id,
            content=f"{size} related memories (topics: {', '.join(top_tags)})",
            memory_timestamp=primary.memory_timestamp,
            significance=sum(m.significance for m in cluster) / size,
            emotional_intensity=sum(m.emotional_intensity for m in cluster) / size,
            detail_level=sum(m.detail_level for m in cluster) / size,
            tags=top_tags,
            recall_count=0,
        )
