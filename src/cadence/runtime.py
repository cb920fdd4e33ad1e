"""
Wiring of the engine's services.

``Runtime.build`` creates every collaborator from settings; tests and the
CLI pass their own queue, provider, locks or sinks to replace the defaults.
"""

import random
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import Settings, get_settings
from .generation import (
    ActionDecider,
    FragmentReevaluator,
    MessageGenerator,
    SystemContextBuilder,
)
from .locks import ExclusiveLock, LocalExclusiveLock, RedisExclusiveLock
from .memory import MemoryStore
from .messaging import (
    Broadcaster,
    FragmentDispatcher,
    LogBroadcaster,
    LogNotifier,
    Notifier,
    ReadReceiptManager,
    RedisBroadcaster,
    SideEffects,
    WebhookNotifier,
)
from .persona import NaturalEvolver, SeasonManager, StateEvolver
from .providers import ContentProvider, create_provider
from .scheduling import ActionQueue, AsyncioActionQueue
from .scheduling.scheduler import ActionScheduler
from .storage import build_engine, build_session_maker, init_db
from .timing import ProviderTimingPolicy, TimingOracle


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    locks: ExclusiveLock
    queue: ActionQueue
    provider: ContentProvider
    broadcaster: Broadcaster
    notifier: Notifier
    memory_store: MemoryStore
    context_builder: SystemContextBuilder
    dispatcher: FragmentDispatcher
    seasons: SeasonManager
    scheduler: ActionScheduler

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        queue: Optional[ActionQueue] = None,
        provider: Optional[ContentProvider] = None,
        locks: Optional[ExclusiveLock] = None,
        broadcaster: Optional[Broadcaster] = None,
        notifier: Optional[Notifier] = None,
        side_effects: Optional[SideEffects] = None,
        distributed: bool = False,
        rng: Optional[random.Random] = None,
    ) -> "Runtime":
        """Assemble the services.

        With ``distributed=True`` locks and broadcasts go through Redis;
        otherwise everything stays in-process. The default queue is an
        AsyncioActionQueue bound to the scheduler.
        """
        settings = settings or get_settings()
        rng = rng or random.Random()

        engine = engine or build_engine(settings.DATABASE_URL)
        session_maker = build_session_maker(engine)

        if locks is None:
            locks = RedisExclusiveLock.from_url(settings.REDIS_URL) if distributed else LocalExclusiveLock()
        if broadcaster is None:
            broadcaster = RedisBroadcaster.from_url(settings.REDIS_URL) if distributed else LogBroadcaster()
        if notifier is None:
            notifier = WebhookNotifier(settings.NOTIFY_WEBHOOK_URL) if settings.NOTIFY_WEBHOOK_URL else LogNotifier()
        provider = provider or create_provider(settings)
        queue = queue or AsyncioActionQueue()

        memory_store = MemoryStore(session_maker, locks, settings)
        context_builder = SystemContextBuilder(session_maker, memory_store)
        timing = TimingOracle(ProviderTimingPolicy(provider, settings), settings)
        side_effects = side_effects or SideEffects()

        dispatcher = FragmentDispatcher(
            session_maker,
            locks,
            queue,
            timing,
            FragmentReevaluator(provider, settings),
            context_builder,
            broadcaster,
            notifier,
            side_effects=side_effects,
            settings=settings,
            rng=rng,
        )
        generator = MessageGenerator(provider, settings)
        seasons = SeasonManager(
            session_maker,
            locks,
            settings,
            generator=generator,
            context_builder=context_builder,
            dispatcher=dispatcher,
        )
        scheduler = ActionScheduler(
            session_maker,
            locks,
            queue,
            context_builder,
            ActionDecider(provider, settings),
            generator,
            dispatcher,
            timing,
            ReadReceiptManager(session_maker, broadcaster),
            memory_store,
            StateEvolver(provider, session_maker, context_builder, memory_store, settings),
            NaturalEvolver(provider, session_maker, context_builder, settings),
            seasons,
            side_effects=side_effects,
            settings=settings,
            rng=rng,
        )

        if isinstance(queue, AsyncioActionQueue) and queue.handler is None:
            queue.bind(scheduler.handle)

        logger.info(
            f"[runtime] Built with provider={provider.name}, "
            f"locks={type(locks).__name__}, queue={type(queue).__name__}"
        )
        return cls(
            settings=settings,
            engine=engine,
            session_maker=session_maker,
            locks=locks,
            queue=queue,
            provider=provider,
            broadcaster=broadcaster,
            notifier=notifier,
            memory_store=memory_store,
            context_builder=context_builder,
            dispatcher=dispatcher,
            seasons=seasons,
            scheduler=scheduler,
        )

    async def init_db(self) -> None:
        await init_db(self.engine)

    async def aclose(self) -> None:
        """Close queues, clients and the engine."""
        if isinstance(self.queue, AsyncioActionQueue):
            await self.queue.close()
        await self.provider.aclose()
        for resource in (self.notifier, self.broadcaster, self.locks):
            close = getattr(resource, "aclose", None) or getattr(resource, "close", None)
            if close is not None:
                await close()
        await self.engine.dispose()
