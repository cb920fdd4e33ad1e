"""
Delayed action queues.

CeleryActionQueue is durable (Redis broker, late acks) so a crashed worker
does not drop a conversation's pending step. AsyncioActionQueue keeps
everything in the running event loop for single-instance runs.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import timezone
from typing import Awaitable, Callable, Optional, Set

from loguru import logger

from .actions import ScheduledAction

ActionHandler = Callable[[ScheduledAction], Awaitable[object]]

RUN_ACTION_TASK = "cadence.worker.tasks.run_action"


class ActionQueue(ABC):
    @abstractmethod
    async def enqueue(self, action: ScheduledAction) -> None:
        """Schedule ``action`` to run no earlier than ``action.not_before``."""


class CeleryActionQueue(ActionQueue):
    """Publishes actions to the Celery ``run_action`` task with an ETA."""

    def __init__(self, celery_app, task_name: str = RUN_ACTION_TASK):
        self.celery_app = celery_app
        self.task_name = task_name

    async def enqueue(self, action: ScheduledAction) -> None:
        eta = None
        if action.not_before is not None:
            eta = action.not_before.replace(tzinfo=timezone.utc)
        self.celery_app.send_task(self.task_name, args=[action.to_message()], eta=eta)
        logger.debug(f"[queue] Enqueued {action.action.value} (eta={eta})")


class AsyncioActionQueue(ActionQueue):
    """Runs actions in the current event loop after their delay.

    Failures are logged; there is no retry or persistence.
    """

    def __init__(self, handler: Optional[ActionHandler] = None):
        self.handler = handler
        self._timers: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, handler: ActionHandler) -> None:
        self.handler = handler

    async def enqueue(self, action: ScheduledAction) -> None:
        if self.handler is None:
            raise RuntimeError("AsyncioActionQueue has no handler bound")

        loop = asyncio.get_running_loop()
        timer: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(timer)
            task = loop.create_task(self._run(action))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        timer = loop.call_later(action.countdown(), fire)
        self._timers.add(timer)

    async def _run(self, action: ScheduledAction) -> None:
        try:
            await self.handler(action)
        except Exception as e:
            logger.exception(f"[queue] Action {action.action.value} failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._timers) + len(self._tasks)

    async def close(self) -> None:
        """Cancel timers and wait for running actions."""
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
