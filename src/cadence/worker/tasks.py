"""Celery tasks that execute queued actions."""

import asyncio
from typing import Any, Dict, Optional

from celery import Task
from loguru import logger

from ..config import get_settings
from ..core.exceptions import PersistenceError
from ..runtime import Runtime
from ..scheduling import ActionType, CeleryActionQueue, ScheduledAction
from .celery_app import celery_app

_runtime: Optional[Runtime] = None
_loop: Optional[asyncio.AbstractEventLoop] = None


def get_loop() -> asyncio.AbstractEventLoop:
    """One event loop per worker process; engine and Redis pools are bound to it."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = Runtime.build(
            get_settings(),
            queue=CeleryActionQueue(celery_app),
            distributed=True,
        )
    return _runtime


# Custom task base class to handle async operations
class AsyncTask(Task):
    """Base task class that supports async operations."""

    def __call__(self, *args, **kwargs):
        """Override call to run async functions in the worker's event loop."""
        result = self.run(*args, **kwargs)
        if asyncio.iscoroutine(result):
            return get_loop().run_until_complete(result)
        return result


CYCLE_ACTIONS = frozenset({ActionType.DECIDE, ActionType.GENERATE, ActionType.FRAGMENT})


@celery_app.task(base=AsyncTask, bind=True, max_retries=get_settings().JOB_MAX_RETRIES)
async def run_action(self, message: Dict[str, Any]) -> Any:
    """
    Execute one queued action.

    A decision that hit a storage failure is retried with exponential
    backoff. Any other failure of a conversation step (or a decision out of
    retries) restarts the whole cycle with a fresh decision after
    ``DECISION_FAILURE_RETRY_DELAY``. Generation and fragment steps are never
    replayed.

    Args:
        message: ``ScheduledAction.to_message()`` payload
    """
    settings = get_settings()
    action = ScheduledAction.from_message(message)
    scheduler = get_runtime().scheduler
    try:
        result = await scheduler.handle(action)
    except Exception as exc:
        if (
            isinstance(exc, PersistenceError)
            and action.action is ActionType.DECIDE
            and self.request.retries < self.max_retries
        ):
            countdown = settings.JOB_RETRY_BACKOFF * (2 ** self.request.retries)
            logger.error(f"[worker] {action.action.value} failed, retrying in {countdown}s: {exc}")
            raise self.retry(exc=exc, countdown=countdown)

        conversation_id = action.conversation_id
        if action.action not in CYCLE_ACTIONS or conversation_id is None:
            raise
        delay = settings.DECISION_FAILURE_RETRY_DELAY
        logger.error(
            f"[worker] {action.action.value} failed for {conversation_id}, "
            f"new decision in {delay}s: {exc}"
        )
        await scheduler.kick(conversation_id, delay)
        raise

    return result.value if hasattr(result, "value") else str(result)


@celery_app.task(base=AsyncTask)
async def periodic_tick() -> int:
    """Queue season checks, natural evolution and memory maintenance."""
    queued = await get_runtime().scheduler.tick()
    logger.info(f"[worker] Periodic tick queued {queued} actions")
    return queued
