"""Action scheduling: queued steps, delayed queues and the per-conversation scheduler."""

from .actions import ActionType, ScheduledAction
from .queue import ActionQueue, AsyncioActionQueue, CeleryActionQueue

__all__ = [
    "ActionQueue",
    "ActionType",
    "AsyncioActionQueue",
    "CeleryActionQueue",
    "ScheduledAction",
]
