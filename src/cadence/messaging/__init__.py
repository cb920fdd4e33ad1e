"""Outbound messaging: broadcasts, notifications, read receipts and fragment dispatch."""

from .broadcast import Broadcaster, LogBroadcaster, RedisBroadcaster
from .dispatcher import FragmentDispatcher, FragmentTurn, SideEffects, TurnOutcome, TurnPhase
from .notifications import LogNotifier, Notifier, WebhookNotifier, notify_safely
from .receipts import ReadReceiptManager

__all__ = [
    "Broadcaster",
    "FragmentDispatcher",
    "FragmentTurn",
    "LogBroadcaster",
    "LogNotifier",
    "Notifier",
    "ReadReceiptManager",
    "RedisBroadcaster",
    "SideEffects",
    "TurnOutcome",
    "TurnPhase",
    "WebhookNotifier",
    "notify_safely",
]
