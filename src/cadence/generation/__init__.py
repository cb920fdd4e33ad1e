"""Cancellable provider-backed generation: decisions, fragments, reevaluation."""

from .context import ConversationSnapshot, MessageView, SystemContextBuilder
from .decider import Action, ActionDecider, Decision
from .generator import MessageGenerator, split_fragments
from .reevaluator import FragmentReevaluator, Reevaluation
from .task import CancellationToken, GenerationOutcome, GenerationTask

__all__ = [
    "Action",
    "ActionDecider",
    "CancellationToken",
    "ConversationSnapshot",
    "Decision",
    "FragmentReevaluator",
    "GenerationOutcome",
    "GenerationTask",
    "MessageGenerator",
    "MessageView",
    "Reevaluation",
    "SystemContextBuilder",
    "split_fragments",
]
