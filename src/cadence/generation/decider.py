"""Decides the agent's next action for a conversation."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from ..config import Settings, get_settings
from ..core.exceptions import ContentBlockedError, MalformedProviderOutput, RateLimitedError
from ..providers.base import ContentProvider
from . import prompts
from .context import ConversationSnapshot, SystemContextBuilder
from .task import CancellationToken, GenerationOutcome, GenerationTask


class Action(str, Enum):
    RESPOND = "respond"
    READ_ONLY = "read_only"
    WAIT = "wait"
    INITIATE = "initiate"


@dataclass
class Decision:
    action: Action
    reason: str = ""
    wait_seconds: Optional[float] = None


class ActionDecider:
    """
    Asks the provider what to do next.

    Failures never escape: a generic failure, malformed or empty output waits
    for the failure retry delay; blocked content and rate limiting back off
    longer.
    """

    def __init__(self, provider: ContentProvider, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    async def decide(
        self,
        snapshot: ConversationSnapshot,
        token: Optional[CancellationToken] = None,
    ) -> GenerationOutcome[Decision]:
        s = self.settings
        prompt = prompts.decision_prompt(
            SystemContextBuilder.build(snapshot),
            prompts.format_history(snapshot.history),
            snapshot.unread_count,
            snapshot.unread_agent_count,
            s.DECISION_MIN_WAIT,
            s.DECISION_MAX_WAIT,
        )

        async def request() -> Decision:
            data = await self.provider.generate_json(prompt, temperature=s.TEMPERATURE_CREATIVE)
            return self.parse(data)

        outcome = await GenerationTask(
            request,
            fallback=self.default_for,
            token=token,
            poll_interval=s.POLL_INTERVAL,
            name="decider",
        ).run()

        decision = outcome.value
        logger.info(
            f"[decider] Conversation {snapshot.conversation_id}: {decision.action.value} "
            f"({decision.reason or 'no reason'})"
        )
        return outcome

    def parse(self, data: Dict[str, Any]) -> Decision:
        """Validate provider JSON into a Decision.

        Raises:
            MalformedProviderOutput: If the payload is empty or names no known action
        """
        if not data:
            raise MalformedProviderOutput("decision object", str(data))

        try:
            action = Action(str(data.get("action", "")).strip().lower())
        except ValueError as e:
            raise MalformedProviderOutput("known action", str(data)) from e

        reason = str(data.get("reason") or "")
        if action is not Action.WAIT:
            return Decision(action, reason)

        try:
            seconds = float(data.get("wait_seconds"))
        except (TypeError, ValueError):
            seconds = self.settings.DECISION_FAILURE_RETRY_DELAY
        return Decision(action, reason, self._clamp_wait(seconds))

    def default_for(self, error: Optional[BaseException]) -> Decision:
        """Safe decision for a failed or cancelled decision call."""
        s = self.settings
        if isinstance(error, ContentBlockedError):
            return Decision(Action.WAIT, "content blocked", s.DECISION_BLOCKED_RETRY_DELAY)
        if isinstance(error, RateLimitedError):
            return Decision(Action.WAIT, "rate limited", s.DECISION_RATE_LIMITED_RETRY_DELAY)
        return Decision(Action.WAIT, "decision failed", s.DECISION_FAILURE_RETRY_DELAY)

    def _clamp_wait(self, seconds: float) -> float:
        return max(self.settings.DECISION_MIN_WAIT, min(self.settings.DECISION_MAX_WAIT, seconds))
