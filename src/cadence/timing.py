"""
Human-like delays: thinking before acting and typing between fragments.

The TimingOracle asks a pluggable policy and falls back to a static table
whenever the policy fails, times out, answers nothing or is cancelled.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Mapping, Optional

from loguru import logger

from .config import Settings, get_settings
from .generation import prompts
from .generation.task import CancellationToken, GenerationTask
from .providers.base import ContentProvider


class TimingKind(str, Enum):
    THINKING_BEFORE_RESPONSE = "thinking_before_response"
    THINKING_BEFORE_READ_ONLY = "thinking_before_read_only"
    THINKING_BEFORE_INITIATE = "thinking_before_initiate"
    DELAY_BETWEEN_FRAGMENTS = "delay_between_fragments"


class TimingPolicy(ABC):
    """Source of delay suggestions. May return None to defer to the fallback."""

    @abstractmethod
    async def suggest(
        self,
        kind: TimingKind,
        context: Optional[Mapping[str, Any]] = None,
        persona: Optional[str] = None,
    ) -> Optional[float]:
        ...


class StaticTimingPolicy(TimingPolicy):
    """Always suggests the configured table value for ``kind``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def suggest(self, kind, context=None, persona=None) -> Optional[float]:
        return static_delay(kind, self.settings)


class ProviderTimingPolicy(TimingPolicy):
    """Asks the content provider for ``{"delay_seconds": n}``."""

    def __init__(self, provider: ContentProvider, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    async def suggest(self, kind, context=None, persona=None) -> Optional[float]:
        prompt = prompts.timing_prompt(
            persona or "You are a person texting a friend.",
            kind.value,
            context,
            self.settings.FRAGMENT_MIN_DELAY,
            self.settings.FRAGMENT_MAX_DELAY,
        )
        data = await self.provider.generate_json(prompt, temperature=self.settings.TEMPERATURE_FOCUSED)
        value = data.get("delay_seconds")
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None


def static_delay(kind: TimingKind, settings: Settings) -> float:
    return {
        TimingKind.THINKING_BEFORE_RESPONSE: settings.TIMING_DELAY_THINKING_BEFORE_RESPONSE,
        TimingKind.THINKING_BEFORE_READ_ONLY: settings.TIMING_DELAY_THINKING_BEFORE_READ_ONLY,
        TimingKind.THINKING_BEFORE_INITIATE: settings.TIMING_DELAY_THINKING_BEFORE_INITIATE,
        TimingKind.DELAY_BETWEEN_FRAGMENTS: settings.TIMING_DELAY_BETWEEN_FRAGMENTS,
    }.get(kind, settings.TIMING_DELAY_GENERIC_FALLBACK)


class TimingOracle:
    """
    Computes clamped delays for the pipeline.

    The policy call is bounded by ``TIMING_POLICY_TIMEOUT`` and by the
    caller's cancellation token; it never raises.
    """

    def __init__(self, policy: Optional[TimingPolicy] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.policy = policy or StaticTimingPolicy(self.settings)

    async def delay_for(
        self,
        kind: TimingKind,
        context: Optional[Mapping[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        persona: Optional[str] = None,
    ) -> float:
        kind = TimingKind(kind)
        outcome = await GenerationTask(
            lambda: self.policy.suggest(kind, context, persona),
            fallback=lambda _: None,
            token=token,
            poll_interval=self.settings.POLL_INTERVAL,
            timeout=self.settings.TIMING_POLICY_TIMEOUT,
            name="timing",
        ).run()

        delay = outcome.value
        if not outcome.ok or delay is None:
            delay = self.fallback(kind, context)
            logger.debug(f"[timing] Using fallback {delay}s for {kind.value}")
        return self.clamp(delay)

    def fallback(self, kind: TimingKind, context: Optional[Mapping[str, Any]] = None) -> float:
        """Static delay; fragment delays are tiered by fragment length."""
        if kind is TimingKind.DELAY_BETWEEN_FRAGMENTS and context:
            length = context.get("fragment_length")
            if length is None and context.get("fragment") is not None:
                length = len(str(context["fragment"]))
            if length is not None:
                if length > 20:
                    return self.settings.TIMING_DELAY_FRAGMENT_LONG
                if length > 10:
                    return self.settings.TIMING_DELAY_FRAGMENT_MEDIUM
                return self.settings.TIMING_DELAY_FRAGMENT_SHORT
        return static_delay(kind, self.settings)

    def clamp(self, delay: float) -> float:
        return max(self.settings.FRAGMENT_MIN_DELAY, min(self.settings.FRAGMENT_MAX_DELAY, float(delay)))
