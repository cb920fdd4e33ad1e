"""Generates reply fragments."""

from typing import List, Optional

from loguru import logger

from ..config import Settings, get_settings
from ..providers.base import ContentProvider
from . import prompts
from .context import ConversationSnapshot, SystemContextBuilder
from .task import CancellationToken, GenerationOutcome, GenerationTask


def split_fragments(text: str) -> List[str]:
    """One fragment per non-empty line, stripped."""
    return [line.strip() for line in (text or "").strip().splitlines() if line.strip()]


def _no_fragments(_: Optional[BaseException]) -> List[str]:
    return []


class MessageGenerator:
    """Produces an ordered list of fragments for a response or an initiation.

    Any failure yields an empty list; the turn then finalizes with nothing sent.
    """

    def __init__(self, provider: ContentProvider, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    async def respond(
        self,
        snapshot: ConversationSnapshot,
        token: Optional[CancellationToken] = None,
    ) -> GenerationOutcome[List[str]]:
        prompt = prompts.response_prompt(
            SystemContextBuilder.build(snapshot),
            prompts.format_history(snapshot.history),
            prompts.format_history(snapshot.unread, include_read_status=False) or "(none)",
        )
        return await self._generate(prompt, token, "response")

    async def initiate(
        self,
        snapshot: ConversationSnapshot,
        token: Optional[CancellationToken] = None,
    ) -> GenerationOutcome[List[str]]:
        prompt = prompts.initiation_prompt(
            SystemContextBuilder.build(snapshot),
            prompts.format_history(snapshot.history),
        )
        return await self._generate(prompt, token, "initiation")

    async def farewell(self, snapshot: ConversationSnapshot, days_left: int) -> GenerationOutcome[List[str]]:
        """Goodbye fragments sent when the season is about to end."""
        prompt = prompts.farewell_prompt(
            SystemContextBuilder.build(snapshot),
            prompts.format_history(snapshot.history),
            snapshot.participant_id,
            days_left,
        )
        return await self._generate(prompt, None, "farewell")

    async def _generate(
        self,
        prompt: str,
        token: Optional[CancellationToken],
        label: str,
    ) -> GenerationOutcome[List[str]]:
        async def request() -> List[str]:
            text = await self.provider.generate_text(prompt, temperature=self.settings.TEMPERATURE_CREATIVE)
            return split_fragments(text)

        outcome = await GenerationTask(
            request,
            fallback=_no_fragments,
            token=token,
            poll_interval=self.settings.POLL_INTERVAL,
            name="generator",
        ).run()

        if outcome.ok:
            logger.info(f"[generator] Generated {len(outcome.value)} {label} fragments")
        return outcome
