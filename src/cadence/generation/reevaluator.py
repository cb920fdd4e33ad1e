"""Mid-sequence reevaluation of fragments not yet sent."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from ..config import Settings, get_settings
from ..providers.base import ContentProvider
from . import prompts
from .context import ConversationSnapshot, SystemContextBuilder
from .task import CancellationToken, GenerationOutcome, GenerationTask


@dataclass
class Reevaluation:
    continue_: bool
    fragments: List[str] = field(default_factory=list)
    reason: str = ""


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "no", "0", "")
    return bool(value)


class FragmentReevaluator:
    """Decides whether to continue, rewrite or stop the remaining fragments.

    A failed reevaluation continues with the remaining fragments unchanged.
    """

    def __init__(self, provider: ContentProvider, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    async def reevaluate(
        self,
        snapshot: ConversationSnapshot,
        just_sent: List[str],
        remaining: List[str],
        token: Optional[CancellationToken] = None,
    ) -> GenerationOutcome[Reevaluation]:
        def unchanged(_: Optional[BaseException]) -> Reevaluation:
            return Reevaluation(True, list(remaining))

        if not remaining:
            return GenerationOutcome(unchanged(None))

        prompt = prompts.reevaluation_prompt(
            SystemContextBuilder.build(snapshot),
            prompts.format_history(snapshot.history),
            just_sent,
            remaining,
        )

        async def request() -> Reevaluation:
            data = await self.provider.generate_json(prompt, temperature=self.settings.TEMPERATURE_FOCUSED)
            return self.parse(data, remaining)

        outcome = await GenerationTask(
            request,
            fallback=unchanged,
            token=token,
            poll_interval=self.settings.POLL_INTERVAL,
            name="reevaluator",
        ).run()

        result = outcome.value
        if not result.continue_:
            logger.info(f"[reevaluator] Stop sending (reason: {result.reason})")
        elif result.fragments != remaining:
            logger.info(f"[reevaluator] Updated to {len(result.fragments)} fragments (reason: {result.reason})")
        return outcome

    @staticmethod
    def parse(data: Dict[str, Any], remaining: List[str]) -> Reevaluation:
        """Interpret provider JSON. Missing ``should_continue`` means continue."""
        reason = str(data.get("reason") or "no reason provided")
        if not _as_bool(data.get("should_continue", True)):
            return Reevaluation(False, [], reason)

        updated = data.get("updated_fragments")
        if isinstance(updated, list):
            fragments = [str(f).strip() for f in updated if str(f).strip()]
            return Reevaluation(True, fragments, reason)
        return Reevaluation(True, list(remaining), reason)
