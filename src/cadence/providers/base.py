"""
Content provider interface.

Business logic talks to a ContentProvider only, so the concrete model
backend can be swapped without touching the decision or generation code.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from loguru import logger

from .json_utils import extract_json_object


class ContentProvider(ABC):
    """Text generation backend.

    ``generate_text`` raises ContentBlockedError, RateLimitedError,
    InvalidResponseError or ProviderError. ``generate_json`` never raises on
    malformed output (returns ``{}``) but still propagates the provider
    errors above.
    """

    name: str = "provider"

    @abstractmethod
    async def generate_text(self, prompt: str, temperature: float = 1.0) -> str:
        """Generate text for ``prompt``."""

    async def generate_json(self, prompt: str, temperature: float = 1.0) -> Dict[str, Any]:
        """Generate a JSON object for ``prompt``, ``{}`` when none could be parsed."""
        text = await self.generate_text(prompt, temperature=temperature)
        parsed = extract_json_object(text)
        if parsed is None:
            logger.warning(f"[{self.name}] Returning empty JSON for unparseable response")
            return {}
        return parsed

    async def aclose(self) -> None:
        """Release network resources."""
