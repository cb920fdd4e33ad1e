"""Ollama-backed content provider."""

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from ..core.exceptions import (
    ContentBlockedError,
    InvalidResponseError,
    ProviderConfigurationError,
    ProviderError,
    RateLimitedError,
)
from ..core.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerOpen
from .base import ContentProvider
from .json_utils import extract_json_object


class OllamaProvider(ContentProvider):
    """Calls Ollama's ``/api/generate`` endpoint through a circuit breaker.

    Refusals (``done_reason == "safety"``) and empty answers do not trip the
    breaker; transport errors, HTTP errors and rate limiting do.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url or not model:
            raise ProviderConfigurationError("Ollama URL and model are required", self.name)

        self.base_url = base_url.rstrip("/")
        self.model = model
        self.breaker = CircuitBreaker(
            breaker_config or CircuitBreakerConfig(name=self.name),
            counted_exceptions=(ProviderError,),
            ignored_exceptions=(ContentBlockedError, InvalidResponseError),
        )
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def generate_text(self, prompt: str, temperature: float = 1.0) -> str:
        return await self._generate(prompt, temperature)

    async def generate_json(self, prompt: str, temperature: float = 1.0) -> Dict[str, Any]:
        text = await self._generate(prompt, temperature, response_format="json")
        return extract_json_object(text) or {}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _generate(
        self,
        prompt: str,
        temperature: float,
        response_format: Optional[str] = None,
    ) -> str:
        try:
            return await self.breaker.call(self._request, prompt, temperature, response_format)
        except CircuitBreakerOpen as e:
            raise ProviderError(str(e), self.name) from e

    async def _request(self, prompt: str, temperature: float, response_format: Optional[str]) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": 2048,
            },
        }
        if response_format is not None:
            payload["format"] = response_format

        try:
            response = await self._client.post(f"{self.base_url}/api/generate", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"[ollama] Request failed: {e}")
            raise ProviderError(f"Ollama request failed: {e}", self.name) from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(
                "Ollama rate limit exceeded",
                self.name,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 400:
            logger.error(f"[ollama] HTTP {response.status_code}: {response.text[:200]}")
            raise ProviderError(f"Ollama returned HTTP {response.status_code}", self.name)

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError("Ollama returned a non-JSON body", self.name) from e

        if data.get("done_reason") == "safety":
            raise ContentBlockedError("Ollama blocked the content", self.name)

        text = (data.get("response") or "").strip()
        if not text:
            raise InvalidResponseError("Ollama returned an empty response", self.name)
        return text
