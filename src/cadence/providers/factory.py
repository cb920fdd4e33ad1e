"""Builds the configured content provider."""

from ..config import Settings
from ..core.exceptions import ProviderConfigurationError
from ..core.resilience import CircuitBreakerConfig
from .base import ContentProvider
from .ollama import OllamaProvider


def create_provider(settings: Settings) -> ContentProvider:
    """Instantiate the provider named by ``settings.PROVIDER``.

    Raises:
        ProviderConfigurationError: If the provider name is unknown
    """
    name = settings.PROVIDER.lower()
    if name == "ollama":
        return OllamaProvider(
            base_url=settings.OLLAMA_URL,
            model=settings.OLLAMA_MODEL,
            timeout=settings.PROVIDER_TIMEOUT,
            breaker_config=CircuitBreakerConfig(
                name="ollama",
                failure_threshold=settings.PROVIDER_FAILURE_THRESHOLD,
                recovery_timeout=settings.PROVIDER_RECOVERY_TIMEOUT,
            ),
        )
    raise ProviderConfigurationError(f"Unknown provider: {settings.PROVIDER}", name)
