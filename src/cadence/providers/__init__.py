"""Content providers."""

from .base import ContentProvider
from .factory import create_provider
from .ollama import OllamaProvider

__all__ = ["ContentProvider", "OllamaProvider", "create_provider"]
