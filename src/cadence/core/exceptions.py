"""
Domain-specific exception hierarchy for Cadence.

All custom exceptions inherit from CadenceException for consistent error handling.
Lock contention is not an error: a refused acquisition returns ``None``.
"""

from typing import Any


class CadenceException(Exception):
    """
    Base exception for all Cadence errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


# ============================================================================
# Lock Exceptions
# ============================================================================

class LockException(CadenceException):
    """Base class for exclusive lock errors."""
    pass


class LockNotAcquiredError(LockException):
    """Scoped acquisition was refused because the key is held."""

    def __init__(self, key: str):
        super().__init__(f"Failed to acquire lock: {key}", context={"key": key})
        self.key = key


class LockLostError(LockException):
    """A handed-over token no longer holds the key (expired, released or taken over)."""

    def __init__(self, key: str):
        super().__init__(f"Lock no longer held by this step: {key}", context={"key": key})
        self.key = key


# ============================================================================
# Content Provider Exceptions
# ============================================================================

class ProviderError(CadenceException):
    """Generic content provider failure (network, HTTP, unexpected payload)."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, context={"provider": provider} if provider else None)
        self.provider = provider


class ContentBlockedError(ProviderError):
    """Provider refused to produce content because of its safety policy."""
    pass


class RateLimitedError(ProviderError):
    """Provider rejected the request because of rate limiting."""

    def __init__(self, message: str, provider: str | None = None, retry_after: float | None = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class InvalidResponseError(ProviderError):
    """Provider answered, but without usable text."""
    pass


class ProviderConfigurationError(ProviderError):
    """Provider is not configured (missing URL, model, credentials)."""
    pass


class MalformedProviderOutput(CadenceException):
    """Provider text could not be interpreted as the expected structure."""

    def __init__(self, expected: str, raw: str | None = None):
        truncated = raw[:200] + "..." if raw and len(raw) > 200 else raw
        super().__init__(
            f"Malformed provider output, expected {expected}",
            context={"raw": truncated} if truncated else None
        )
        self.expected = expected


# ============================================================================
# Persistence Exceptions
# ============================================================================

class PersistenceError(CadenceException):
    """Database read/write failed. Fatal for the current cycle."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Persistence {operation} failed: {reason}",
            context={"operation": operation}
        )
        self.operation = operation


class RecordNotFoundError(PersistenceError):
    """Referenced record does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__("lookup", f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


# ============================================================================
# Configuration Exceptions
# ============================================================================

class ConfigValidationError(CadenceException):
    """Configuration validation failed."""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration for '{field}': {reason}",
            context={"field": field, "value": value}
        )
        self.field = field
        self.value = value
