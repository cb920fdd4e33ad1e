"""Configuration for the Cadence engine."""

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine configuration settings.

    Every value can be overridden with a ``CADENCE_``-prefixed environment
    variable or a ``.env`` file.
    """

    model_config = SettingsConfigDict(env_prefix="CADENCE_", env_file=".env", extra="ignore")

    # Storage / infrastructure
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/cadence.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Content provider
    PROVIDER: str = "ollama"
    OLLAMA_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3.2:3b"
    PROVIDER_TIMEOUT: float = 60.0
    PROVIDER_FAILURE_THRESHOLD: int = 5
    PROVIDER_RECOVERY_TIMEOUT: float = 60.0

    # Push notifications (empty = log only)
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFICATION_TRUNCATE_LENGTH: int = 100

    # Fragment timing (seconds)
    FRAGMENT_MIN_DELAY: float = 0.5
    FRAGMENT_MAX_DELAY: float = 8.0
    FRAGMENT_REEVALUATION_PROBABILITY: float = 0.3
    TIMING_POLICY_TIMEOUT: float = 5.0

    TIMING_DELAY_THINKING_BEFORE_RESPONSE: float = 1.0
    TIMING_DELAY_THINKING_BEFORE_READ_ONLY: float = 0.8
    TIMING_DELAY_THINKING_BEFORE_INITIATE: float = 1.5
    TIMING_DELAY_BETWEEN_FRAGMENTS: float = 2.5
    TIMING_DELAY_GENERIC_FALLBACK: float = 1.0

    # Length-tier fallbacks for fragment delays
    TIMING_DELAY_FRAGMENT_LONG: float = 2.5  # > 20 characters
    TIMING_DELAY_FRAGMENT_MEDIUM: float = 1.5  # > 10 characters
    TIMING_DELAY_FRAGMENT_SHORT: float = 0.8

    # Decision cycle (seconds)
    DECISION_MIN_DELAY: float = 30.0
    DECISION_MAX_DELAY: float = 120.0
    DECISION_FAILURE_RETRY_DELAY: float = 30.0
    DECISION_BLOCKED_RETRY_DELAY: float = 60.0
    DECISION_RATE_LIMITED_RETRY_DELAY: float = 60.0
    DECISION_MIN_WAIT: float = 10.0
    DECISION_MAX_WAIT: float = 300.0

    # Cancellation / locking
    POLL_INTERVAL: float = 0.1
    LOCK_TTL: int = 300
    LOCK_RETRY_DELAY: float = 0.1
    MAINTENANCE_LOCK_MAX_WAIT: float = 30.0

    # Memory lifecycle
    MEMORY_MIN_FOR_CONSOLIDATION: int = 15
    MEMORY_MAX_BEFORE_PRUNING: int = 50
    MEMORY_SIMILARITY_THRESHOLD: float = 40.0
    MEMORY_MIN_AGE_FOR_CONSOLIDATION_DAYS: float = 14.0
    MEMORY_MAX_DETAIL_FOR_CONSOLIDATION: float = 0.7
    MEMORY_MIN_SIGNIFICANCE_FOR_PROTECTION: float = 6.5
    MEMORY_DECAY_NOISE_THRESHOLD: float = 0.05
    MEMORY_MIN_DETAIL: float = 0.05
    CONTEXT_MEMORIES_LIMIT: int = 5

    # Prompt context sizes
    CONTEXT_MESSAGES_FOR_RESPONSE: int = 30
    CONTEXT_MESSAGES_FOR_INITIATION: int = 20
    CONTEXT_MESSAGES_FOR_DECISION: int = 20
    CONTEXT_MESSAGES_FOR_REEVALUATION: int = 10
    CONTEXT_MESSAGES_FOR_EVOLUTION: int = 15

    # Sampling temperatures
    TEMPERATURE_CREATIVE: float = 1.0
    TEMPERATURE_FOCUSED: float = 0.7

    # Seasons (days)
    SEASON_WARNING_DAYS: float = 70.0
    SEASON_LENGTH_DAYS: float = 90.0

    # Job retry
    JOB_MAX_RETRIES: int = 3
    JOB_RETRY_BACKOFF: int = 5

    @model_validator(mode="after")
    def _check_ranges(self) -> "Settings":
        if self.FRAGMENT_MIN_DELAY > self.FRAGMENT_MAX_DELAY:
            raise ValueError("FRAGMENT_MIN_DELAY must not exceed FRAGMENT_MAX_DELAY")
        if self.DECISION_MIN_DELAY > self.DECISION_MAX_DELAY:
            raise ValueError("DECISION_MIN_DELAY must not exceed DECISION_MAX_DELAY")
        if not 0.0 <= self.FRAGMENT_REEVALUATION_PROBABILITY <= 1.0:
            raise ValueError("FRAGMENT_REEVALUATION_PROBABILITY must be within [0, 1]")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
