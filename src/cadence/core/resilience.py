"""
Circuit breaker for content provider calls.

A provider that keeps failing is rejected immediately instead of holding
every conversation's decision cycle for a full request timeout. The breaker
lives in one event loop, so state changes need no locking.

    CLOSED --failure_threshold failures--> OPEN
    OPEN --recovery_timeout elapsed--> HALF_OPEN
    HALF_OPEN --success_threshold successes--> CLOSED
    HALF_OPEN --any counted failure--> OPEN
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from loguru import logger

T = TypeVar('T')

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5      # Consecutive failures before opening
    recovery_timeout: float = 60.0  # Seconds open before a trial call
    success_threshold: int = 2      # Trial successes needed to close
    name: str = "provider"


class CircuitBreakerOpen(Exception):
    """The provider is being skipped until ``retry_after`` seconds pass."""

    def __init__(self, circuit_name: str, retry_after: float):
        self.circuit_name = circuit_name
        self.retry_after = retry_after
        super().__init__(f"Provider '{circuit_name}' unavailable, retry after {retry_after:.1f}s")


class CircuitBreaker:
    """
    Wraps awaitable provider calls.

    Only ``counted_exceptions`` trip the breaker. ``ignored_exceptions`` come
    from a provider that answered (a refusal or an unusable reply) and count
    as successes.

    Example:
        >>> breaker = CircuitBreaker(CircuitBreakerConfig(name="ollama"), (ProviderError,))
        >>> text = await breaker.call(provider_request, prompt)
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        counted_exceptions: tuple[type[BaseException], ...] = (Exception,),
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        clock: Clock = time.monotonic,
    ):
        self.config = config
        self.counted_exceptions = counted_exceptions
        self.ignored_exceptions = ignored_exceptions
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self.retry_after <= 0:
            logger.info(f"[{self.config.name}] Recovery timeout passed, allowing trial calls")
            self._state = CircuitState.HALF_OPEN
            self._trial_successes = 0
        return self._state

    @property
    def retry_after(self) -> float:
        """Seconds until an open circuit admits a trial call."""
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self.clock() - self._opened_at))

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func(*args, **kwargs)`` unless the circuit is open.

        Raises:
            CircuitBreakerOpen: If the circuit is open
        """
        if self.state is CircuitState.OPEN:
            raise CircuitBreakerOpen(self.config.name, self.retry_after)

        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            self._record_success()
            raise
        except self.counted_exceptions:
            self._record_failure()
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._trial_successes += 1
            if self._trial_successes >= self.config.success_threshold:
                logger.success(f"[{self.config.name}] Provider recovered, circuit closed")
                self._close()
        else:
            self._failures = 0

    def _record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN:
            logger.warning(f"[{self.config.name}] Trial call failed, circuit open again")
            self._open()
        elif self._failures >= self.config.failure_threshold:
            logger.error(f"[{self.config.name}] {self._failures} consecutive failures, circuit open")
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self.clock()

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at = None

    def get_metrics(self) -> dict[str, Any]:
        return {
            "name": self.config.name,
            "state": self._state.value,
            "failure_count": self._failures,
            "retry_after": self.retry_after if self._state is CircuitState.OPEN else 0.0,
        }

    def reset(self) -> None:
        logger.info(f"[{self.config.name}] Circuit manually reset")
        self._close()
