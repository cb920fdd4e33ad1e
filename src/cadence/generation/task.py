"""
Cancellable generation tasks.

A GenerationTask runs one provider-backed coroutine as an ``asyncio.Task``
and waits for it in short slices. Between slices it consults a
CancellationToken, so a human message arriving mid-generation stops the work
within one polling interval. Failures never propagate: they are mapped to a
safe default by the task's ``fallback``.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 0.1

InterruptionProbe = Callable[[], Awaitable[bool]]


class CancellationToken:
    """Cooperative cancellation flag with an optional async interruption probe.

    The probe is asked on every poll; once it reports an interruption the
    token stays cancelled.
    """

    def __init__(self, probe: Optional[InterruptionProbe] = None):
        self._probe = probe
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._probe is None:
            return False

        try:
            interrupted = await self._probe()
        except Exception as e:
            # A failing probe must not abort the generation it guards
            logger.warning(f"[generation] Interruption probe failed: {e}")
            return False

        if interrupted:
            self.cancel("interrupted")
        return self._cancelled


@dataclass
class GenerationOutcome(Generic[T]):
    """Result of a GenerationTask run."""
    value: T
    cancelled: bool = False
    failed: bool = False
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return not (self.cancelled or self.failed)


class GenerationTask(Generic[T]):
    """
    Run ``factory()`` with cancellation polling and failure fallback.

    Args:
        factory: Zero-argument callable returning the coroutine to run
        fallback: Maps the failure (``None`` when cancelled) to a safe default
        token: Cancellation token checked every ``poll_interval`` seconds
        poll_interval: Polling slice in seconds
        timeout: Overall deadline; expiry is treated like a failure
        name: Label for log lines
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        fallback: Callable[[Optional[BaseException]], T],
        token: Optional[CancellationToken] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: Optional[float] = None,
        name: str = "generation",
    ):
        self.factory = factory
        self.fallback = fallback
        self.token = token
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.name = name

    async def run(self) -> GenerationOutcome[T]:
        if self.token is not None and await self.token.is_cancelled():
            logger.info(f"[{self.name}] Cancelled before start")
            return GenerationOutcome(self.fallback(None), cancelled=True)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout is not None else None
        task = asyncio.ensure_future(self.factory())

        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.poll_interval)
                if done:
                    break

                if self.token is not None and await self.token.is_cancelled():
                    await _cancel(task)
                    logger.info(f"[{self.name}] Cancelled ({self.token.reason})")
                    return GenerationOutcome(self.fallback(None), cancelled=True)

                if deadline is not None and loop.time() >= deadline:
                    await _cancel(task)
                    error = asyncio.TimeoutError(f"{self.name} timed out after {self.timeout}s")
                    logger.warning(f"[{self.name}] {error}")
                    return GenerationOutcome(self.fallback(error), failed=True, error=error)
        except asyncio.CancelledError:
            task.cancel()
            raise

        try:
            value = task.result()
        except Exception as e:
            logger.warning(f"[{self.name}] Failed, using fallback: {type(e).__name__}: {e}")
            return GenerationOutcome(self.fallback(e), failed=True, error=e)

        return GenerationOutcome(value)


async def _cancel(task: "asyncio.Future[Any]") -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"[generation] Task raised while cancelling: {e}")
