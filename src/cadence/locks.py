"""
Exclusive locks guarding conversations and maintenance jobs.

One lock per conversation ensures at most one agent action pipeline runs for
it at a time. Contention is not an error: ``acquire`` returns ``None``.

Two backends:
    RedisExclusiveLock: SET NX EX with a compare-and-delete release script,
        shared by every worker process.
    LocalExclusiveLock: in-process table for single-instance runs and tests.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import redis.asyncio as redis
from loguru import logger

from .core.exceptions import LockLostError, LockNotAcquiredError

DEFAULT_TTL = 300
DEFAULT_RETRY_DELAY = 0.1

SEASON_ROTATION_KEY = "season:rotation"


def conversation_lock_key(conversation_id) -> str:
    return f"conversation:{conversation_id}:action"


def memory_lock_key(persona_id) -> str:
    return f"memory:{persona_id}:maintenance"


class LockHandle:
    """Ownership of an acquired lock inside a ``retained`` block."""

    def __init__(self, lock: "ExclusiveLock", key: str, token: str):
        self.lock = lock
        self.key = key
        self.token = token
        self.handed_off = False
        self.released = False

    def hand_off(self) -> str:
        """Pass ownership to the next pipeline step; the block will not release."""
        self.handed_off = True
        return self.token

    async def release(self) -> None:
        """Release early, before the block exits. Later calls are no-ops."""
        if self.released or self.handed_off:
            return
        self.released = True
        await self.lock.release(self.key, self.token)


class ExclusiveLock(ABC):
    """Mutual exclusion keyed by string with automatic expiry."""

    @abstractmethod
    async def acquire(self, key: str, ttl: int = DEFAULT_TTL) -> Optional[str]:
        """Atomically take ``key`` if free. Returns the holder token or None."""

    @abstractmethod
    async def release(self, key: str, token: Optional[str] = None) -> bool:
        """Release ``key``. With a token, only if it still belongs to that holder."""

    @abstractmethod
    async def is_held(self, key: str) -> bool:
        ...

    @abstractmethod
    async def owns(self, key: str, token: str) -> bool:
        """Whether ``token`` is the current, unexpired holder of ``key``."""

    async def wait_and_acquire(
        self,
        key: str,
        ttl: int = DEFAULT_TTL,
        max_wait: float = 30.0,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> Optional[str]:
        """Poll until the lock is acquired or ``max_wait`` seconds elapsed."""
        deadline = time.monotonic() + max_wait
        while True:
            token = await self.acquire(key, ttl)
            if token is not None:
                return token
            if time.monotonic() >= deadline:
                logger.warning(f"[lock] Gave up waiting for {key} after {max_wait}s")
                return None
            await asyncio.sleep(retry_delay)

    @asynccontextmanager
    async def hold(self, key: str, ttl: int = DEFAULT_TTL) -> AsyncIterator[str]:
        """Acquire for the duration of the block, always releasing on exit.

        Raises:
            LockNotAcquiredError: If the key is held by someone else
        """
        token = await self.acquire(key, ttl)
        if token is None:
            raise LockNotAcquiredError(key)
        try:
            yield token
        finally:
            await self.release(key, token)

    @asynccontextmanager
    async def retained(self, key: str, token: str) -> AsyncIterator[LockHandle]:
        """Adopt a lock handed over by a previous step.

        The lock is released when the block exits (normally or with an
        exception) unless ``handle.hand_off()`` was called inside it. It is
        released at most once, even if ``handle.release()`` ran earlier.

        Raises:
            LockLostError: If ``token`` no longer holds ``key``; nothing is
                released and the step must stop without side effects
        """
        if not await self.owns(key, token):
            logger.warning(f"[lock] Stale token for {key}, step abandoned")
            raise LockLostError(key)

        handle = LockHandle(self, key, token)
        try:
            yield handle
        finally:
            await handle.release()


# Deletes the key only if it still holds the caller's token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisExclusiveLock(ExclusiveLock):
    """Lock shared across processes through Redis."""

    def __init__(self, redis_client):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisExclusiveLock":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def acquire(self, key: str, ttl: int = DEFAULT_TTL) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.redis.set(key, token, nx=True, ex=int(ttl))
        if acquired:
            logger.debug(f"[lock] Acquired {key}")
            return token
        logger.debug(f"[lock] {key} is held, not acquired")
        return None

    async def release(self, key: str, token: Optional[str] = None) -> bool:
        if token is None:
            deleted = await self.redis.delete(key)
        else:
            deleted = await self.redis.eval(_RELEASE_SCRIPT, 1, key, token)
        if deleted:
            logger.debug(f"[lock] Released {key}")
        return bool(deleted)

    async def is_held(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def owns(self, key: str, token: str) -> bool:
        return await self.redis.get(key) == token

    async def close(self) -> None:
        await self.redis.close()


class LocalExclusiveLock(ExclusiveLock):
    """In-process lock table with expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._holders: dict[str, tuple[str, float]] = {}
        self._guard = asyncio.Lock()

    def _live(self, key: str) -> Optional[tuple[str, float]]:
        entry = self._holders.get(key)
        if entry and entry[1] <= self._clock():
            del self._holders[key]
            return None
        return entry

    async def acquire(self, key: str, ttl: int = DEFAULT_TTL) -> Optional[str]:
        async with self._guard:
            if self._live(key):
                return None
            token = uuid.uuid4().hex
            self._holders[key] = (token, self._clock() + ttl)
            return token

    async def release(self, key: str, token: Optional[str] = None) -> bool:
        async with self._guard:
            entry = self._live(key)
            if entry is None:
                return False
            if token is not None and entry[0] != token:
                logger.warning(f"[lock] Refusing to release {key}: held by another token")
                return False
            del self._holders[key]
            return True

    async def is_held(self, key: str) -> bool:
        async with self._guard:
            return self._live(key) is not None

    async def owns(self, key: str, token: str) -> bool:
        async with self._guard:
            entry = self._live(key)
            return entry is not None and entry[0] == token
