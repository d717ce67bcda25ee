"""
Per-reference mutual exclusion.

Every read-modify-write on a transaction (verify, webhook, retry, cancel)
and every escrow release runs while holding the lock for its key. With
``redis_url`` configured the lock is a Redis lock shared by all workers;
without it, an in-process ``asyncio.Lock`` per key.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
import structlog

from tutorpay.config import Settings
from tutorpay.core.exceptions import ConcurrentModification
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class _LocalLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class ReferenceLocker:
    """
    Hands out one lock per key.

    Example:
        async with locker.hold(reference):
            ...read, decide, write...
    """

    def __init__(self, settings: Settings, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize locker.

        Args:
            settings: Application settings
            redis_client: Optional Redis client; a process-local lock map is used without one
        """
        self.timeout = settings.redis_lock_timeout
        self.redis_client = redis_client
        self._local: Dict[str, _LocalLock] = {}

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "local"

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConcurrentModification: If the lock could not be acquired in time
        """
        if self.redis_client is not None:
            async with self._hold_redis(key):
                yield
        else:
            async with self._hold_local(key):
                yield

    @asynccontextmanager
    async def _hold_redis(self, key: str) -> AsyncIterator[None]:
        lock_key = f"payment:lock:{key}"
        lock = self.redis_client.lock(
            lock_key, timeout=self.timeout, blocking_timeout=self.timeout
        )
        start = time.monotonic()
        acquired = await lock.acquire()
        if not acquired:
            metrics.record_lock("redis", "timeout", time.monotonic() - start)
            logger.warning("reference_lock_acquisition_failed", lock_key=lock_key)
            raise ConcurrentModification("Payment already in progress, please retry")

        metrics.record_lock("redis", "acquired", time.monotonic() - start)
        logger.debug("reference_lock_acquired", lock_key=lock_key)
        try:
            yield
        finally:
            await lock.release()
            logger.debug("reference_lock_released", lock_key=lock_key)

    @asynccontextmanager
    async def _hold_local(self, key: str) -> AsyncIterator[None]:
        entry = self._local.get(key)
        if entry is None:
            entry = self._local[key] = _LocalLock()
        entry.holders += 1

        start = time.monotonic()
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                metrics.record_lock("local", "timeout", time.monotonic() - start)
                logger.warning("reference_lock_acquisition_failed", lock_key=key)
                raise ConcurrentModification("Payment already in progress, please retry")

            metrics.record_lock("local", "acquired", time.monotonic() - start)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._local.pop(key, None)

    def held_keys(self) -> int:
        """Number of keys with a holder or waiter (process-local backend)."""
        return len(self._local)
