"""Per-account mutual exclusion for balance-mutating operations."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from config import get_settings
from exceptions import AccountLockTimeoutError

logger = structlog.get_logger()

# Key serializing account-number allocation in AccountService.create_account
ACCOUNT_SEQUENCE_KEY = "__account_sequence__"


class LockManager:
    """Hands out one exclusive lock per key.

    ``acquire`` blocks until the key's lock is free, or for at most
    ``wait_timeout`` seconds when one is configured. Callers should prefer
    ``hold`` so release happens on every exit path.
    """

    def __init__(self, wait_timeout: Optional[float] = None):
        self.wait_timeout = wait_timeout
        self.locks: Dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key; the lock is dropped when this reaches zero
        self._users: Dict[str, int] = {}

    def get_lock(self, key: str) -> asyncio.Lock:
        """Get lock for specific key."""
        return self.locks.setdefault(key, asyncio.Lock())

    def is_locked(self, key: str) -> bool:
        return key in self.locks and self.locks[key].locked()

    async def acquire(self, key: str) -> None:
        lock = self.get_lock(key)
        self._users[key] = self._users.get(key, 0) + 1
        try:
            if self.wait_timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            self._forget(key)
            logger.warning(
                "Lock acquisition timed out",
                lock_key=key,
                wait_timeout=self.wait_timeout
            )
            raise AccountLockTimeoutError()
        except BaseException:
            self._forget(key)
            raise

        logger.debug("Lock acquired", lock_key=key)

    async def release(self, key: str) -> None:
        self.locks[key].release()
        self._forget(key)
        logger.debug("Lock released", lock_key=key)

    def _forget(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self.locks[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        await self.acquire(key)
        try:
            yield
        finally:
            await self.release(key)


_lock_manager: Optional[LockManager] = None


def get_lock_manager() -> LockManager:
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = LockManager(wait_timeout=get_settings().lock_wait_timeout)
    return _lock_manager


def reset_lock_manager() -> None:
    """Drop every registered lock (for testing only)."""
    global _lock_manager
    _lock_manager = None
