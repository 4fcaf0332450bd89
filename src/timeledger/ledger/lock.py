"""
Account Lock Service.

Serializes read-compute-write cycles on accounts and ledger entries so
two concurrent settlements touching the same account never both read the
same starting balance.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from timeledger.core.exceptions import StorageUnavailableError

if TYPE_CHECKING:
    from timeledger.storage.base import StorageBackend

logger = logging.getLogger(__name__)


def account_lock_key(account_id: str) -> str:
    return f"lock:account:{account_id}"


def entry_lock_key(entry_id: str) -> str:
    return f"lock:entry:{entry_id}"


class AccountLockService:
    """
    Service for managing account and entry locks (mutexes).

    Implements a distributed lock pattern using the storage backend.
    """

    def __init__(
        self,
        storage: StorageBackend,
        ttl: int = 30,
        retry_count: int = 20,
        retry_delay: float = 0.05,
    ) -> None:
        """
        Initialize lock service.

        Args:
            storage: Storage backend (Redis/Memory)
            ttl: Lock time-to-live in seconds
            retry_count: Number of retries while a lock is held elsewhere
            retry_delay: Delay between retries in seconds
        """
        self._storage = storage
        self._ttl = ttl
        self._retry_count = retry_count
        self._retry_delay = retry_delay

    async def acquire(
        self,
        lock_key: str,
        retry_count: int | None = None,
        retry_delay: float | None = None,
    ) -> str | None:
        """
        Acquire a single lock.

        Returns:
            lock_token (str) if successful, None if still held after all retries
        """
        retries = self._retry_count if retry_count is None else retry_count
        delay = self._retry_delay if retry_delay is None else retry_delay

        for i in range(retries + 1):
            token = await self._storage.acquire_lock(lock_key, self._ttl)
            if token:
                logger.debug(f"Acquired {lock_key} (token: {token[:8]}...)")
                return token

            if i < retries:
                logger.debug(f"{lock_key} held, retrying in {delay}s...")
                await asyncio.sleep(delay)

        logger.warning(f"Failed to acquire {lock_key} after {retries} retries")
        return None

    async def release(self, lock_key: str, lock_token: str) -> bool:
        """
        Release a previously acquired lock.

        Returns:
            True if released, False if not found or token mismatch
        """
        result = await self._storage.release_lock(lock_key, lock_token)
        if result:
            logger.debug(f"Released {lock_key}")
        return result

    @asynccontextmanager
    async def hold(self, *lock_keys: str) -> AsyncIterator[None]:
        """
        Hold several locks for the duration of the block.

        Keys are de-duplicated and taken in sorted order so two callers
        locking the same accounts cannot wait on each other forever.

        Raises:
            StorageUnavailableError: If any lock stays busy after all retries
        """
        held: list[tuple[str, str]] = []
        try:
            for lock_key in sorted(set(lock_keys)):
                token = await self.acquire(lock_key)
                if token is None:
                    raise StorageUnavailableError(
                        "Account is busy (locked by another operation). Please retry.",
                        {"lock": lock_key},
                    )
                held.append((lock_key, token))
            yield
        finally:
            for lock_key, token in reversed(held):
                await self.release(lock_key, token)
