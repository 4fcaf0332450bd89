"""
Abstract Storage Backend for the time-credit ledger.

Provides the pluggable persistence layer for accounts, ledger entries,
idempotency records and locks.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from timeledger.core.exceptions import (
    StorageConflictError,
    StorageUnavailableError,
    TimeLedgerError,
)

logger = logging.getLogger(__name__)

VERSION_FIELD = "version"


@dataclass(frozen=True)
class WriteOperation:
    """
    One document write inside an atomic commit.

    Attributes:
        collection: Collection/table name
        key: Record key
        data: Full document to store
        expected_version: Version the stored document must have before the
            write; 0 means the key must not exist yet, None skips the check
    """

    collection: str
    key: str
    data: dict[str, Any]
    expected_version: int | None = None


def stored_version(data: dict[str, Any] | None) -> int:
    """Version of a stored document; missing documents are version 0."""
    if not data:
        return 0
    return int(data.get(VERSION_FIELD, 0))


def version_matches(current: dict[str, Any] | None, expected_version: int | None) -> bool:
    """Check a stored document against a WriteOperation's expected version."""
    if expected_version is None:
        return True
    if expected_version == 0:
        return current is None
    return current is not None and stored_version(current) == expected_version


def matches_filters(data: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """
    Exact-match filter check.

    A list-valued field matches when it contains the filter value, so
    ``{"parties": "alice"}`` matches ``{"parties": ["alice", "bob"]}``.
    """
    if not filters:
        return True
    for filter_key, filter_value in filters.items():
        value = data.get(filter_key)
        if isinstance(value, list) and not isinstance(filter_value, list):
            if filter_value not in value:
                return False
        elif value != filter_value:
            return False
    return True


def order_records(
    records: list[dict[str, Any]],
    order_by: str | None,
    descending: bool,
) -> list[dict[str, Any]]:
    if order_by is None:
        return records
    return sorted(records, key=lambda r: r.get(order_by) or 0, reverse=descending)


class StorageBackend(ABC):
    """
    Abstract base class for storage backends.

    Provides simple CRUD operations plus the two primitives settlement needs:
    an all-or-nothing versioned ``commit`` and token-owned locks.
    """

    @abstractmethod
    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        """
        Save data to storage.

        Args:
            collection: Collection/table name
            key: Unique key for the record
            data: Data to store (must be JSON-serializable)
        """
        ...

    @abstractmethod
    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        """
        Get data from storage.

        Returns:
            Data dict or None if not found
        """
        ...

    @abstractmethod
    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        """
        Delete data from storage.

        Returns:
            True if deleted, False if not found
        """
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Query data with optional filters.

        Args:
            collection: Collection/table name
            filters: Key-value pairs to filter by (see matches_filters)
            limit: Maximum records to return
            offset: Number of records to skip
            order_by: Field to sort by before offset/limit are applied
            descending: Sort direction

        Returns:
            List of matching records
        """
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> bool:
        """
        Update existing data.

        Returns:
            True if updated, False if not found
        """
        ...

    @abstractmethod
    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        """Count records in collection."""
        ...

    @abstractmethod
    async def clear(self, collection: str) -> int:
        """
        Clear all records from a collection.

        Returns:
            Number of records deleted
        """
        ...

    @abstractmethod
    async def atomic_add(
        self,
        collection: str,
        key: str,
        amount: str,
    ) -> str:
        """
        Atomically add amount to a numeric value stored at key.

        Args:
            amount: Amount to add (as decimal string)

        Returns:
            New total value as string
        """
        ...

    @abstractmethod
    async def commit(self, operations: list[WriteOperation]) -> None:
        """
        Apply a batch of writes atomically.

        Either every operation is applied or none is. Operations with an
        ``expected_version`` are checked against the stored document first.

        Raises:
            StorageConflictError: If a stored version differs from the expected one
            StorageUnavailableError: If the backend cannot complete the batch
        """
        ...

    @abstractmethod
    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        """
        Acquire a lock with an ownership token.

        Returns:
            Unique ownership token if acquired, None if already held
        """
        ...

    @abstractmethod
    async def release_lock(
        self,
        key: str,
        token: str,
    ) -> bool:
        """
        Release a lock if ``token`` still owns it.

        Returns:
            True if released, False if not held or owned by someone else
        """
        ...

    async def health_check(self) -> bool:
        """
        Check if storage is healthy and connected.

        Returns:
            True if healthy
        """
        return True

    async def close(self) -> None:
        """Release backend resources."""
        return None


async def guarded_commit(
    storage: StorageBackend,
    operations: list[WriteOperation],
    timeout: float | None = None,
) -> None:
    """
    Commit a batch, reporting every failure as StorageUnavailableError.

    Conflicts and backend errors leave nothing written, since the backend
    commit is all-or-nothing. A timeout is different: the batch may already
    be in flight and can still be applied after the caller gives up, so only
    a retry that carries an idempotency key is safe.
    """
    try:
        if timeout is None:
            await storage.commit(operations)
        else:
            await asyncio.wait_for(storage.commit(operations), timeout)
    except StorageUnavailableError:
        raise
    except StorageConflictError as e:
        raise StorageUnavailableError(
            "Concurrent modification detected, nothing was committed",
            {"collection": e.collection, "key": e.key},
        ) from e
    except asyncio.TimeoutError as e:
        raise StorageUnavailableError(
            f"Storage commit timed out after {timeout}s, the outcome is unknown",
            {"timeout": timeout, "outcome": "unknown"},
        ) from e
    except TimeLedgerError:
        raise
    except Exception as e:
        logger.exception("Storage commit failed")
        raise StorageUnavailableError(f"Storage commit failed: {e}") from e


# Storage backend registry for dependency injection
_STORAGE_BACKENDS: dict[str, type[StorageBackend]] = {}


def register_storage_backend(name: str, backend_class: type[StorageBackend]) -> None:
    """Register a storage backend by name."""
    _STORAGE_BACKENDS[name] = backend_class


def get_storage_backend(name: str) -> type[StorageBackend] | None:
    """Get a registered storage backend by name."""
    return _STORAGE_BACKENDS.get(name)


def list_storage_backends() -> list[str]:
    """List all registered storage backend names."""
    return list(_STORAGE_BACKENDS.keys())
