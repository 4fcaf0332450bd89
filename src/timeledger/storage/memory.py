"""
In-Memory Storage Backend.

Default storage backend that keeps all data in memory.
Suitable for development and testing, but not for production.
"""

from __future__ import annotations

import time
import uuid
from copy import deepcopy
from decimal import Decimal, InvalidOperation
from typing import Any

from timeledger.core.exceptions import StorageConflictError
from timeledger.storage.base import (
    StorageBackend,
    WriteOperation,
    matches_filters,
    order_records,
    register_storage_backend,
    stored_version,
    version_matches,
)


class InMemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    Stores all data in Python dicts. Data is lost when process ends.
    Every method body runs without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self._locks: dict[str, tuple[str, float]] = {}

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._data.setdefault(name, {})

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        self._collection(collection)[key] = deepcopy(data)

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        data = self._collection(collection).get(key)
        return None if data is None else deepcopy(data)

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        return self._collection(collection).pop(key, None) is not None

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """Copies of the matching documents, each tagged with its ``_key``."""
        matching = [
            {**deepcopy(data), "_key": key}
            for key, data in self._collection(collection).items()
            if matches_filters(data, filters)
        ]
        ordered = order_records(matching, order_by, descending)[offset:]
        return ordered if limit is None else ordered[:limit]

    async def update(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> bool:
        existing = self._collection(collection).get(key)
        if existing is None:
            return False
        existing.update(deepcopy(data))
        return True

    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        documents = self._collection(collection).values()
        return sum(1 for data in documents if matches_filters(data, filters))

    async def clear(self, collection: str) -> int:
        return len(self._data.pop(collection, {}))

    async def atomic_add(
        self,
        collection: str,
        key: str,
        amount: str,
    ) -> str:
        """Add to a counter document, creating it at zero."""
        coll = self._collection(collection)
        current = coll.get(key, {}).get("value", "0")
        try:
            new_val = Decimal(str(current)) + Decimal(amount)
        except InvalidOperation as e:
            raise ValueError(f"Non-numeric value at {collection}/{key}: {current!r}") from e
        coll[key] = {"value": str(new_val)}
        return str(new_val)

    async def commit(self, operations: list[WriteOperation]) -> None:
        """Check every expected version, then apply the whole batch."""
        for op in operations:
            if op.expected_version is None:
                continue
            current = self._collection(op.collection).get(op.key)
            if not version_matches(current, op.expected_version):
                raise StorageConflictError(
                    op.collection, op.key, op.expected_version, stored_version(current)
                )

        staged = [(op.collection, op.key, deepcopy(op.data)) for op in operations]
        for collection, key, data in staged:
            self._collection(collection)[key] = data

    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        """Acquire lock if free or expired."""
        now = time.monotonic()
        held = self._locks.get(key)
        if held is not None and now < held[1]:
            return None

        token = str(uuid.uuid4())
        self._locks[key] = (token, now + ttl)
        return token

    async def release_lock(
        self,
        key: str,
        token: str,
    ) -> bool:
        """Release lock owned by token."""
        held = self._locks.get(key)
        if held is None or held[0] != token:
            return False
        del self._locks[key]
        return True


# Register as default backend
register_storage_backend("memory", InMemoryStorage)
