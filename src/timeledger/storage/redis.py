"""
Redis Storage Backend.

Shared storage for ledgers served by more than one process. Batch commits
use WATCH/MULTI/EXEC, so either every account, entry and idempotency
document in a batch is written or none is.
"""

from __future__ import annotations

import json
import os
import uuid
from decimal import Decimal
from typing import Any

from timeledger.core.exceptions import StorageConflictError, StorageUnavailableError
from timeledger.storage.base import (
    StorageBackend,
    WriteOperation,
    matches_filters,
    order_records,
    register_storage_backend,
    stored_version,
    version_matches,
)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"

RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisStorage(StorageBackend):
    """
    Redis storage backend for deployments where several processes share one ledger.

    Documents are JSON strings under ``{prefix}:{collection}:{key}``; each
    collection keeps a set of its keys so queries can enumerate it.
    Requires: pip install "timeledger[redis]"
    """

    def __init__(
        self,
        redis_url: str | None = None,
        prefix: str = "timeledger",
    ) -> None:
        """
        Args:
            redis_url: Connection URL; falls back to TIMELEDGER_REDIS_URL, then localhost
            prefix: Namespace for every key this backend writes
        """
        self._redis_url = redis_url or os.environ.get("TIMELEDGER_REDIS_URL") or DEFAULT_REDIS_URL
        self._prefix = prefix
        self._client = None
        self._release_script = None

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(self._redis_url, decode_responses=True)
            self._release_script = self._client.register_script(RELEASE_LOCK_SCRIPT)
        return self._client

    def _make_key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:{collection}:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self._prefix}:locks:{key}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:_index"

    @staticmethod
    def _decode(raw: str | None) -> dict[str, Any] | None:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        # Counters written by atomic_add are bare numbers
        return data if isinstance(data, dict) else {"value": raw}

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        async with self._get_client().pipeline(transaction=True) as pipe:
            pipe.set(self._make_key(collection, key), json.dumps(data))
            pipe.sadd(self._index_key(collection), key)
            await pipe.execute()

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        return self._decode(await self._get_client().get(self._make_key(collection, key)))

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        async with self._get_client().pipeline(transaction=True) as pipe:
            pipe.delete(self._make_key(collection, key))
            pipe.srem(self._index_key(collection), key)
            deleted, _ = await pipe.execute()
        return deleted > 0

    async def atomic_add(
        self,
        collection: str,
        key: str,
        amount: str,
    ) -> str:
        """INCRBY for whole amounts (journal sequence numbers), INCRBYFLOAT otherwise."""
        client = self._get_client()
        redis_key = self._make_key(collection, key)

        delta = Decimal(amount)
        if delta == delta.to_integral_value():
            new_val = await client.incrby(redis_key, int(delta))
        else:
            new_val = await client.incrbyfloat(redis_key, float(delta))

        await client.sadd(self._index_key(collection), key)
        return str(new_val)

    async def commit(self, operations: list[WriteOperation]) -> None:
        """Apply the batch inside a WATCH/MULTI/EXEC transaction."""
        from redis.exceptions import RedisError, WatchError

        if not operations:
            return

        client = self._get_client()
        watched = [self._make_key(op.collection, op.key) for op in operations]

        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(*watched)

                for op, redis_key in zip(operations, watched):
                    if op.expected_version is None:
                        continue
                    current = self._decode(await pipe.get(redis_key))
                    if not version_matches(current, op.expected_version):
                        raise StorageConflictError(
                            op.collection, op.key, op.expected_version, stored_version(current)
                        )

                pipe.multi()
                for op, redis_key in zip(operations, watched):
                    pipe.set(redis_key, json.dumps(op.data))
                    pipe.sadd(self._index_key(op.collection), op.key)
                await pipe.execute()
        except WatchError as e:
            raise StorageUnavailableError(
                "Concurrent modification detected, nothing was committed",
                {"keys": [f"{op.collection}/{op.key}" for op in operations]},
            ) from e
        except RedisError as e:
            raise StorageUnavailableError(f"Redis commit failed: {e}") from e

    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        """SET NX with an expiry; the value is the caller's ownership token."""
        token = uuid.uuid4().hex
        acquired = await self._get_client().set(self._lock_key(key), token, nx=True, ex=ttl)
        return token if acquired else None

    async def release_lock(
        self,
        key: str,
        token: str,
    ) -> bool:
        """Delete the lock only while ``token`` still owns it."""
        self._get_client()
        released = await self._release_script(keys=[self._lock_key(key)], args=[token])
        return int(released) == 1

    async def _load_all(self, collection: str) -> list[dict[str, Any]]:
        """Every document in a collection, fetched with one MGET."""
        client = self._get_client()
        keys = sorted(await client.smembers(self._index_key(collection)))
        if not keys:
            return []

        raw = await client.mget([self._make_key(collection, k) for k in keys])
        documents = []
        for key, value in zip(keys, raw):
            data = self._decode(value)
            # Index entries can outlive their document after a partial delete
            if data is not None:
                data["_key"] = key
                documents.append(data)
        return documents

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        matching = [d for d in await self._load_all(collection) if matches_filters(d, filters)]
        ordered = order_records(matching, order_by, descending)[offset:]
        return ordered if limit is None else ordered[:limit]

    async def update(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> bool:
        """Merge ``data`` into an existing document; False when there is none."""
        existing = await self.get(collection, key)
        if existing is None:
            return False
        await self.save(collection, key, {**existing, **data})
        return True

    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        if filters:
            return len(await self.query(collection, filters))
        return await self._get_client().scard(self._index_key(collection))

    async def clear(self, collection: str) -> int:
        client = self._get_client()
        index_key = self._index_key(collection)
        keys = await client.smembers(index_key)
        if keys:
            await client.delete(*(self._make_key(collection, k) for k in keys), index_key)
        return len(keys)

    async def health_check(self) -> bool:
        """Ping the server; False when it cannot be reached."""
        from redis.exceptions import RedisError

        try:
            return bool(await self._get_client().ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Register backend
register_storage_backend("redis", RedisStorage)
