"""Tests for storage backends."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from timeledger.client import TimeBank
from timeledger.core.exceptions import (
    InvalidAmountError,
    StorageConflictError,
    StorageUnavailableError,
)
from timeledger.storage import get_storage, list_storage_backends
from timeledger.storage.base import WriteOperation, guarded_commit, matches_filters
from timeledger.storage.memory import InMemoryStorage
from timeledger.storage.redis import RedisStorage


class TestInMemoryStorage:
    @pytest.fixture
    def storage(self) -> InMemoryStorage:
        return InMemoryStorage()

    @pytest.mark.asyncio
    async def test_save_and_get_are_copies(self, storage):
        data = {"id": "a", "tags": ["x"]}
        await storage.save("things", "a", data)
        data["tags"].append("y")

        stored = await storage.get("things", "a")
        assert stored == {"id": "a", "tags": ["x"]}

        stored["tags"].append("z")
        assert (await storage.get("things", "a"))["tags"] == ["x"]

    @pytest.mark.asyncio
    async def test_query_orders_and_pages(self, storage):
        for i in (3, 1, 2):
            await storage.save("entries", f"e{i}", {"sequence": i})

        ascending = await storage.query("entries", order_by="sequence")
        assert [r["sequence"] for r in ascending] == [1, 2, 3]

        page = await storage.query("entries", order_by="sequence", descending=True, offset=1, limit=1)
        assert [r["sequence"] for r in page] == [2]

    @pytest.mark.asyncio
    async def test_query_list_membership(self, storage):
        await storage.save("entries", "e1", {"parties": ["alice", "bob"]})
        await storage.save("entries", "e2", {"parties": ["carol", "bob"]})

        results = await storage.query("entries", filters={"parties": "alice"})
        assert [r["_key"] for r in results] == ["e1"]
        assert await storage.count("entries", {"parties": "bob"}) == 2

    @pytest.mark.asyncio
    async def test_atomic_add(self, storage):
        assert await storage.atomic_add("meta", "sequence", "1") == "1"
        assert await storage.atomic_add("meta", "sequence", "1") == "2"
        assert await storage.atomic_add("meta", "total", "0.25") == "0.25"

    @pytest.mark.asyncio
    async def test_commit_applies_all(self, storage):
        await storage.commit(
            [
                WriteOperation("accounts", "a", {"version": 1}, expected_version=0),
                WriteOperation("accounts", "b", {"version": 1}, expected_version=0),
            ]
        )

        assert await storage.count("accounts") == 2

    @pytest.mark.asyncio
    async def test_commit_conflict_applies_nothing(self, storage):
        await storage.save("accounts", "a", {"version": 2, "balance": "5"})

        with pytest.raises(StorageConflictError) as exc_info:
            await storage.commit(
                [
                    WriteOperation("accounts", "b", {"version": 1}, expected_version=0),
                    WriteOperation("accounts", "a", {"version": 2, "balance": "9"}, expected_version=1),
                ]
            )

        assert exc_info.value.actual_version == 2
        assert await storage.get("accounts", "b") is None
        assert (await storage.get("accounts", "a"))["balance"] == "5"

    @pytest.mark.asyncio
    async def test_expected_zero_rejects_existing_key(self, storage):
        await storage.save("accounts", "a", {"balance": "1"})

        with pytest.raises(StorageConflictError):
            await storage.commit([WriteOperation("accounts", "a", {"version": 1}, expected_version=0)])

    @pytest.mark.asyncio
    async def test_unversioned_write_always_applies(self, storage):
        await storage.save("accounts", "a", {"version": 7})
        await storage.commit([WriteOperation("accounts", "a", {"version": 1})])

        assert (await storage.get("accounts", "a"))["version"] == 1

    @pytest.mark.asyncio
    async def test_lock_is_token_owned(self, storage):
        token = await storage.acquire_lock("lock:x", ttl=30)

        assert token is not None
        assert await storage.acquire_lock("lock:x") is None
        assert await storage.release_lock("lock:x", "other") is False
        assert await storage.release_lock("lock:x", token) is True
        assert await storage.acquire_lock("lock:x") is not None

    @pytest.mark.asyncio
    async def test_interleaving_storage_exposes_lost_updates(self, interleaving_storage):
        await interleaving_storage.save("counters", "c", {"n": 0})

        async def unlocked_increment():
            data = await interleaving_storage.get("counters", "c")
            await interleaving_storage.save("counters", "c", {"n": data["n"] + 1})

        await asyncio.gather(unlocked_increment(), unlocked_increment())

        # Both tasks read n=0 before either wrote
        assert (await interleaving_storage.get("counters", "c"))["n"] == 1


class TestRedisStorage:
    @pytest.mark.asyncio
    async def test_save_get_query(self, redis_storage, fake_redis):
        await redis_storage.save("entries", "e1", {"sequence": 2, "parties": ["alice", "bob"]})
        await redis_storage.save("entries", "e2", {"sequence": 1, "parties": ["bob", "carol"]})

        assert (await redis_storage.get("entries", "e1"))["sequence"] == 2
        assert "test:entries:e1" in fake_redis.strings

        ordered = await redis_storage.query("entries", order_by="sequence")
        assert [r["_key"] for r in ordered] == ["e2", "e1"]
        assert await redis_storage.count("entries", {"parties": "alice"}) == 1

    @pytest.mark.asyncio
    async def test_commit_applies_batch_in_one_exec(self, redis_storage, fake_redis):
        await redis_storage.commit(
            [
                WriteOperation("accounts", "a", {"version": 1, "balance": "5"}, expected_version=0),
                WriteOperation("ledger_entries", "e1", {"version": 1}, expected_version=0),
            ]
        )

        assert fake_redis.exec_calls == 1
        assert (await redis_storage.get("accounts", "a"))["balance"] == "5"
        assert await redis_storage.count("ledger_entries") == 1

    @pytest.mark.asyncio
    async def test_commit_version_conflict_applies_nothing(self, redis_storage):
        await redis_storage.save("accounts", "a", {"version": 2, "balance": "5"})

        with pytest.raises(StorageConflictError) as exc_info:
            await redis_storage.commit(
                [
                    WriteOperation("accounts", "b", {"version": 1}, expected_version=0),
                    WriteOperation("accounts", "a", {"version": 2, "balance": "9"}, expected_version=1),
                ]
            )

        assert exc_info.value.actual_version == 2
        assert await redis_storage.get("accounts", "b") is None
        assert (await redis_storage.get("accounts", "a"))["balance"] == "5"

    @pytest.mark.asyncio
    async def test_watched_key_changed_before_exec(self, redis_storage, fake_redis):
        await redis_storage.save("accounts", "a", {"version": 1, "balance": "5"})

        def concurrent_writer():
            fake_redis.strings["test:accounts:a"] = '{"version": 2, "balance": "7"}'
            fake_redis.revisions["test:accounts:a"] += 1

        fake_redis.after_watch = concurrent_writer

        with pytest.raises(StorageUnavailableError, match="Concurrent modification"):
            await redis_storage.commit(
                [WriteOperation("accounts", "a", {"version": 2, "balance": "0"})]
            )

        assert (await redis_storage.get("accounts", "a"))["balance"] == "7"

    @pytest.mark.asyncio
    async def test_sequence_counter(self, redis_storage):
        assert await redis_storage.atomic_add("ledger_meta", "sequence", "1") == "1"
        assert await redis_storage.atomic_add("ledger_meta", "sequence", "1") == "2"
        assert (await redis_storage.get("ledger_meta", "sequence")) == {"value": "2"}

    @pytest.mark.asyncio
    async def test_lock_is_token_owned(self, redis_storage):
        token = await redis_storage.acquire_lock("account:alice", ttl=30)

        assert token is not None
        assert await redis_storage.acquire_lock("account:alice") is None
        assert await redis_storage.release_lock("account:alice", "other") is False
        assert await redis_storage.release_lock("account:alice", token) is True
        assert await redis_storage.acquire_lock("account:alice") is not None

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, redis_storage):
        await redis_storage.save("things", "a", {"n": 1})
        await redis_storage.save("things", "b", {"n": 2})

        assert await redis_storage.delete("things", "a") is True
        assert await redis_storage.delete("things", "a") is False
        assert await redis_storage.clear("things") == 1
        assert await redis_storage.count("things") == 0

    @pytest.mark.asyncio
    async def test_health_check(self, redis_storage):
        assert await redis_storage.health_check() is True

    @pytest.mark.asyncio
    async def test_settlement_end_to_end(self, redis_storage, config):
        bank = TimeBank(config=config, storage=redis_storage)
        await bank.open_account("alice", initial_balance="100")
        await bank.open_account("bob")

        result = await bank.settle_transfer("alice", "bob", "10", idempotency_key="pay-1")
        replay = await bank.settle_transfer("alice", "bob", "10", idempotency_key="pay-1")

        assert result.from_balance == Decimal("89.80")
        assert replay.replayed and replay.entry_id == result.entry_id
        assert await bank.get_balance("platform") == Decimal("0.20")
        for name in ("alice", "bob", "platform"):
            assert (await bank.reconcile_account(name)).consistent


class TestMatchesFilters:
    def test_no_filters_match_everything(self):
        assert matches_filters({"a": 1}, None)

    def test_exact_and_list_values(self):
        record = {"status": "completed", "parties": ["alice", "bob"]}

        assert matches_filters(record, {"status": "completed", "parties": "bob"})
        assert not matches_filters(record, {"parties": "carol"})
        assert not matches_filters(record, {"status": "cancelled"})


class TestGuardedCommit:
    @pytest.mark.asyncio
    async def test_conflict_becomes_unavailable(self):
        storage = InMemoryStorage()
        await storage.save("accounts", "a", {"version": 3})

        with pytest.raises(StorageUnavailableError, match="Concurrent modification"):
            await guarded_commit(
                storage, [WriteOperation("accounts", "a", {"version": 2}, expected_version=1)]
            )

    @pytest.mark.asyncio
    async def test_timeout_becomes_unavailable(self):
        storage = InMemoryStorage()

        async def slow_commit(operations):
            await asyncio.sleep(1)

        storage.commit = slow_commit  # type: ignore[method-assign]

        with pytest.raises(StorageUnavailableError, match="outcome is unknown") as exc_info:
            await guarded_commit(storage, [], timeout=0.01)

        assert exc_info.value.details["outcome"] == "unknown"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_unavailable(self):
        storage = InMemoryStorage()
        storage.commit = AsyncMock(side_effect=ConnectionError("reset"))  # type: ignore[method-assign]

        with pytest.raises(StorageUnavailableError, match="reset"):
            await guarded_commit(storage, [])

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self):
        storage = InMemoryStorage()
        error = InvalidAmountError("bad", reason=None)  # type: ignore[arg-type]
        storage.commit = AsyncMock(side_effect=error)  # type: ignore[method-assign]

        with pytest.raises(InvalidAmountError):
            await guarded_commit(storage, [])


class TestRegistry:
    def test_builtin_backends_registered(self):
        assert {"memory", "redis"} <= set(list_storage_backends())

    def test_get_storage_by_name(self):
        assert isinstance(get_storage("memory"), InMemoryStorage)
        assert isinstance(get_storage("redis", redis_url="redis://localhost:6379/15"), RedisStorage)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            get_storage("sqlite")
