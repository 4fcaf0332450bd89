"""Tests for BalanceStore."""

import asyncio
from decimal import Decimal

import pytest

from timeledger.accounts.store import BalanceStore
from timeledger.core.exceptions import AccountExistsError, AccountNotFoundError
from timeledger.ledger.lock import AccountLockService


@pytest.fixture
def store(memory_storage) -> BalanceStore:
    locks = AccountLockService(memory_storage, retry_count=500, retry_delay=0.001)
    return BalanceStore(memory_storage, locks)


class TestOpenAccount:
    @pytest.mark.asyncio
    async def test_starting_balance(self, store):
        account = await store.open_account("alice")

        assert account.balance == Decimal("10")
        assert account.initial_balance == Decimal("10")
        assert account.version == 1
        assert account.is_active
        assert await store.get_balance("alice") == Decimal("10")

    @pytest.mark.asyncio
    async def test_explicit_initial_balance(self, store):
        await store.open_account("alice", Decimal("100.00"))

        assert await store.get_balance("alice") == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, store):
        await store.open_account("alice", Decimal("5"))

        with pytest.raises(AccountExistsError):
            await store.open_account("alice", Decimal("50"))

        assert await store.get_balance("alice") == Decimal("5")

    @pytest.mark.asyncio
    async def test_missing_account(self, store):
        assert await store.find_account("ghost") is None
        with pytest.raises(AccountNotFoundError):
            await store.get_balance("ghost")

    @pytest.mark.asyncio
    async def test_platform_account_opened_once(self, store):
        first = await store.ensure_platform_account()
        second = await store.ensure_platform_account()

        assert first.id == second.id == "platform"
        assert first.is_platform
        assert first.balance == Decimal("0")
        assert len(await store.list_accounts()) == 1


class TestApplyDelta:
    @pytest.mark.asyncio
    async def test_delta_and_counters(self, store):
        await store.open_account("alice", Decimal("20"))

        account = await store.apply_delta(
            "alice", Decimal("-5.10"), given=Decimal("5.00"), fees_paid=Decimal("0.10")
        )

        assert account.balance == Decimal("14.90")
        assert account.total_given == Decimal("5.00")
        assert account.total_fees_paid == Decimal("0.10")
        assert account.version == 2
        assert account.is_reconciled
        assert await store.get_balance("alice") == Decimal("14.90")

    @pytest.mark.asyncio
    async def test_counters_never_decrease(self, store):
        await store.open_account("alice")

        with pytest.raises(ValueError):
            await store.apply_delta("alice", Decimal("1"), received=Decimal("-1"))

    @pytest.mark.asyncio
    async def test_concurrent_deltas_are_not_lost(self, interleaving_storage):
        locks = AccountLockService(interleaving_storage, retry_count=500, retry_delay=0.001)
        store = BalanceStore(interleaving_storage, locks)
        await store.open_account("alice", Decimal("0"))

        await asyncio.gather(
            *(store.apply_delta("alice", Decimal("1"), adjustment=Decimal("1")) for _ in range(25))
        )

        account = await store.get_account("alice")
        assert account.balance == Decimal("25")
        assert account.total_adjustments == Decimal("25")
        assert account.version == 26

    @pytest.mark.asyncio
    async def test_reads_without_writes_agree(self, store):
        await store.open_account("alice", Decimal("7.25"))

        first = await store.get_balance("alice")
        second = await store.get_balance("alice")

        assert first == second == Decimal("7.25")
        assert await store.get_account("alice") == await store.get_account("alice")


class TestSetActive:
    @pytest.mark.asyncio
    async def test_deactivate_and_reactivate(self, store):
        await store.open_account("alice")

        suspended = await store.set_active("alice", False)
        assert not suspended.is_active
        assert not (await store.get_account("alice")).is_active

        restored = await store.set_active("alice", True)
        assert restored.is_active
        assert restored.balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_no_change_keeps_version(self, store):
        account = await store.open_account("alice")

        assert (await store.set_active("alice", True)).version == account.version
