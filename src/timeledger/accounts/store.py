"""
Balance Store - authoritative account balances.

Every balance read and write goes through this store. Writes are
version-checked so a write computed from a stale read can never land.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import TYPE_CHECKING

from timeledger.core.exceptions import AccountExistsError, AccountNotFoundError, StorageConflictError
from timeledger.core.types import ZERO, Account, utcnow
from timeledger.ledger.lock import account_lock_key
from timeledger.storage.base import WriteOperation, guarded_commit

if TYPE_CHECKING:
    from timeledger.ledger.lock import AccountLockService
    from timeledger.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class BalanceStore:
    """
    Account balances and counters on a StorageBackend.

    No caching: every read returns the stored value.
    """

    COLLECTION = "accounts"

    def __init__(
        self,
        storage: StorageBackend,
        locks: AccountLockService,
        starting_balance: Decimal = Decimal("10"),
        platform_account_id: str = "platform",
        commit_timeout: float | None = None,
    ) -> None:
        self._storage = storage
        self._locks = locks
        self._starting_balance = starting_balance
        self._commit_timeout = commit_timeout
        self.platform_account_id = platform_account_id

    def write_operation(self, account: Account, expected_version: int) -> WriteOperation:
        return WriteOperation(self.COLLECTION, account.id, account.to_dict(), expected_version)

    async def open_account(
        self,
        account_id: str,
        initial_balance: Decimal | None = None,
        is_platform: bool = False,
    ) -> Account:
        """
        Open a new account seeded with the starting balance.

        Raises:
            AccountExistsError: If the id is taken
        """
        if not account_id:
            raise ValueError("account_id is required")
        initial = self._starting_balance if initial_balance is None else initial_balance
        account = Account(
            id=account_id,
            balance=initial,
            initial_balance=initial,
            is_platform=is_platform,
            version=1,
        )
        try:
            await self._storage.commit([self.write_operation(account, expected_version=0)])
        except StorageConflictError:
            raise AccountExistsError(account_id) from None
        logger.info(f"Opened account {account_id} with balance {initial}")
        return account

    async def ensure_platform_account(self) -> Account:
        """Get the platform account, opening it with a zero balance if needed."""
        account = await self.find_account(self.platform_account_id)
        if account is not None:
            return account
        try:
            return await self.open_account(self.platform_account_id, ZERO, is_platform=True)
        except AccountExistsError:
            return await self.get_account(self.platform_account_id)

    async def find_account(self, account_id: str) -> Account | None:
        data = await self._storage.get(self.COLLECTION, account_id)
        if not data:
            return None
        return Account.from_dict(data)

    async def get_account(self, account_id: str) -> Account:
        """
        Raises:
            AccountNotFoundError: If the account does not exist
        """
        account = await self.find_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def get_balance(self, account_id: str) -> Decimal:
        return (await self.get_account(account_id)).balance

    async def apply_delta(
        self,
        account_id: str,
        delta: Decimal,
        *,
        given: Decimal = ZERO,
        received: Decimal = ZERO,
        fees_paid: Decimal = ZERO,
        adjustment: Decimal = ZERO,
    ) -> Account:
        """
        Add ``delta`` to one account's balance and advance its counters.

        Serialized per account: the read and the versioned write happen
        under the account lock, so concurrent deltas never lose an update.
        """
        async with self._locks.hold(account_lock_key(account_id)):
            account = await self.get_account(account_id)
            updated = account.apply(
                delta, given=given, received=received, fees_paid=fees_paid, adjustment=adjustment
            )
            await guarded_commit(
                self._storage,
                [self.write_operation(updated, expected_version=account.version)],
                self._commit_timeout,
            )
        return updated

    async def set_active(self, account_id: str, active: bool) -> Account:
        async with self._locks.hold(account_lock_key(account_id)):
            account = await self.get_account(account_id)
            if account.is_active == active:
                return account
            updated = replace(
                account, is_active=active, version=account.version + 1, updated_at=utcnow()
            )
            await guarded_commit(
                self._storage,
                [self.write_operation(updated, expected_version=account.version)],
                self._commit_timeout,
            )
        logger.info(f"Account {account_id} {'activated' if active else 'deactivated'}")
        return updated

    async def list_accounts(self) -> list[Account]:
        raw = await self._storage.query(self.COLLECTION, order_by="created_at")
        return [Account.from_dict(d) for d in raw]
