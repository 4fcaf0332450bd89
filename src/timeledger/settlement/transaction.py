"""
Ledger transaction - stages balance and journal writes for one atomic commit.

Nothing reaches storage until ``commit``. Leaving the ``async with`` block
without committing discards the staged writes, which is the whole of a
rollback: no partially applied state ever exists in storage.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from timeledger.core.types import ZERO, Account
from timeledger.storage.base import WriteOperation, guarded_commit

if TYPE_CHECKING:
    from timeledger.accounts.store import BalanceStore
    from timeledger.ledger.ledger import LedgerEntry, LedgerJournal
    from timeledger.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class LedgerTransaction:
    """
    Unit of work over accounts and ledger entries.

    Example:
        >>> async with LedgerTransaction(store, journal, storage) as tx:
        ...     await tx.load("alice")
        ...     tx.apply("alice", Decimal("-10.20"), given=Decimal("10.00"))
        ...     await tx.append(entry)
        ...     await tx.commit()
    """

    def __init__(
        self,
        store: BalanceStore,
        journal: LedgerJournal,
        storage: StorageBackend,
        timeout: float | None = None,
    ) -> None:
        self._store = store
        self._journal = journal
        self._storage = storage
        self._timeout = timeout
        self._loaded: dict[str, Account] = {}
        self._working: dict[str, Account] = {}
        self._entries: list[tuple[LedgerEntry, int]] = []
        self._extra: list[WriteOperation] = []
        self._committed = False

    async def __aenter__(self) -> LedgerTransaction:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self._committed:
            if self.has_changes:
                logger.debug(f"Discarding {len(self.operations())} staged writes")
            self.rollback()

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def has_changes(self) -> bool:
        return bool(self._entries or self._extra or self._changed_accounts())

    async def load(self, account_id: str) -> Account:
        """Read an account once; later calls return the working copy."""
        if account_id not in self._working:
            account = await self._store.get_account(account_id)
            self._loaded[account_id] = account
            self._working[account_id] = account
        return self._working[account_id]

    def account(self, account_id: str) -> Account:
        return self._working[account_id]

    def balance(self, account_id: str) -> Decimal:
        return self._working[account_id].balance

    def apply(
        self,
        account_id: str,
        delta: Decimal,
        *,
        given: Decimal = ZERO,
        received: Decimal = ZERO,
        fees_paid: Decimal = ZERO,
        adjustment: Decimal = ZERO,
    ) -> Account:
        """Stage a balance change on a loaded account."""
        if account_id not in self._working:
            raise KeyError(f"Account {account_id} was not loaded in this transaction")
        updated = self._working[account_id].apply(
            delta, given=given, received=received, fees_paid=fees_paid, adjustment=adjustment
        )
        self._working[account_id] = updated
        return updated

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Stage a new journal entry; returns it with its sequence number."""
        prepared = await self._journal.prepare(entry)
        self._entries.append((prepared, 0))
        return prepared

    def replace_entry(self, entry: LedgerEntry, expected_version: int) -> None:
        """Stage an update of an existing journal entry."""
        self._journal.validate(entry)
        self._entries.append((entry, expected_version))

    def put(self, operation: WriteOperation) -> None:
        self._extra.append(operation)

    def _changed_accounts(self) -> list[str]:
        return [
            account_id
            for account_id, account in self._working.items()
            if account is not self._loaded[account_id]
        ]

    def operations(self) -> list[WriteOperation]:
        ops = [
            self._store.write_operation(
                self._working[account_id],
                expected_version=self._loaded[account_id].version,
            )
            for account_id in self._changed_accounts()
        ]
        ops.extend(self._journal.stage(entry, version) for entry, version in self._entries)
        ops.extend(self._extra)
        return ops

    async def commit(self) -> None:
        """
        Write every staged change in one batch.

        Raises:
            StorageUnavailableError: If the batch could not be applied; nothing was written
        """
        if self._committed:
            raise RuntimeError("Transaction already committed")
        await guarded_commit(self._storage, self.operations(), self._timeout)
        self._committed = True

    def rollback(self) -> None:
        self._working = dict(self._loaded)
        self._entries.clear()
        self._extra.clear()
