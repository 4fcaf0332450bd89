"""
Ledger Journal - append-only record of balance-affecting events.

Entries are never deleted. A completed entry only ever changes status to
cancelled (with cancelled_at and an admin note); its amounts, parties and
postings are fixed for life.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from timeledger.core.exceptions import (
    AlreadyCancelledError,
    EntryNotCancellableError,
    EntryNotFoundError,
    InvalidEntryError,
    StorageConflictError,
    StorageUnavailableError,
)
from timeledger.core.types import ZERO, parse_dt, utcnow
from timeledger.storage.base import WriteOperation

if TYPE_CHECKING:
    from timeledger.storage.base import StorageBackend


class EntryKind(str, Enum):
    """Kinds of ledger entries."""

    TRANSFER = "transfer"
    SERVICE_PAYMENT = "service_payment"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"

    @property
    def carries_fee(self) -> bool:
        return self in (EntryKind.TRANSFER, EntryKind.SERVICE_PAYMENT)


class EntryStatus(str, Enum):
    """Status of ledger entries."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


@dataclass(frozen=True)
class Posting:
    """Balance change one entry applied to one account."""

    account_id: str
    delta: Decimal

    def to_dict(self) -> dict[str, str]:
        return {"account_id": self.account_id, "delta": str(self.delta)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Posting:
        return cls(account_id=data["account_id"], delta=Decimal(data["delta"]))


@dataclass(frozen=True)
class LedgerEntry:
    """
    A single immutable ledger entry.

    Attributes:
        id: Unique entry ID
        sequence: Creation order, assigned by the journal
        from_account: Sending account (the platform account for deposits)
        to_account: Receiving account (the platform account for withdrawals)
        amount: Nominal amount, fee excluded
        fee_amount: Fee charged on top of amount; zero except for transfers
        kind: transfer, service_payment, adjustment or refund
        status: pending, completed, cancelled or disputed
        postings: Exact balance effect per account
        note: Sender's note
        admin_note: Notes appended by admins
        created_by: Account or admin that initiated the entry
        idempotency_key: Caller-supplied retry key, if any
        metadata: Additional data (original_entry_id, direction, ...)
    """

    from_account: str
    to_account: str
    amount: Decimal
    kind: EntryKind = EntryKind.TRANSFER
    status: EntryStatus = EntryStatus.COMPLETED
    fee_amount: Decimal = ZERO
    postings: tuple[Posting, ...] = ()
    note: str | None = None
    admin_note: str | None = None
    created_by: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = 0
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    approved_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def total_amount(self) -> Decimal:
        return self.amount + self.fee_amount

    @property
    def parties(self) -> list[str]:
        return [self.from_account, self.to_account]

    def delta_for(self, account_id: str) -> Decimal:
        """Net balance effect of this entry on one account."""
        return sum((p.delta for p in self.postings if p.account_id == account_id), ZERO)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "sequence": self.sequence,
            "version": self.version,
            "from_account": self.from_account,
            "to_account": self.to_account,
            "parties": self.parties,
            "amount": str(self.amount),
            "fee_amount": str(self.fee_amount),
            "kind": self.kind.value,
            "status": self.status.value,
            "postings": [p.to_dict() for p in self.postings],
            "note": self.note,
            "admin_note": self.admin_note,
            "created_by": self.created_by,
            "idempotency_key": self.idempotency_key,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        """Create LedgerEntry from dictionary."""
        return cls(
            id=data["id"],
            sequence=data.get("sequence", 0),
            version=data.get("version", 1),
            from_account=data["from_account"],
            to_account=data["to_account"],
            amount=Decimal(str(data["amount"])),
            fee_amount=Decimal(str(data.get("fee_amount", "0"))),
            kind=EntryKind(data["kind"]),
            status=EntryStatus(data["status"]),
            postings=tuple(Posting.from_dict(p) for p in data.get("postings", [])),
            note=data.get("note"),
            admin_note=data.get("admin_note"),
            created_by=data.get("created_by"),
            idempotency_key=data.get("idempotency_key"),
            metadata=data.get("metadata", {}),
            created_at=parse_dt(data.get("created_at")) or utcnow(),
            approved_at=parse_dt(data.get("approved_at")),
            cancelled_at=parse_dt(data.get("cancelled_at")),
        )


class AccountHistory:
    """
    Lazy, restartable view over one account's entries.

    Each ``async for`` starts again from the newest (or oldest) entry and
    fetches one page at a time, so unbounded histories stay cheap.
    """

    def __init__(
        self,
        journal: LedgerJournal,
        account_id: str,
        descending: bool = True,
        page_size: int = 50,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._journal = journal
        self.account_id = account_id
        self.descending = descending
        self.page_size = page_size

    async def page(self, offset: int = 0, limit: int | None = None) -> list[LedgerEntry]:
        return await self._journal.query(
            account_id=self.account_id,
            descending=self.descending,
            limit=limit or self.page_size,
            offset=offset,
        )

    async def collect(self, limit: int | None = None) -> list[LedgerEntry]:
        """Materialize up to ``limit`` entries (all of them when None)."""
        entries: list[LedgerEntry] = []
        async for entry in self:
            entries.append(entry)
            if limit is not None and len(entries) >= limit:
                break
        return entries

    async def _iterate(self) -> AsyncIterator[LedgerEntry]:
        offset = 0
        while True:
            batch = await self.page(offset, self.page_size)
            for entry in batch:
                yield entry
            if len(batch) < self.page_size:
                return
            offset += len(batch)

    def __aiter__(self) -> AsyncIterator[LedgerEntry]:
        return self._iterate()


class LedgerJournal:
    """
    Append-only journal of ledger entries on a StorageBackend.

    Standalone ``append`` and ``mark_cancelled`` write immediately; the
    settlement and admin engines use ``stage`` and ``cancellation`` to put
    the same writes inside one atomic commit with the balance changes.
    """

    COLLECTION = "ledger_entries"
    META_COLLECTION = "ledger_meta"

    def __init__(self, storage: StorageBackend) -> None:
        """
        Initialize journal with storage backend.

        Args:
            storage: The unified storage backend (InMemory, Redis, etc.)
        """
        self._storage = storage

    @staticmethod
    def validate(entry: LedgerEntry) -> None:
        """
        Check required fields.

        Raises:
            InvalidEntryError: If a party is missing, the amount is not
                positive, the kind is unknown or a non-transfer carries a fee
        """
        problems = []
        if not entry.from_account:
            problems.append("from_account is required")
        if not entry.to_account:
            problems.append("to_account is required")
        if not isinstance(entry.amount, Decimal) or not entry.amount.is_finite() or entry.amount <= 0:
            problems.append("amount must be positive")
        if not isinstance(entry.kind, EntryKind):
            problems.append(f"unknown kind: {entry.kind!r}")
        if not isinstance(entry.status, EntryStatus):
            problems.append(f"unknown status: {entry.status!r}")
        if entry.fee_amount < 0:
            problems.append("fee_amount must not be negative")
        elif entry.fee_amount > 0 and isinstance(entry.kind, EntryKind) and not entry.kind.carries_fee:
            problems.append(f"{entry.kind.value} entries carry no fee")
        if problems:
            raise InvalidEntryError("Invalid ledger entry: " + "; ".join(problems), {"id": entry.id})

    async def next_sequence(self) -> int:
        value = await self._storage.atomic_add(self.META_COLLECTION, "sequence", "1")
        return int(Decimal(value))

    async def prepare(self, entry: LedgerEntry) -> LedgerEntry:
        """Validate and assign the next sequence number."""
        self.validate(entry)
        return replace(entry, sequence=await self.next_sequence())

    def stage(self, entry: LedgerEntry, expected_version: int = 0) -> WriteOperation:
        """Write operation for a new (version 0) or updated entry."""
        return WriteOperation(self.COLLECTION, entry.id, entry.to_dict(), expected_version)

    async def append(self, entry: LedgerEntry) -> str:
        """
        Record an entry on its own.

        Args:
            entry: Ledger entry to record

        Returns:
            Entry ID
        """
        prepared = await self.prepare(entry)
        try:
            await self._storage.commit([self.stage(prepared)])
        except StorageConflictError as e:
            raise InvalidEntryError(f"Duplicate ledger entry id: {entry.id}") from e
        return prepared.id

    async def get(self, entry_id: str) -> LedgerEntry | None:
        """
        Get entry by ID.

        Returns:
            LedgerEntry or None if not found
        """
        data = await self._storage.get(self.COLLECTION, entry_id)
        if not data:
            return None
        return LedgerEntry.from_dict(data)

    async def require(self, entry_id: str) -> LedgerEntry:
        entry = await self.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    @staticmethod
    def cancellation(entry: LedgerEntry, reason: str, by: str) -> LedgerEntry:
        """
        The cancelled version of a completed entry.

        Raises:
            AlreadyCancelledError: If the entry is already cancelled
            EntryNotCancellableError: For refunds and entries not completed
        """
        if entry.status == EntryStatus.CANCELLED:
            raise AlreadyCancelledError(entry.id)
        if entry.kind == EntryKind.REFUND:
            raise EntryNotCancellableError("Refund entries cannot be cancelled", entry.id)
        if entry.status != EntryStatus.COMPLETED:
            raise EntryNotCancellableError(
                f"Only completed entries can be cancelled (status: {entry.status.value})",
                entry.id,
            )

        note = f"Cancelled by {by}: {reason}"
        return replace(
            entry,
            status=EntryStatus.CANCELLED,
            cancelled_at=utcnow(),
            admin_note=f"{entry.admin_note}\n{note}" if entry.admin_note else note,
            version=entry.version + 1,
        )

    async def mark_cancelled(self, entry_id: str, reason: str, by: str) -> LedgerEntry:
        """
        Cancel an entry without touching balances.

        Returns:
            The cancelled entry
        """
        entry = await self.require(entry_id)
        cancelled = self.cancellation(entry, reason, by)
        try:
            await self._storage.commit([self.stage(cancelled, expected_version=entry.version)])
        except StorageConflictError as e:
            raise StorageUnavailableError(
                f"Ledger entry {entry_id} changed concurrently, nothing was committed"
            ) from e
        return cancelled

    def list_for_account(
        self,
        account_id: str,
        descending: bool = True,
        page_size: int = 50,
    ) -> AccountHistory:
        """Entries where the account is sender or recipient, newest first by default."""
        return AccountHistory(self, account_id, descending=descending, page_size=page_size)

    async def query(
        self,
        account_id: str | None = None,
        kind: EntryKind | None = None,
        status: EntryStatus | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        descending: bool = True,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        """
        Query ledger entries ordered by sequence.

        Args:
            account_id: Entries where this account is sender or recipient
            kind: Filter by kind
            status: Filter by status
            from_date: Entries created at or after this time
            to_date: Entries created at or before this time
            descending: Newest first
            limit: Maximum entries to return (None for all)
            offset: Entries to skip

        Returns:
            List of matching entries
        """
        filters: dict[str, Any] = {}
        if account_id:
            filters["parties"] = account_id
        if kind:
            filters["kind"] = kind.value
        if status:
            filters["status"] = status.value

        if from_date or to_date:
            raw = await self._storage.query(
                self.COLLECTION, filters=filters, order_by="sequence", descending=descending
            )
            entries = [
                e
                for e in (LedgerEntry.from_dict(d) for d in raw)
                if (not from_date or e.created_at >= from_date)
                and (not to_date or e.created_at <= to_date)
            ]
            entries = entries[offset:]
            return entries if limit is None else entries[:limit]

        raw = await self._storage.query(
            self.COLLECTION,
            filters=filters,
            limit=limit,
            offset=offset,
            order_by="sequence",
            descending=descending,
        )
        return [LedgerEntry.from_dict(d) for d in raw]

    async def count(self) -> int:
        return await self._storage.count(self.COLLECTION)

    async def replay_balance(self, account_id: str, initial_balance: Decimal = ZERO) -> Decimal:
        """Balance obtained by summing every posting that touched the account."""
        total = initial_balance
        raw = await self._storage.query(self.COLLECTION, order_by="sequence")
        for data in raw:
            for posting in data.get("postings", []):
                if posting["account_id"] == account_id:
                    total += Decimal(posting["delta"])
        return total
