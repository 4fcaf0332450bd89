"""
Ledger module - the append-only journal of time-credit movements.

Provides the journal on top of the unified StorageBackend and the lock
service that serializes writes per account.
"""

from timeledger.ledger.ledger import (
    AccountHistory,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    LedgerJournal,
    Posting,
)
from timeledger.ledger.lock import AccountLockService, account_lock_key, entry_lock_key

__all__ = [
    "AccountHistory",
    "AccountLockService",
    "EntryKind",
    "EntryStatus",
    "LedgerEntry",
    "LedgerJournal",
    "Posting",
    "account_lock_key",
    "entry_lock_key",
]
