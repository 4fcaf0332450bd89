"""
timeledger - A time-credit ledger for community time banks.

Members trade hours of service. Every transfer charges the sender a small
platform fee, every balance change is journaled, and admins can reverse
entries or adjust balances with an audit trail.

Usage:
    >>> from timeledger import TimeBank
    >>>
    >>> async with TimeBank() as bank:
    ...     await bank.open_account("alice")
    ...     await bank.open_account("bob")
    ...     result = await bank.settle_transfer("alice", "bob", "2.50", note="Gardening")
"""

from timeledger.client import TimeBank
from timeledger.core.config import Config
from timeledger.core.events import (
    AdminActionType,
    AdminAuditEvent,
    EventBus,
    EventType,
    LedgerEvent,
)
from timeledger.core.exceptions import (
    AccountExistsError,
    AccountInactiveError,
    AccountNotFoundError,
    AlreadyCancelledError,
    AmountError,
    ConfigurationError,
    EntryNotCancellableError,
    EntryNotFoundError,
    ErrorKind,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidEntryError,
    ReasonRequiredError,
    SelfTransferNotAllowedError,
    StorageUnavailableError,
    TimeLedgerError,
)
from timeledger.core.types import (
    Account,
    AdjustmentResult,
    AmountValidation,
    FeeCalculation,
    FeeStats,
    ReconciliationReport,
    ReversalResult,
    SystemStats,
    TransferResult,
    TransferState,
)
from timeledger.fees import FeePolicy
from timeledger.ledger import EntryKind, EntryStatus, LedgerEntry, Posting

__version__ = "0.1.0"

__all__ = [
    "TimeBank",
    "Config",
    "FeePolicy",
    # Events
    "AdminActionType",
    "AdminAuditEvent",
    "EventBus",
    "EventType",
    "LedgerEvent",
    # Exceptions
    "AccountExistsError",
    "AccountInactiveError",
    "AccountNotFoundError",
    "AlreadyCancelledError",
    "AmountError",
    "ConfigurationError",
    "EntryNotCancellableError",
    "EntryNotFoundError",
    "ErrorKind",
    "IdempotencyConflictError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidEntryError",
    "ReasonRequiredError",
    "SelfTransferNotAllowedError",
    "StorageUnavailableError",
    "TimeLedgerError",
    # Types
    "Account",
    "AdjustmentResult",
    "AmountValidation",
    "FeeCalculation",
    "FeeStats",
    "ReconciliationReport",
    "ReversalResult",
    "SystemStats",
    "TransferResult",
    "TransferState",
    # Ledger
    "EntryKind",
    "EntryStatus",
    "LedgerEntry",
    "Posting",
]
