"""
Exception hierarchy for the time-credit ledger.

All ledger exceptions inherit from TimeLedgerError and carry a stable
``kind`` so callers can map failures to user-facing messages without
matching on exception classes.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Discriminator for every failure the ledger reports."""

    INVALID_AMOUNT = "InvalidAmount"
    SELF_TRANSFER_NOT_ALLOWED = "SelfTransferNotAllowed"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    ACCOUNT_INACTIVE = "AccountInactive"
    ACCOUNT_EXISTS = "AccountExists"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    ENTRY_NOT_FOUND = "EntryNotFound"
    ENTRY_NOT_CANCELLABLE = "EntryNotCancellable"
    ALREADY_CANCELLED = "AlreadyCancelled"
    REASON_REQUIRED = "ReasonRequired"
    IDEMPOTENCY_CONFLICT = "IdempotencyConflict"
    STORAGE_UNAVAILABLE = "StorageUnavailable"
    STORAGE_CONFLICT = "StorageConflict"
    INVALID_ENTRY = "InvalidEntry"
    CONFIGURATION = "Configuration"


class AmountError(str, Enum):
    """Why an amount failed validation."""

    BELOW_MINIMUM = "BelowMinimum"
    ABOVE_MAXIMUM = "AboveMaximum"
    NOT_A_NUMBER = "NotANumber"


class TimeLedgerError(Exception):
    """
    Base exception for all ledger errors.

    Catch this to handle any ledger-related exception.

    Example:
        >>> try:
        ...     await bank.settle_transfer("alice", "bob", "10.00")
        ... except TimeLedgerError as e:
        ...     print(f"Transfer failed ({e.kind.value}): {e}")
    """

    kind: ErrorKind

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(TimeLedgerError):
    """
    Configuration is missing or invalid.

    Raised when:
    - A fee or limit parameter is out of range
    - An environment variable cannot be parsed
    """

    kind = ErrorKind.CONFIGURATION


class InvalidAmountError(TimeLedgerError):
    """
    Amount is below the minimum, above the maximum, or not a number.

    User-correctable; the message is meant to be shown verbatim.
    """

    kind = ErrorKind.INVALID_AMOUNT

    def __init__(
        self,
        message: str,
        reason: AmountError,
        amount: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.reason = reason
        self.amount = amount

    def __str__(self) -> str:
        return self.message


class SelfTransferNotAllowedError(TimeLedgerError):
    """Sender and recipient are the same account."""

    kind = ErrorKind.SELF_TRANSFER_NOT_ALLOWED

    def __init__(self, account_id: str) -> None:
        super().__init__("You cannot transfer time to yourself", {"account_id": account_id})
        self.account_id = account_id


class AccountError(TimeLedgerError):
    """
    Base for account lookup and state errors.

    Raised when:
    - Account not found
    - Account deactivated
    - Account already opened
    """

    def __init__(
        self,
        message: str,
        account_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.account_id = account_id


class AccountNotFoundError(AccountError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}", account_id)


class AccountInactiveError(AccountError):
    kind = ErrorKind.ACCOUNT_INACTIVE

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account is inactive: {account_id}", account_id)


class AccountExistsError(AccountError):
    kind = ErrorKind.ACCOUNT_EXISTS

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account already exists: {account_id}", account_id)


class InsufficientBalanceError(TimeLedgerError):
    """
    Account does not have enough balance for the debit.

    Raised when:
    - Sender balance is less than transfer amount plus fee
    - An admin withdrawal exceeds the target balance

    The shortfall is always exact at the configured precision.
    """

    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(
        self,
        current_balance: Decimal,
        required_amount: Decimal,
        account_id: str | None = None,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.current_balance = current_balance
        self.required_amount = required_amount
        self.account_id = account_id
        self.shortfall = required_amount - current_balance
        super().__init__(message or f"You need {self.shortfall} more hours", details)

    def __str__(self) -> str:
        return (
            f"{self.message} | "
            f"Balance: {self.current_balance}, Required: {self.required_amount}, "
            f"Shortfall: {self.shortfall}"
        )


class EntryError(TimeLedgerError):
    """Base for admin-operation errors on existing ledger entries."""

    def __init__(
        self,
        message: str,
        entry_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.entry_id = entry_id


class EntryNotFoundError(EntryError):
    kind = ErrorKind.ENTRY_NOT_FOUND

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Ledger entry not found: {entry_id}", entry_id)


class EntryNotCancellableError(EntryError):
    """
    Entry kind or status does not allow reversal.

    Raised when:
    - Entry is pending or disputed
    - Entry is itself a refund
    """

    kind = ErrorKind.ENTRY_NOT_CANCELLABLE


class AlreadyCancelledError(EntryNotCancellableError):
    kind = ErrorKind.ALREADY_CANCELLED

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Ledger entry already cancelled: {entry_id}", entry_id)


class ReasonRequiredError(TimeLedgerError):
    """Admin operations must state a reason."""

    kind = ErrorKind.REASON_REQUIRED

    def __init__(self, action: str) -> None:
        super().__init__(f"A reason is required for {action}", {"action": action})
        self.action = action


class IdempotencyConflictError(TimeLedgerError):
    """
    Idempotency key reused with different parameters.

    Raised when the same key arrives with a different sender, recipient,
    amount or kind than the settlement it was first used for.
    """

    kind = ErrorKind.IDEMPOTENCY_CONFLICT

    def __init__(
        self,
        idempotency_key: str,
        existing_entry_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"Idempotency key already used for a different request: {idempotency_key}",
            details,
        )
        self.idempotency_key = idempotency_key
        self.existing_entry_id = existing_entry_id


class StorageError(TimeLedgerError):
    """Base for infrastructure-level failures. Nothing was committed."""

    kind = ErrorKind.STORAGE_UNAVAILABLE


class StorageUnavailableError(StorageError):
    """
    Storage failed, timed out or stayed locked.

    The atomic commit guarantees no partial state. After a timeout the
    batch may still have been applied in full, so check
    ``details["outcome"]`` before retrying without an idempotency key.
    """

    kind = ErrorKind.STORAGE_UNAVAILABLE


class StorageConflictError(StorageError):
    """A versioned write found a different version than expected."""

    kind = ErrorKind.STORAGE_CONFLICT

    def __init__(
        self,
        collection: str,
        key: str,
        expected_version: int,
        actual_version: int,
    ) -> None:
        super().__init__(
            f"Version conflict on {collection}/{key}",
            {"expected": expected_version, "actual": actual_version},
        )
        self.collection = collection
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidEntryError(TimeLedgerError):
    """Ledger entry is missing required fields or has an unknown kind."""

    kind = ErrorKind.INVALID_ENTRY
