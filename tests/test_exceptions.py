"""Unit tests for exceptions module."""

from decimal import Decimal

import pytest

from timeledger.core.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    AlreadyCancelledError,
    AmountError,
    EntryNotCancellableError,
    ErrorKind,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    ReasonRequiredError,
    SelfTransferNotAllowedError,
    StorageConflictError,
    StorageError,
    StorageUnavailableError,
    TimeLedgerError,
)


class TestTimeLedgerError:
    """Tests for base exception."""

    def test_basic_error(self) -> None:
        error = StorageUnavailableError("Storage went away")

        assert str(error) == "Storage went away"
        assert error.message == "Storage went away"
        assert error.details == {}

    def test_error_with_details(self) -> None:
        error = StorageUnavailableError("Commit failed", {"key": "alice"})

        assert "Commit failed" in str(error)
        assert "Details:" in str(error)
        assert error.details["key"] == "alice"

    def test_is_catchable_as_base_type(self) -> None:
        with pytest.raises(TimeLedgerError) as exc_info:
            raise AccountNotFoundError("ghost")

        assert exc_info.value.kind == ErrorKind.ACCOUNT_NOT_FOUND
        assert exc_info.value.account_id == "ghost"


class TestErrorKinds:
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (InvalidAmountError("bad", AmountError.NOT_A_NUMBER), ErrorKind.INVALID_AMOUNT),
            (SelfTransferNotAllowedError("alice"), ErrorKind.SELF_TRANSFER_NOT_ALLOWED),
            (AccountInactiveError("alice"), ErrorKind.ACCOUNT_INACTIVE),
            (AlreadyCancelledError("e-1"), ErrorKind.ALREADY_CANCELLED),
            (ReasonRequiredError("deposit"), ErrorKind.REASON_REQUIRED),
            (IdempotencyConflictError("key-1"), ErrorKind.IDEMPOTENCY_CONFLICT),
            (StorageConflictError("accounts", "alice", 1, 2), ErrorKind.STORAGE_CONFLICT),
        ],
    )
    def test_kind(self, error, kind) -> None:
        assert error.kind == kind


class TestInvalidAmountError:
    def test_message_shown_verbatim(self) -> None:
        error = InvalidAmountError(
            "Minimum transfer amount is 0.01 hours", AmountError.BELOW_MINIMUM, "0.001"
        )

        assert str(error) == "Minimum transfer amount is 0.01 hours"
        assert error.reason == AmountError.BELOW_MINIMUM
        assert error.amount == "0.001"


class TestInsufficientBalanceError:
    def test_shortfall_and_message(self) -> None:
        error = InsufficientBalanceError(
            current_balance=Decimal("5.00"),
            required_amount=Decimal("10.20"),
            account_id="bob",
        )

        assert error.shortfall == Decimal("5.20")
        assert error.message == "You need 5.20 more hours"
        assert "Balance: 5.00" in str(error)
        assert "Shortfall: 5.20" in str(error)

    def test_custom_message(self) -> None:
        error = InsufficientBalanceError(Decimal("1"), Decimal("3"), message="Not enough")

        assert error.message == "Not enough"
        assert error.shortfall == Decimal("2")


class TestHierarchy:
    def test_already_cancelled_is_not_cancellable(self) -> None:
        assert issubclass(AlreadyCancelledError, EntryNotCancellableError)

    def test_storage_errors_share_base(self) -> None:
        assert issubclass(StorageUnavailableError, StorageError)
        assert issubclass(StorageConflictError, StorageError)

    def test_self_transfer_message(self) -> None:
        assert str(SelfTransferNotAllowedError("alice")).startswith(
            "You cannot transfer time to yourself"
        )
