"""
Type definitions for the time-credit ledger.

This module contains the enums, data classes, and type aliases shared by
the fee policy, balance store, settlement and admin components.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeAlias

from timeledger.core.exceptions import AmountError

if TYPE_CHECKING:
    from timeledger.ledger.ledger import LedgerEntry

# Type alias for flexible amount input
AmountType: TypeAlias = Decimal | int | float | str

ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(val: str | datetime | None) -> datetime | None:
    if val is None or isinstance(val, datetime):
        return val
    return datetime.fromisoformat(val)


class TransferState(str, Enum):
    """Settlement state machine. ROLLED_BACK is never visible outside the engine."""

    REQUESTED = "requested"
    VALIDATED = "validated"
    DEBITED = "debited"
    CREDITED = "credited"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class Account:
    """
    A user's time-credit wallet.

    Attributes:
        id: Account identifier
        balance: Current balance, may be negative
        total_given: Nominal amounts sent (fees excluded)
        total_received: Amounts received (fees included for the platform account)
        total_fees_paid: Transfer fees paid as sender
        total_adjustments: Net admin deposits, withdrawals and refunds
        initial_balance: Balance seeded at opening
        is_active: False once deactivated; accounts are never deleted
        is_platform: True for the account that collects fees
        version: Incremented on every write
    """

    id: str
    balance: Decimal = ZERO
    total_given: Decimal = ZERO
    total_received: Decimal = ZERO
    total_fees_paid: Decimal = ZERO
    total_adjustments: Decimal = ZERO
    initial_balance: Decimal = ZERO
    is_active: bool = True
    is_platform: bool = False
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def expected_balance(self) -> Decimal:
        """Balance implied by the counters."""
        return (
            self.initial_balance
            + self.total_received
            - self.total_given
            - self.total_fees_paid
            + self.total_adjustments
        )

    @property
    def is_reconciled(self) -> bool:
        return self.balance == self.expected_balance

    def apply(
        self,
        delta: Decimal,
        *,
        given: Decimal = ZERO,
        received: Decimal = ZERO,
        fees_paid: Decimal = ZERO,
        adjustment: Decimal = ZERO,
    ) -> Account:
        """Return a copy with ``delta`` applied and the counters advanced."""
        if given < 0 or received < 0 or fees_paid < 0:
            raise ValueError("given, received and fees_paid counters never decrease")
        return replace(
            self,
            balance=self.balance + delta,
            total_given=self.total_given + given,
            total_received=self.total_received + received,
            total_fees_paid=self.total_fees_paid + fees_paid,
            total_adjustments=self.total_adjustments + adjustment,
            version=self.version + 1,
            updated_at=utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "balance": str(self.balance),
            "total_given": str(self.total_given),
            "total_received": str(self.total_received),
            "total_fees_paid": str(self.total_fees_paid),
            "total_adjustments": str(self.total_adjustments),
            "initial_balance": str(self.initial_balance),
            "is_active": self.is_active,
            "is_platform": self.is_platform,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Account:
        return cls(
            id=data["id"],
            balance=Decimal(data.get("balance", "0")),
            total_given=Decimal(data.get("total_given", "0")),
            total_received=Decimal(data.get("total_received", "0")),
            total_fees_paid=Decimal(data.get("total_fees_paid", "0")),
            total_adjustments=Decimal(data.get("total_adjustments", "0")),
            initial_balance=Decimal(data.get("initial_balance", "0")),
            is_active=data.get("is_active", True),
            is_platform=data.get("is_platform", False),
            version=data.get("version", 0),
            created_at=parse_dt(data.get("created_at")) or utcnow(),
            updated_at=parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class FeeCalculation:
    """Fee breakdown for a nominal transfer amount."""

    transfer_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    fee_percent: Decimal

    @property
    def fee_percentage(self) -> Decimal:
        """Fee as a percentage, e.g. Decimal('2.00') for a 2% fee."""
        return self.fee_percent * 100


@dataclass(frozen=True)
class AmountValidation:
    valid: bool
    error: AmountError | None = None
    message: str | None = None


@dataclass(frozen=True)
class SufficiencyCheck:
    sufficient: bool
    shortfall: Decimal
    required: Decimal


@dataclass(frozen=True)
class TransferSummary:
    """Display-ready transfer breakdown."""

    transfer_amount: str
    fee_amount: str
    total_amount: str
    fee_percentage: str


@dataclass
class TransferResult:
    """Result of a settled transfer or service payment."""

    entry: LedgerEntry
    fee: FeeCalculation
    from_balance: Decimal
    to_balance: Decimal
    platform_balance: Decimal
    replayed: bool = False

    @property
    def entry_id(self) -> str:
        return self.entry.id


@dataclass
class AdjustmentResult:
    """Result of an admin deposit or withdrawal."""

    entry: LedgerEntry
    account_id: str
    balance: Decimal

    @property
    def entry_id(self) -> str:
        return self.entry.id


@dataclass
class ReversalResult:
    """Result of cancelling a ledger entry."""

    original: LedgerEntry
    refund_entry: LedgerEntry | None
    balances: dict[str, Decimal] = field(default_factory=dict)

    @property
    def refunded(self) -> bool:
        return self.refund_entry is not None


@dataclass(frozen=True)
class ReconciliationReport:
    """Cached balance checked against its counters and the journal."""

    account_id: str
    cached_balance: Decimal
    counter_balance: Decimal
    journal_balance: Decimal

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.counter_balance == self.journal_balance


@dataclass(frozen=True)
class SystemStats:
    total_accounts: int
    active_accounts: int
    total_entries: int
    total_hours_circulated: Decimal
    avg_account_balance: Decimal
    total_system_balance: Decimal
    platform_balance: Decimal


@dataclass(frozen=True)
class DailyFee:
    date: str
    total_fees: Decimal
    transaction_count: int


@dataclass(frozen=True)
class FeeStats:
    total_fees_collected: Decimal
    fees_today: Decimal
    fees_this_week: Decimal
    fees_this_month: Decimal
    fee_transaction_count: int
    average_fee: Decimal
    daily: list[DailyFee] = field(default_factory=list)
