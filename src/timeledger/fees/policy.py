"""
Fee Policy - transfer fee and limit calculations.

Pure and deterministic: every result depends only on the input amount and
the immutable Config the policy was built from.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from timeledger.core.config import Config
from timeledger.core.exceptions import AmountError, InvalidAmountError
from timeledger.core.types import (
    ZERO,
    AmountType,
    AmountValidation,
    FeeCalculation,
    SufficiencyCheck,
    TransferSummary,
)


def to_decimal(amount: AmountType | None) -> Decimal:
    """
    Convert caller input to a finite Decimal.

    Floats go through ``str`` so 0.1 stays 0.1 rather than its binary expansion.

    Raises:
        InvalidAmountError: For None, booleans, unparsable strings, NaN or infinities
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidAmountError("Please enter a valid number", AmountError.NOT_A_NUMBER, amount)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(
            "Please enter a valid number", AmountError.NOT_A_NUMBER, amount
        ) from None
    if not value.is_finite():
        raise InvalidAmountError("Please enter a valid number", AmountError.NOT_A_NUMBER, amount)
    return value


class FeePolicy:
    """
    Computes transfer fees and validates transfer amounts.

    Example:
        >>> policy = FeePolicy(Config())
        >>> policy.compute_fee("10.00").total_amount
        Decimal('10.20')
    """

    def __init__(self, config: Config) -> None:
        self._config = config

    @property
    def fee_percent(self) -> Decimal:
        return self._config.fee_percent

    @property
    def min_transfer(self) -> Decimal:
        return self._config.min_transfer

    @property
    def max_transfer(self) -> Decimal:
        return self._config.max_transfer

    @property
    def fee_display(self) -> str:
        """Fee as shown to users, e.g. '2%'."""
        return f"{(self.fee_percent * 100).normalize():f}%"

    def quantize(self, value: Decimal) -> Decimal:
        """
        Round half-up to the configured decimal places.

        Raises:
            InvalidAmountError: If the value has more digits than Decimal precision allows
        """
        try:
            return value.quantize(self._config.quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise InvalidAmountError(
                f"Amount {value} is too large", AmountError.ABOVE_MAXIMUM, value
            ) from None

    def format_hours(self, value: AmountType) -> str:
        return str(self.quantize(to_decimal(value)))

    def validate_amount(self, amount: AmountType | None) -> AmountValidation:
        """
        Check an amount against the transfer limits.

        The range check uses the raw amount, before rounding.
        """
        try:
            self.ensure_valid(amount)
        except InvalidAmountError as e:
            return AmountValidation(valid=False, error=e.reason, message=e.message)
        return AmountValidation(valid=True)

    def ensure_valid(self, amount: AmountType | None) -> Decimal:
        """
        Validate and return the amount as a Decimal.

        Raises:
            InvalidAmountError: If the amount is not a number or outside the transfer limits
        """
        value = to_decimal(amount)
        if value < self.min_transfer:
            raise InvalidAmountError(
                f"Minimum transfer amount is {self.min_transfer} hours",
                AmountError.BELOW_MINIMUM,
                amount,
            )
        if value > self.max_transfer:
            raise InvalidAmountError(
                f"Maximum transfer amount is {self.max_transfer} hours",
                AmountError.ABOVE_MAXIMUM,
                amount,
            )
        return value

    def ensure_positive(self, amount: AmountType | None) -> Decimal:
        """
        Quantize an admin adjustment amount, which is not bound by transfer limits.

        Raises:
            InvalidAmountError: If the amount is not a number or rounds to zero or less
        """
        value = self.quantize(to_decimal(amount))
        if value <= 0:
            raise InvalidAmountError("Amount must be positive", AmountError.BELOW_MINIMUM, amount)
        return value

    def compute_fee(self, amount: AmountType) -> FeeCalculation:
        """
        Calculate fee and total debit for a nominal transfer amount.

        Args:
            amount: Nominal amount the recipient should receive

        Returns:
            FeeCalculation with transfer, fee and total amounts
        """
        transfer_amount = self.quantize(to_decimal(amount))
        fee_amount = self.quantize(transfer_amount * self.fee_percent)
        return FeeCalculation(
            transfer_amount=transfer_amount,
            fee_amount=fee_amount,
            total_amount=transfer_amount + fee_amount,
            fee_percent=self.fee_percent,
        )

    def check_sufficiency(self, balance: Decimal, amount: AmountType) -> SufficiencyCheck:
        """Check whether ``balance`` covers ``amount`` plus fee."""
        required = self.compute_fee(amount).total_amount
        sufficient = balance >= required
        shortfall = ZERO if sufficient else self.quantize(required - balance)
        return SufficiencyCheck(sufficient=sufficient, shortfall=shortfall, required=required)

    def summary(self, amount: AmountType) -> TransferSummary:
        calculation = self.compute_fee(amount)
        return TransferSummary(
            transfer_amount=str(calculation.transfer_amount),
            fee_amount=str(calculation.fee_amount),
            total_amount=str(calculation.total_amount),
            fee_percentage=self.fee_display,
        )

    def insufficient_balance_message(self, balance: Decimal, amount: AmountType) -> str:
        calculation = self.compute_fee(amount)
        return (
            f"Insufficient balance. You need {calculation.total_amount} hours "
            f"({calculation.transfer_amount} + {calculation.fee_amount} fee) "
            f"but have {self.format_hours(balance)} hours"
        )
