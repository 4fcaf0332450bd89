"""Transfer fee policy."""

from timeledger.fees.policy import FeePolicy, to_decimal

__all__ = ["FeePolicy", "to_decimal"]
