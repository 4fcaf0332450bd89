"""Account balances."""

from timeledger.accounts.store import BalanceStore

__all__ = ["BalanceStore"]
