"""Transfer settlement: fee-aware, all-or-nothing credit movements."""

from timeledger.settlement.engine import IDEMPOTENCY_COLLECTION, SettlementEngine
from timeledger.settlement.transaction import LedgerTransaction

__all__ = ["IDEMPOTENCY_COLLECTION", "LedgerTransaction", "SettlementEngine"]
