"""Admin operations: reversals, adjustments, account status and statistics."""

from timeledger.admin.service import AdminService
from timeledger.admin.stats import LedgerStatistics

__all__ = ["AdminService", "LedgerStatistics"]
