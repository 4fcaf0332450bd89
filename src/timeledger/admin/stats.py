"""
Ledger statistics for the admin dashboard.

Everything here is derived from the stored accounts and journal on each
call; nothing is cached or written.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from timeledger.core.types import ZERO, DailyFee, FeeStats, SystemStats, utcnow
from timeledger.ledger.ledger import EntryKind, EntryStatus

if TYPE_CHECKING:
    from timeledger.accounts.store import BalanceStore
    from timeledger.fees.policy import FeePolicy
    from timeledger.ledger.ledger import LedgerEntry, LedgerJournal

DAILY_FEE_DAYS = 30


class LedgerStatistics:
    """System-wide and fee statistics."""

    def __init__(
        self,
        store: BalanceStore,
        journal: LedgerJournal,
        fee_policy: FeePolicy,
    ) -> None:
        self._store = store
        self._journal = journal
        self._fees = fee_policy

    async def system_stats(self) -> SystemStats:
        """
        Account and circulation totals.

        The platform account is reported separately and excluded from the
        per-user figures.
        """
        accounts = await self._store.list_accounts()
        users = [a for a in accounts if not a.is_platform]
        platform = next((a for a in accounts if a.is_platform), None)

        total_balance = sum((a.balance for a in users), ZERO)
        average = self._fees.quantize(total_balance / len(users)) if users else ZERO

        settled = await self._journal.query(status=EntryStatus.COMPLETED, limit=None)
        circulated = sum((e.amount for e in settled if e.kind.carries_fee), ZERO)

        return SystemStats(
            total_accounts=len(users),
            active_accounts=sum(1 for a in users if a.is_active),
            total_entries=await self._journal.count(),
            total_hours_circulated=circulated,
            avg_account_balance=average,
            total_system_balance=total_balance,
            platform_balance=platform.balance if platform else ZERO,
        )

    async def fee_stats(self, now: datetime | None = None) -> FeeStats:
        """
        Fees collected overall and per period.

        Fees returned by a refund are not counted. The week starts at
        midnight seven days ago and the month on its first day, both UTC.
        ``daily`` lists the most recent days first.
        """
        now = now or utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = today - timedelta(days=7)
        month_start = today.replace(day=1)

        entries = await self._journal.query(limit=None, descending=True)
        refunded = {
            e.metadata.get("original_entry_id") for e in entries if e.kind == EntryKind.REFUND
        }
        fee_entries = [e for e in entries if self._collected_fee(e) and e.id not in refunded]

        total = sum((e.fee_amount for e in fee_entries), ZERO)
        by_day: dict[str, list[Decimal]] = defaultdict(list)
        for entry in fee_entries:
            by_day[entry.created_at.date().isoformat()].append(entry.fee_amount)

        daily = [
            DailyFee(date=day, total_fees=sum(fees, ZERO), transaction_count=len(fees))
            for day, fees in sorted(by_day.items(), reverse=True)
        ][:DAILY_FEE_DAYS]

        return FeeStats(
            total_fees_collected=total,
            fees_today=self._since(fee_entries, today),
            fees_this_week=self._since(fee_entries, week_start),
            fees_this_month=self._since(fee_entries, month_start),
            fee_transaction_count=len(fee_entries),
            average_fee=self._fees.quantize(total / len(fee_entries)) if fee_entries else ZERO,
            daily=daily,
        )

    @staticmethod
    def _collected_fee(entry: LedgerEntry) -> bool:
        return entry.kind.carries_fee and entry.fee_amount > 0

    @staticmethod
    def _since(entries: list[LedgerEntry], start: datetime) -> Decimal:
        return sum((e.fee_amount for e in entries if e.created_at >= start), ZERO)
