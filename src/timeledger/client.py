"""TimeBank - Main entry point for the time-credit ledger."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from timeledger.accounts.store import BalanceStore
from timeledger.admin.service import AdminService
from timeledger.admin.stats import LedgerStatistics
from timeledger.core.config import Config
from timeledger.core.events import EventBus, EventHandler, EventType
from timeledger.core.logging import configure_logging, get_logger
from timeledger.core.types import (
    Account,
    AdjustmentResult,
    AmountType,
    AmountValidation,
    FeeCalculation,
    FeeStats,
    ReconciliationReport,
    ReversalResult,
    SystemStats,
    TransferResult,
    TransferSummary,
)
from timeledger.fees.policy import FeePolicy, to_decimal
from timeledger.ledger.ledger import AccountHistory, LedgerEntry, LedgerJournal
from timeledger.ledger.lock import AccountLockService
from timeledger.resilience.retry import execute_with_retry
from timeledger.settlement.engine import SettlementEngine
from timeledger.storage import StorageBackend, get_storage


class TimeBank:
    """
    Main client for the time-credit ledger.

    Wires the fee policy, balance store, journal, settlement and admin
    engines onto one storage backend. All mutating operations are async.

    Example:
        >>> async with TimeBank() as bank:
        ...     await bank.open_account("alice", initial_balance="100")
        ...     await bank.open_account("bob")
        ...     result = await bank.settle_transfer("alice", "bob", "10.00")
        ...     result.from_balance
        Decimal('89.80')
    """

    def __init__(
        self,
        config: Config | None = None,
        storage: StorageBackend | None = None,
        log_level: int | str | None = None,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            config: Ledger configuration (default: Config.from_env())
            storage: Storage backend (default: built from config.storage_backend)
            log_level: Logging level, overriding config.log_level
        """
        self._config = config or Config.from_env()

        configure_logging(
            level=log_level or self._config.log_level,
            json_format=self._config.log_json,
        )
        self._logger = get_logger("client")

        if storage is None:
            kwargs: dict[str, Any] = {}
            if self._config.storage_backend == "redis":
                kwargs["redis_url"] = self._config.redis_url
            storage = get_storage(self._config.storage_backend, **kwargs)
        self._storage = storage

        self._events = EventBus()
        self._fees = FeePolicy(self._config)
        self._locks = AccountLockService(
            self._storage,
            ttl=self._config.lock_ttl,
            retry_count=self._config.lock_retry_count,
            retry_delay=self._config.lock_retry_delay,
        )
        self._store = BalanceStore(
            self._storage,
            self._locks,
            starting_balance=self._config.starting_balance,
            platform_account_id=self._config.platform_account_id,
            commit_timeout=self._config.storage_timeout,
        )
        self._journal = LedgerJournal(self._storage)

        components = (
            self._config,
            self._fees,
            self._store,
            self._journal,
            self._locks,
            self._storage,
            self._events,
        )
        self._settlement = SettlementEngine(*components)
        self._admin = AdminService(*components)
        self._stats = LedgerStatistics(self._store, self._journal, self._fees)

        self._logger.info(
            f"TimeBank ready (storage: {type(self._storage).__name__}, "
            f"fee: {self._fees.fee_display})"
        )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def fees(self) -> FeePolicy:
        return self._fees

    @property
    def balances(self) -> BalanceStore:
        return self._store

    @property
    def journal(self) -> LedgerJournal:
        return self._journal

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    async def __aenter__(self) -> TimeBank:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._storage.close()

    def on(self, handler: EventHandler, event_type: EventType | None = None) -> None:
        """Subscribe to ledger events (all types when event_type is None)."""
        self._events.subscribe(handler, event_type)

    # -- Accounts ----------------------------------------------------------

    async def open_account(
        self,
        account_id: str,
        initial_balance: AmountType | None = None,
    ) -> Account:
        """Open an account; the configured starting balance applies when none is given."""
        initial = None if initial_balance is None else self._fees.quantize(to_decimal(initial_balance))
        return await self._store.open_account(account_id, initial)

    async def get_account(self, account_id: str) -> Account:
        return await self._store.get_account(account_id)

    async def get_balance(self, account_id: str) -> Decimal:
        return await self._store.get_balance(account_id)

    def list_for_account(
        self,
        account_id: str,
        descending: bool = True,
        page_size: int = 50,
    ) -> AccountHistory:
        return self._journal.list_for_account(account_id, descending, page_size)

    async def get_entry(self, entry_id: str) -> LedgerEntry | None:
        return await self._journal.get(entry_id)

    async def reconcile_account(self, account_id: str) -> ReconciliationReport:
        """
        Compare an account's stored balance with its counters and the journal.

        A consistent report means the cached balance, the balance implied by
        the given/received/fee/adjustment counters and the sum of every
        journal posting all agree.
        """
        account = await self._store.get_account(account_id)
        journal_balance = await self._journal.replay_balance(account_id, account.initial_balance)
        report = ReconciliationReport(
            account_id=account_id,
            cached_balance=account.balance,
            counter_balance=account.expected_balance,
            journal_balance=journal_balance,
        )
        if not report.consistent:
            self._logger.warning(
                f"Account {account_id} out of balance: cached {report.cached_balance}, "
                f"counters {report.counter_balance}, journal {report.journal_balance}"
            )
        return report

    # -- Settlement --------------------------------------------------------

    async def settle_transfer(
        self,
        from_account: str,
        to_account: str,
        amount: AmountType,
        note: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> TransferResult:
        """
        Transfer hours between two accounts, charging the sender the fee.

        With an idempotency key, transient storage failures are retried.
        Without one a failure is raised to the caller as is, since after a
        commit timeout the transfer may already have been applied.
        """
        if idempotency_key:
            return await execute_with_retry(
                self._settlement.settle_transfer,
                from_account,
                to_account,
                amount,
                note,
                idempotency_key=idempotency_key,
                attempts=self._config.retry_attempts,
            )
        return await self._settlement.settle_transfer(from_account, to_account, amount, note)

    async def pay_for_service(
        self,
        requester: str,
        provider: str,
        amount: AmountType,
        note: str | None = None,
        *,
        service_request_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransferResult:
        if idempotency_key:
            return await execute_with_retry(
                self._settlement.pay_for_service,
                requester,
                provider,
                amount,
                note,
                service_request_id=service_request_id,
                idempotency_key=idempotency_key,
                attempts=self._config.retry_attempts,
            )
        return await self._settlement.pay_for_service(
            requester, provider, amount, note, service_request_id=service_request_id
        )

    def compute_fee(self, amount: AmountType) -> FeeCalculation:
        return self._fees.compute_fee(amount)

    def validate_amount(self, amount: AmountType | None) -> AmountValidation:
        return self._fees.validate_amount(amount)

    def transfer_summary(self, amount: AmountType) -> TransferSummary:
        return self._fees.summary(amount)

    # -- Admin -------------------------------------------------------------

    async def deposit_credits(
        self,
        account_id: str,
        amount: AmountType,
        reason: str,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        return await self._admin.deposit_credits(account_id, amount, reason, acting_admin, ip_address)

    async def withdraw_credits(
        self,
        account_id: str,
        amount: AmountType,
        reason: str,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        return await self._admin.withdraw_credits(account_id, amount, reason, acting_admin, ip_address)

    async def reverse_entry(
        self,
        entry_id: str,
        reason: str,
        refund: bool = True,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> ReversalResult:
        return await self._admin.reverse_entry(entry_id, reason, refund, acting_admin, ip_address)

    async def set_account_active(
        self,
        account_id: str,
        active: bool,
        reason: str,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> Account:
        return await self._admin.set_account_active(
            account_id, active, reason, acting_admin, ip_address
        )

    async def get_system_stats(self) -> SystemStats:
        return await self._stats.system_stats()

    async def get_fee_stats(self, now: datetime | None = None) -> FeeStats:
        return await self._stats.fee_stats(now)
