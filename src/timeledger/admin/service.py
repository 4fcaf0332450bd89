"""AdminService - reversals, manual adjustments and account status changes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from timeledger.core.events import AdminActionType, AdminAuditEvent, Event, EventType, LedgerEvent
from timeledger.core.exceptions import InsufficientBalanceError, ReasonRequiredError
from timeledger.core.logging import get_logger
from timeledger.core.types import (
    Account,
    AdjustmentResult,
    AmountType,
    ReversalResult,
    utcnow,
)
from timeledger.ledger.ledger import EntryKind, EntryStatus, LedgerEntry, Posting
from timeledger.ledger.lock import account_lock_key, entry_lock_key
from timeledger.settlement.transaction import LedgerTransaction

if TYPE_CHECKING:
    from timeledger.accounts.store import BalanceStore
    from timeledger.core.config import Config
    from timeledger.core.events import EventBus
    from timeledger.fees.policy import FeePolicy
    from timeledger.ledger.ledger import LedgerJournal
    from timeledger.ledger.lock import AccountLockService
    from timeledger.storage.base import StorageBackend


def _require_reason(reason: str | None, action: str) -> str:
    if reason is None or not reason.strip():
        raise ReasonRequiredError(action)
    return reason.strip()


class AdminService:
    """
    Admin-initiated ledger mutations.

    Every operation requires a non-blank reason and publishes an
    AdminAuditEvent once its changes are committed.
    """

    def __init__(
        self,
        config: Config,
        fee_policy: FeePolicy,
        store: BalanceStore,
        journal: LedgerJournal,
        locks: AccountLockService,
        storage: StorageBackend,
        events: EventBus,
    ) -> None:
        self._config = config
        self._fees = fee_policy
        self._store = store
        self._journal = journal
        self._locks = locks
        self._storage = storage
        self._events = events
        self._logger = get_logger("admin")

    def _transaction(self) -> LedgerTransaction:
        return LedgerTransaction(
            self._store, self._journal, self._storage, self._config.storage_timeout
        )

    async def reverse_entry(
        self,
        entry_id: str,
        reason: str,
        refund: bool = True,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> ReversalResult:
        """
        Cancel a completed entry and, optionally, refund its balance effects.

        With ``refund`` the inverse of every posting is applied and recorded
        as a new ``refund`` entry, so the parties end where they were before
        the original entry. Without it only the status changes.

        Args:
            entry_id: Entry to cancel
            reason: Why the entry is cancelled; stored in the admin note
            refund: Apply and record the inverse postings
            acting_admin: Admin performing the action
            ip_address: Origin of the admin request, for the audit trail

        Returns:
            ReversalResult with the cancelled entry and refund entry, if any

        Raises:
            ReasonRequiredError: If the reason is blank
            EntryNotFoundError: If the entry does not exist
            AlreadyCancelledError: If the entry was already cancelled
            EntryNotCancellableError: For refund entries and entries not completed
            StorageUnavailableError: Storage failed or timed out; after a timeout
                the reversal may still have been applied
        """
        reason = _require_reason(reason, "transaction cancellation")
        entry = await self._journal.require(entry_id)
        self._journal.cancellation(entry, reason, acting_admin)

        affected = sorted({p.account_id for p in entry.postings}) if refund else []
        lock_keys = [entry_lock_key(entry_id), *(account_lock_key(a) for a in affected)]

        async with self._locks.hold(*lock_keys):
            # Re-read under the entry lock; a concurrent reversal may have won
            entry = await self._journal.require(entry_id)
            cancelled = self._journal.cancellation(entry, reason, acting_admin)

            async with self._transaction() as tx:
                tx.replace_entry(cancelled, expected_version=entry.version)

                refund_entry = None
                if refund and entry.postings:
                    inverse = tuple(Posting(p.account_id, -p.delta) for p in entry.postings)
                    for posting in inverse:
                        await tx.load(posting.account_id)
                        tx.apply(posting.account_id, posting.delta, adjustment=posting.delta)

                    created_at = utcnow()
                    refund_entry = await tx.append(
                        LedgerEntry(
                            from_account=entry.to_account,
                            to_account=entry.from_account,
                            amount=entry.amount,
                            kind=EntryKind.REFUND,
                            status=EntryStatus.COMPLETED,
                            postings=inverse,
                            note=f"Refund of {entry.id}",
                            admin_note=reason,
                            created_by=acting_admin,
                            metadata={
                                "original_entry_id": entry.id,
                                "refunded_fee": str(entry.fee_amount),
                            },
                            created_at=created_at,
                            approved_at=created_at,
                        )
                    )

                await tx.commit()
                balances = {a: tx.balance(a) for a in affected} if refund_entry else {}

        self._logger.info(
            f"Entry {entry_id} cancelled by {acting_admin}"
            + (f", refunded as {refund_entry.id}" if refund_entry else ", no refund")
        )

        events: list[Event] = []
        if refund_entry is not None:
            events.extend(
                LedgerEvent(
                    type=EventType.BALANCE_CHANGED,
                    account_id=account_id,
                    data={
                        "entry_id": refund_entry.id,
                        "delta": str(refund_entry.delta_for(account_id)),
                        "balance": str(balance),
                    },
                )
                for account_id, balance in balances.items()
            )
        events.append(
            AdminAuditEvent(
                action=AdminActionType.TRANSACTION_CANCEL,
                admin=acting_admin,
                target=entry.from_account,
                reason=reason,
                amount=entry.amount,
                entry_id=entry.id,
                ip_address=ip_address,
                metadata={
                    "refund": refund_entry is not None,
                    "refund_entry_id": refund_entry.id if refund_entry else None,
                    "to_account": entry.to_account,
                },
            )
        )
        await self._events.publish_all(events)

        return ReversalResult(original=cancelled, refund_entry=refund_entry, balances=balances)

    async def deposit_credits(
        self,
        account_id: str,
        amount: AmountType,
        reason: str,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        """
        Add hours to an account.

        Raises:
            ReasonRequiredError: If the reason is blank
            InvalidAmountError: If the amount is not a positive number
            AccountNotFoundError: If the account does not exist
        """
        return await self._adjust(
            AdminActionType.DEPOSIT, account_id, amount, reason, acting_admin, ip_address
        )

    async def withdraw_credits(
        self,
        account_id: str,
        amount: AmountType,
        reason: str,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        """
        Remove hours from an account.

        Raises:
            ReasonRequiredError: If the reason is blank
            InvalidAmountError: If the amount is not a positive number
            AccountNotFoundError: If the account does not exist
            InsufficientBalanceError: If the balance is below the amount
        """
        return await self._adjust(
            AdminActionType.WITHDRAW, account_id, amount, reason, acting_admin, ip_address
        )

    async def _adjust(
        self,
        action: AdminActionType,
        account_id: str,
        amount: AmountType,
        reason: str,
        acting_admin: str,
        ip_address: str | None,
    ) -> AdjustmentResult:
        reason = _require_reason(reason, f"credit {action.value}")
        value = self._fees.ensure_positive(amount)
        platform_id = (await self._store.ensure_platform_account()).id
        deposit = action == AdminActionType.DEPOSIT
        delta = value if deposit else -value

        async with self._locks.hold(account_lock_key(account_id)):
            async with self._transaction() as tx:
                account = await tx.load(account_id)
                if not deposit and account.balance < value:
                    raise InsufficientBalanceError(
                        current_balance=account.balance,
                        required_amount=value,
                        account_id=account_id,
                        message=(
                            f"Cannot withdraw {value} hours, balance is {account.balance} hours"
                        ),
                    )

                tx.apply(account_id, delta, adjustment=delta)
                created_at = utcnow()
                entry = await tx.append(
                    LedgerEntry(
                        from_account=platform_id if deposit else account_id,
                        to_account=account_id if deposit else platform_id,
                        amount=value,
                        kind=EntryKind.ADJUSTMENT,
                        status=EntryStatus.COMPLETED,
                        postings=(Posting(account_id, delta),),
                        note=reason,
                        admin_note=reason,
                        created_by=acting_admin,
                        metadata={"direction": action.value},
                        created_at=created_at,
                        approved_at=created_at,
                    )
                )
                await tx.commit()
                balance = tx.balance(account_id)

        self._logger.info(
            f"Admin {acting_admin} {action.value} {value} hours on {account_id}: {reason}"
        )
        await self._events.publish_all(
            [
                LedgerEvent(
                    type=EventType.BALANCE_CHANGED,
                    account_id=account_id,
                    data={"entry_id": entry.id, "delta": str(delta), "balance": str(balance)},
                ),
                AdminAuditEvent(
                    action=action,
                    admin=acting_admin,
                    target=account_id,
                    reason=reason,
                    amount=value,
                    entry_id=entry.id,
                    ip_address=ip_address,
                ),
            ]
        )
        return AdjustmentResult(entry=entry, account_id=account_id, balance=balance)

    async def set_account_active(
        self,
        account_id: str,
        active: bool,
        reason: str,
        acting_admin: str = "admin",
        ip_address: str | None = None,
    ) -> Account:
        """Activate or suspend an account. Balances are left untouched."""
        action = AdminActionType.USER_ACTIVATE if active else AdminActionType.USER_SUSPEND
        reason = _require_reason(reason, action.value.replace("_", " "))
        account = await self._store.set_active(account_id, active)
        await self._events.publish(
            AdminAuditEvent(
                action=action,
                admin=acting_admin,
                target=account_id,
                reason=reason,
                ip_address=ip_address,
            )
        )
        return account
