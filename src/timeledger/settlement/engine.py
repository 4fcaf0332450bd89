"""SettlementEngine - moves time credits between accounts with the platform fee."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from timeledger.core.events import EventType, LedgerEvent
from timeledger.core.exceptions import (
    AccountInactiveError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    SelfTransferNotAllowedError,
    StorageUnavailableError,
    TimeLedgerError,
)
from timeledger.core.logging import get_logger
from timeledger.core.types import (
    Account,
    AmountType,
    FeeCalculation,
    TransferResult,
    TransferState,
    utcnow,
)
from timeledger.ledger.ledger import EntryKind, EntryStatus, LedgerEntry, Posting
from timeledger.ledger.lock import account_lock_key
from timeledger.settlement.transaction import LedgerTransaction
from timeledger.storage.base import WriteOperation

if TYPE_CHECKING:
    from timeledger.accounts.store import BalanceStore
    from timeledger.core.config import Config
    from timeledger.core.events import EventBus
    from timeledger.fees.policy import FeePolicy
    from timeledger.ledger.ledger import LedgerJournal
    from timeledger.ledger.lock import AccountLockService
    from timeledger.storage.base import StorageBackend


IDEMPOTENCY_COLLECTION = "idempotency_keys"


class SettlementEngine:
    """
    Settles peer transfers and service payments.

    A settlement walks REQUESTED -> VALIDATED -> DEBITED -> CREDITED ->
    COMPLETED. Every validation failure ends in REJECTED before anything is
    staged. Debit, credit, fee and journal entry are staged in one
    LedgerTransaction; if the commit fails the transaction is ROLLED_BACK,
    which only means the staged writes are dropped.
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
        self._logger = get_logger("settlement")

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
        Transfer ``amount`` hours; the sender also pays the fee.

        Args:
            from_account: Sender, debited amount plus fee
            to_account: Recipient, credited the nominal amount
            amount: Nominal amount the recipient receives
            note: Free-text note stored on the entry
            idempotency_key: Repeating a call with the same key returns the
                first result instead of settling twice

        Returns:
            TransferResult with the entry, fee breakdown and new balances

        Raises:
            SelfTransferNotAllowedError: Sender and recipient are the same
            InvalidAmountError: Amount outside the transfer limits or not a number
            AccountNotFoundError: Either party does not exist
            AccountInactiveError: Either party is deactivated
            InsufficientBalanceError: Sender balance below amount plus fee
            IdempotencyConflictError: Key already used for a different request
            StorageUnavailableError: Storage failed or timed out. Never partially
                applied, but after a timeout the transfer may have landed, so
                only retry calls that carry an idempotency key
        """
        return await self._settle(
            EntryKind.TRANSFER, from_account, to_account, amount, note, idempotency_key
        )

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
        """Pay a provider for a completed service; settles exactly like a transfer."""
        metadata = {"service_request_id": service_request_id} if service_request_id else {}
        return await self._settle(
            EntryKind.SERVICE_PAYMENT,
            requester,
            provider,
            amount,
            note,
            idempotency_key,
            metadata,
        )

    async def _settle(
        self,
        kind: EntryKind,
        from_account: str,
        to_account: str,
        amount: AmountType,
        note: str | None,
        idempotency_key: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> TransferResult:
        ref = idempotency_key or uuid.uuid4().hex[:12]
        self._advance(ref, TransferState.REQUESTED, f"{kind.value} {from_account} -> {to_account}")

        try:
            if from_account == to_account:
                raise SelfTransferNotAllowedError(from_account)
            transfer_amount = self._fees.ensure_valid(amount)
            fee = self._fees.compute_fee(transfer_amount)

            if idempotency_key:
                replay = await self._replay(idempotency_key, kind, from_account, to_account, fee)
                if replay is not None:
                    return replay

            for account_id in (from_account, to_account):
                self._require_active(await self._store.get_account(account_id))
        except TimeLedgerError as e:
            self._advance(ref, TransferState.REJECTED, e.kind.value)
            raise

        self._advance(ref, TransferState.VALIDATED, f"total {fee.total_amount}")
        platform_id = (await self._store.ensure_platform_account()).id

        async with self._locks.hold(
            account_lock_key(from_account),
            account_lock_key(to_account),
            account_lock_key(platform_id),
        ):
            if idempotency_key:
                replay = await self._replay(idempotency_key, kind, from_account, to_account, fee)
                if replay is not None:
                    return replay

            async with LedgerTransaction(
                self._store, self._journal, self._storage, self._config.storage_timeout
            ) as tx:
                try:
                    sender = await tx.load(from_account)
                    recipient = await tx.load(to_account)
                    self._require_active(sender)
                    self._require_active(recipient)
                    await tx.load(platform_id)

                    if sender.balance < fee.total_amount:
                        raise InsufficientBalanceError(
                            current_balance=sender.balance,
                            required_amount=fee.total_amount,
                            account_id=from_account,
                        )
                except TimeLedgerError as e:
                    self._advance(ref, TransferState.REJECTED, e.kind.value)
                    raise

                tx.apply(
                    from_account,
                    -fee.total_amount,
                    given=fee.transfer_amount,
                    fees_paid=fee.fee_amount,
                )
                self._advance(ref, TransferState.DEBITED, f"{from_account} -{fee.total_amount}")

                tx.apply(to_account, fee.transfer_amount, received=fee.transfer_amount)
                postings = [
                    Posting(from_account, -fee.total_amount),
                    Posting(to_account, fee.transfer_amount),
                ]
                if fee.fee_amount > 0:
                    tx.apply(platform_id, fee.fee_amount, received=fee.fee_amount)
                    postings.append(Posting(platform_id, fee.fee_amount))
                self._advance(ref, TransferState.CREDITED, f"{to_account} +{fee.transfer_amount}")

                created_at = utcnow()
                entry = await tx.append(
                    LedgerEntry(
                        from_account=from_account,
                        to_account=to_account,
                        amount=fee.transfer_amount,
                        fee_amount=fee.fee_amount,
                        kind=kind,
                        status=EntryStatus.COMPLETED,
                        postings=tuple(postings),
                        note=note,
                        created_by=from_account,
                        idempotency_key=idempotency_key,
                        metadata=dict(metadata or {}),
                        created_at=created_at,
                        approved_at=created_at,
                    )
                )
                if idempotency_key:
                    tx.put(self._idempotency_record(idempotency_key, entry))

                try:
                    await tx.commit()
                except StorageUnavailableError as e:
                    self._advance(ref, TransferState.ROLLED_BACK, str(e))
                    self._logger.warning(
                        f"Settlement {from_account} -> {to_account} not committed: {e.message}"
                    )
                    raise

                result = TransferResult(
                    entry=entry,
                    fee=fee,
                    from_balance=tx.balance(from_account),
                    to_balance=tx.balance(to_account),
                    platform_balance=tx.balance(platform_id),
                )

        self._advance(ref, TransferState.COMPLETED, entry.id)
        self._logger.info(
            f"Settled {kind.value} {entry.id}: {from_account} -> {to_account} "
            f"{fee.transfer_amount} hours (fee {fee.fee_amount})"
        )
        await self._publish(entry, result)
        return result

    def _advance(self, ref: str, state: TransferState, detail: str = "") -> None:
        self._logger.debug(f"[{ref}] {state.value} {detail}".rstrip())

    @staticmethod
    def _require_active(account: Account) -> None:
        if not account.is_active:
            raise AccountInactiveError(account.id)

    @staticmethod
    def _idempotency_record(key: str, entry: LedgerEntry) -> WriteOperation:
        return WriteOperation(
            IDEMPOTENCY_COLLECTION,
            key,
            {
                "key": key,
                "kind": entry.kind.value,
                "from_account": entry.from_account,
                "to_account": entry.to_account,
                "amount": str(entry.amount),
                "entry_id": entry.id,
                "version": 1,
                "created_at": entry.created_at.isoformat(),
            },
            expected_version=0,
        )

    async def _replay(
        self,
        key: str,
        kind: EntryKind,
        from_account: str,
        to_account: str,
        fee: FeeCalculation,
    ) -> TransferResult | None:
        """The stored result for a repeated idempotency key, or None for a new key."""
        record = await self._storage.get(IDEMPOTENCY_COLLECTION, key)
        if not record:
            return None

        requested = {
            "kind": kind.value,
            "from_account": from_account,
            "to_account": to_account,
            "amount": str(fee.transfer_amount),
        }
        stored = {name: record.get(name) for name in requested}
        if stored != requested:
            raise IdempotencyConflictError(
                key,
                existing_entry_id=record.get("entry_id"),
                details={"stored": stored, "requested": requested},
            )

        entry = await self._journal.require(record["entry_id"])
        self._logger.info(f"Idempotent replay of {entry.id} for key {key}")
        return TransferResult(
            entry=entry,
            fee=FeeCalculation(
                transfer_amount=entry.amount,
                fee_amount=entry.fee_amount,
                total_amount=entry.total_amount,
                fee_percent=self._fees.fee_percent,
            ),
            from_balance=await self._store.get_balance(from_account),
            to_balance=await self._store.get_balance(to_account),
            platform_balance=await self._store.get_balance(self._store.platform_account_id),
            replayed=True,
        )

    async def _publish(self, entry: LedgerEntry, result: TransferResult) -> None:
        balances: dict[str, Decimal] = {
            entry.from_account: result.from_balance,
            entry.to_account: result.to_balance,
        }
        if entry.fee_amount > 0:
            balances[self._store.platform_account_id] = result.platform_balance

        events = [
            LedgerEvent(
                type=EventType.BALANCE_CHANGED,
                account_id=account_id,
                data={
                    "entry_id": entry.id,
                    "delta": str(entry.delta_for(account_id)),
                    "balance": str(balance),
                },
            )
            for account_id, balance in balances.items()
        ]
        events.append(
            LedgerEvent(
                type=EventType.TRANSFER_RECEIVED,
                account_id=entry.to_account,
                data={
                    "entry_id": entry.id,
                    "kind": entry.kind.value,
                    "from_account": entry.from_account,
                    "amount": str(entry.amount),
                    "note": entry.note,
                },
            )
        )
        await self._events.publish_all(events)
