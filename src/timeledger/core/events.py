"""
Ledger events and the in-process event bus.

The ledger emits notification events (balance changes, received transfers)
and admin audit records. Delivery, retries and read-state belong to the
subscribers; the bus only fans events out after a commit.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from timeledger.core.types import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of ledger notifications."""

    BALANCE_CHANGED = "balance.changed"
    TRANSFER_RECEIVED = "transfer.received"
    ADMIN_ACTION = "admin.action"


class AdminActionType(str, Enum):
    """Admin action types recorded in the audit trail."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSACTION_CANCEL = "transaction_cancel"
    USER_SUSPEND = "user_suspend"
    USER_ACTIVATE = "user_activate"


@dataclass
class LedgerEvent:
    """
    Notification emitted after a successful commit.

    ``data`` holds string-encoded decimals so the payload is JSON-ready.
    """

    type: EventType
    account_id: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "account_id": self.account_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass
class AdminAuditEvent:
    """Structured record of one admin-initiated mutation."""

    action: AdminActionType
    admin: str
    target: str
    reason: str
    amount: Decimal | None = None
    entry_id: str | None = None
    ip_address: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def type(self) -> EventType:
        return EventType.ADMIN_ACTION

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "admin": self.admin,
            "target": self.target,
            "amount": str(self.amount) if self.amount is not None else None,
            "reason": self.reason,
            "entry_id": self.entry_id,
            "ip_address": self.ip_address,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


Event = Union[LedgerEvent, AdminAuditEvent]
EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """
    Fan-out of ledger events to subscribers.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and skipped; it never affects the committed operation
    or the other handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def subscribe(self, handler: EventHandler, event_type: EventType | None = None) -> None:
        """
        Register a handler.

        Args:
            handler: Callable receiving the event
            event_type: Only deliver this type, or None for every event
        """
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: EventHandler, event_type: EventType | None = None) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, event: Event) -> None:
        for handler in [*self._handlers.get(None, []), *self._handlers.get(event.type, [])]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event handler failed for {event.type.value} ({event.id})")

    async def publish_all(self, events: list[Event]) -> None:
        for event in events:
            await self.publish(event)
