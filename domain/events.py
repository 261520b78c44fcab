"""
Domain: audit events.

Events are emitted by the services on every state-changing operation so an
external logger (audit channel, log shipper) can record them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .time import require_utc_timestamp


class EventType(str, Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_CLAIMED = "request_claimed"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    REQUEST_CANCELLED = "request_cancelled"
    REQUEST_AUTO_CLOSED = "request_auto_closed"
    STOCK_ADDED = "stock_added"
    STOCK_REMOVED = "stock_removed"
    RESTOCK_CREDITED = "restock_credited"
    WAITLIST_DRAINED = "waitlist_drained"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    event_type: EventType
    occurred_at: datetime
    request_id: Optional[str] = None
    item_id: Optional[int] = None
    supplier_id: Optional[str] = None
    user_id: Optional[str] = None
    quantity: Optional[int] = None
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("occurred_at", self.occurred_at)

    def describe(self) -> str:
        parts = [self.event_type.value]
        if self.request_id:
            parts.append(f"request={self.request_id}")
        if self.item_id is not None:
            parts.append(f"item={self.item_id}")
        if self.supplier_id:
            parts.append(f"supplier={self.supplier_id}")
        if self.user_id:
            parts.append(f"user={self.user_id}")
        if self.quantity is not None:
            parts.append(f"qty={self.quantity}")
        if self.reason:
            parts.append(f"reason={self.reason}")
        return " ".join(parts)
