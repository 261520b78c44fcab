"""
Domain: suppliers and stock entries.

Stock is tracked per (supplier_id, item_id). Invariants:
- quantity is never negative.
- An entry is created on the first contribution and is never physically
  deleted while quantity can be re-added; it may persist at quantity 0.
- Decrements happen only on request completion (debit) or an explicit
  remove by the supplier; never on claim.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from .time import require_utc_timestamp

StockKey = Tuple[str, int]


class FulfillmentMethod(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


@dataclass(frozen=True, slots=True)
class Supplier:
    supplier_id: str
    away: bool = False


@dataclass(frozen=True, slots=True)
class StockEntry:
    """Quantity of fulfillable units a supplier holds for an item."""

    supplier_id: str
    item_id: int
    quantity: int
    updated_at: datetime
    method: FulfillmentMethod = FulfillmentMethod.MANUAL
    credential_ref: Optional[str] = None  # opaque reference to an encrypted credential

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise ValueError("quantity must be >= 0")
        require_utc_timestamp("updated_at", self.updated_at)

    @property
    def key(self) -> StockKey:
        return (self.supplier_id, self.item_id)

    @property
    def in_stock(self) -> bool:
        return self.quantity > 0

    def with_quantity(self, quantity: int, at: datetime) -> "StockEntry":
        return replace(self, quantity=quantity, updated_at=at)

    def decremented(self, quantity: int, at: datetime) -> Tuple["StockEntry", int]:
        """
        Floor-at-zero decrement.

        Returns the updated entry and the amount actually removed.
        """

        removed = min(max(quantity, 0), self.quantity)
        return self.with_quantity(self.quantity - removed, at), removed
