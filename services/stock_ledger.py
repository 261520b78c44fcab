"""
Stock ledger service.

Owns per-(supplier, item) quantities and the aggregate stock per item.

Contract:
- add(): quantity must be a positive whole number; creates the entry if absent.
- remove(): clamps to the current quantity and returns the amount removed;
  fails when the entry does not exist or is already empty.
- debit(): floor-at-zero decrement used by request completion; returns the
  amount actually removed (0 when nothing was left).
- credit(): unconditional add used by the restock scheduler.
- aggregate(): sum of quantities across all suppliers offering the item.

Every mutation is a single atomic store call, so the zero check is re-done at
write time rather than trusting an earlier read. Each mutation carries a fresh
operation id that stays the same across retries, so a retry after a write
committed returns the recorded result instead of applying it twice.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional

from domain.errors import InsufficientStock, InvalidQuantity, NotFound
from domain.events import AuditEvent, EventType
from domain.stock import FulfillmentMethod, StockEntry
from repositories.store import Store
from services.audit import AuditHooks
from services.clock import Clock, SystemClock
from services.retry import RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

MAX_QUANTITY: int = 9999


def _op_id() -> str:
    return str(uuid.uuid4())


def _require_quantity(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not 0 < quantity <= MAX_QUANTITY:
        raise InvalidQuantity(quantity)
    return quantity


class StockLedger:
    def __init__(
        self,
        store: Store,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditHooks] = None,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit = audit or AuditHooks()
        self._retry = retry

    async def add(
        self,
        supplier_id: str,
        item_id: int,
        quantity: int,
        *,
        method: FulfillmentMethod | str = FulfillmentMethod.MANUAL,
        credential_ref: Optional[str] = None,
    ) -> StockEntry:
        quantity = _require_quantity(quantity)
        method = FulfillmentMethod(method)
        now = self._clock.now()
        op_id = _op_id()
        entry = await call_with_retries(
            "add stock",
            lambda: self._store.increment_stock(
                supplier_id,
                item_id,
                quantity,
                now,
                method=method,
                credential_ref=credential_ref,
                op_id=op_id,
            ),
            self._retry,
        )
        await self._audit.emit(
            AuditEvent(
                event_type=EventType.STOCK_ADDED,
                occurred_at=now,
                item_id=item_id,
                supplier_id=supplier_id,
                quantity=quantity,
            )
        )
        return entry

    async def remove(self, supplier_id: str, item_id: int, quantity: int) -> int:
        """Remove up to quantity units; returns the amount actually removed."""

        quantity = _require_quantity(quantity)
        existing = await self.entry(supplier_id, item_id)
        if existing is None:
            raise NotFound("Stock entry", f"{supplier_id}/{item_id}")
        if existing.quantity == 0:
            raise InsufficientStock(supplier_id, item_id, requested=quantity, available=0)

        now = self._clock.now()
        op_id = _op_id()
        result = await call_with_retries(
            "remove stock",
            lambda: self._store.decrement_stock(supplier_id, item_id, quantity, now, op_id=op_id),
            self._retry,
        )
        if result is None:
            raise NotFound("Stock entry", f"{supplier_id}/{item_id}")
        entry, removed = result
        if removed == 0:
            # Emptied by a concurrent debit between the read and the write.
            raise InsufficientStock(supplier_id, item_id, requested=quantity, available=entry.quantity)

        await self._audit.emit(
            AuditEvent(
                event_type=EventType.STOCK_REMOVED,
                occurred_at=now,
                item_id=item_id,
                supplier_id=supplier_id,
                quantity=removed,
            )
        )
        return removed

    async def debit(self, supplier_id: str, item_id: int, quantity: int = 1) -> int:
        quantity = _require_quantity(quantity)
        now = self._clock.now()
        op_id = _op_id()
        result = await call_with_retries(
            "debit stock",
            lambda: self._store.decrement_stock(supplier_id, item_id, quantity, now, op_id=op_id),
            self._retry,
        )
        if result is None:
            return 0
        _, removed = result
        return removed

    async def credit(self, supplier_id: str, item_id: int, quantity: int = 1) -> StockEntry:
        quantity = _require_quantity(quantity)
        now = self._clock.now()
        op_id = _op_id()
        return await call_with_retries(
            "credit stock",
            lambda: self._store.increment_stock(supplier_id, item_id, quantity, now, op_id=op_id),
            self._retry,
        )

    async def aggregate(self, item_id: int) -> int:
        entries = await call_with_retries(
            "read stock", lambda: self._store.list_stock(item_id=item_id), self._retry
        )
        return sum(entry.quantity for entry in entries)

    async def aggregates(self) -> Dict[int, int]:
        """Aggregate stock of every item with a stock entry."""

        entries = await call_with_retries("read stock", lambda: self._store.list_stock(), self._retry)
        totals: Dict[int, int] = {}
        for entry in entries:
            totals[entry.item_id] = totals.get(entry.item_id, 0) + entry.quantity
        return totals

    async def entry(self, supplier_id: str, item_id: int) -> Optional[StockEntry]:
        return await call_with_retries(
            "read stock", lambda: self._store.get_stock(supplier_id, item_id), self._retry
        )

    async def entries_for_item(self, item_id: int) -> List[StockEntry]:
        return await call_with_retries(
            "read stock", lambda: self._store.list_stock(item_id=item_id), self._retry
        )

    async def entries_for_supplier(self, supplier_id: str) -> List[StockEntry]:
        return await call_with_retries(
            "read stock", lambda: self._store.list_stock(supplier_id=supplier_id), self._retry
        )

    async def has_stock(self, supplier_id: str, item_id: int) -> bool:
        entry = await self.entry(supplier_id, item_id)
        return entry is not None and entry.in_stock

    async def set_away(self, supplier_id: str, away: bool = True) -> None:
        await call_with_retries(
            "update supplier", lambda: self._store.set_supplier_away(supplier_id, away), self._retry
        )
        logger.info("Supplier %s is now %s", supplier_id, "away" if away else "active")

    async def is_away(self, supplier_id: str) -> bool:
        supplier = await call_with_retries(
            "read supplier", lambda: self._store.get_supplier(supplier_id), self._retry
        )
        return supplier is not None and supplier.away

    async def available_supplier_count(self) -> int:
        """Distinct suppliers that are not away and hold stock of any item."""

        suppliers = await call_with_retries("read suppliers", self._store.list_suppliers, self._retry)
        away = {supplier.supplier_id for supplier in suppliers if supplier.away}
        entries = await call_with_retries("read stock", lambda: self._store.list_stock(), self._retry)
        return len({entry.supplier_id for entry in entries if entry.in_stock and entry.supplier_id not in away})
