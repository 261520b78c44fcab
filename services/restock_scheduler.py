"""
Restock scheduler.

Turns elapsed cooldowns into stock. A completed request enqueues one
RestockQueueEntry scheduled at completion time + the item's cooldown; a
periodic tick credits every due entry back to its (supplier, item) stock.

Invariants:
- tick() is a single atomic store call: due rows are credited and deleted
  together, so a row is never credited twice.
- Ticks never overlap within the process.
- Rows whose stock entry no longer exists are skipped by tick() and removed
  by cleanup() once they are older than the retention horizon.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import DefaultDict, Dict, List, Optional

from domain.restock import RestockCredit, RestockQueueEntry
from repositories.store import Store
from services.clock import Clock, SystemClock
from services.retry import RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)


class RestockScheduler:
    def __init__(
        self,
        store: Store,
        *,
        clock: Optional[Clock] = None,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._retry = retry
        self._tick_lock = asyncio.Lock()

    def build_entry(self, supplier_id: str, item_id: int, delay: timedelta) -> RestockQueueEntry:
        """Build (but do not persist) an entry due after delay."""

        if delay < timedelta(0):
            raise ValueError("delay must be >= 0")
        return RestockQueueEntry(
            entry_id=str(uuid.uuid4()),
            supplier_id=supplier_id,
            item_id=item_id,
            scheduled_at=self._clock.now() + delay,
        )

    async def enqueue(self, supplier_id: str, item_id: int, delay: timedelta) -> RestockQueueEntry:
        entry = self.build_entry(supplier_id, item_id, delay)
        await call_with_retries("enqueue restock", lambda: self._store.insert_restock(entry), self._retry)
        logger.debug(
            "Restock queued for supplier=%s item=%s at %s",
            supplier_id,
            item_id,
            entry.scheduled_at.isoformat(),
        )
        return entry

    async def tick(self, now: Optional[datetime] = None) -> List[RestockCredit]:
        """Credit every due entry; returns one credit per (supplier, item) group."""

        async with self._tick_lock:
            at = now or self._clock.now()
            credits = await call_with_retries(
                "restock tick", lambda: self._store.apply_due_restocks(at), self._retry
            )
        for credit in credits:
            logger.info(
                "Restocked %d unit(s) for supplier=%s item=%s",
                credit.quantity,
                credit.supplier_id,
                credit.item_id,
            )
        return credits

    async def cleanup(self, max_age: timedelta) -> int:
        """Delete orphaned queue rows scheduled before now - max_age. No stock effect."""

        before = self._clock.now() - max_age
        removed = await call_with_retries(
            "restock cleanup", lambda: self._store.delete_orphaned_restocks(before), self._retry
        )
        if removed:
            logger.info("Cleaned up %d orphaned restock row(s)", removed)
        return removed

    async def pending_counts(self) -> Dict[int, int]:
        entries = await call_with_retries("read restocks", lambda: self._store.list_restocks(), self._retry)
        counts: DefaultDict[int, int] = defaultdict(int)
        for entry in entries:
            counts[entry.item_id] += entry.pending_quantity
        return dict(counts)

    async def pending_for(self, supplier_id: str, item_id: int) -> int:
        entries = await call_with_retries(
            "read restocks",
            lambda: self._store.list_restocks(supplier_id=supplier_id, item_id=item_id),
            self._retry,
        )
        return sum(entry.pending_quantity for entry in entries)

    async def next_restock_at(self, supplier_id: str, item_id: int) -> Optional[datetime]:
        entries = await call_with_retries(
            "read restocks",
            lambda: self._store.list_restocks(supplier_id=supplier_id, item_id=item_id),
            self._retry,
        )
        return min((entry.scheduled_at for entry in entries), default=None)
