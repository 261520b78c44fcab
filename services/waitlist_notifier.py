"""
Waitlist notifier.

Users join a per-item waitlist when an item is out of stock. When stock comes
back (restock credit, supplier add) the item's waitlist is drained exactly
once: every waiter gets one notification, highest tier first, then earliest
join, and the waitlist rows are deleted in one operation.

Notification delivery is best-effort. Each send is bounded by a timeout; a
failed or timed-out send is logged and the drain moves on. Waiters whose send
failed are still removed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import DefaultDict, Dict, List, Optional

from domain.catalog import Item
from domain.events import AuditEvent, EventType
from domain.waitlist import WaitlistEntry, drain_order
from repositories.store import Store
from services.audit import AuditHooks
from services.catalog import Catalog
from services.clock import Clock, SystemClock
from services.membership import InMemoryTierDirectory, TierDirectory
from services.notifications import LoggingNotifier, Notifier, send_best_effort
from services.retry import RetryPolicy, call_with_retries
from services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)


def back_in_stock_message(item: Optional[Item], item_id: int) -> str:
    name = item.name if item is not None else f"Item {item_id}"
    return f"{name} is back in stock! Open a new request before it runs out again."


class WaitlistNotifier:
    def __init__(
        self,
        store: Store,
        ledger: StockLedger,
        *,
        notifier: Optional[Notifier] = None,
        tiers: Optional[TierDirectory] = None,
        catalog: Optional[Catalog] = None,
        audit: Optional[AuditHooks] = None,
        clock: Optional[Clock] = None,
        send_timeout: float = 10.0,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self._store = store
        self._ledger = ledger
        self._notifier = notifier or LoggingNotifier()
        self._tiers = tiers or InMemoryTierDirectory()
        self._catalog = catalog
        self._audit = audit or AuditHooks()
        self._clock = clock or SystemClock()
        self._send_timeout = send_timeout
        self._retry = retry
        self._drain_locks: DefaultDict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def join(self, user_id: str, item_id: int) -> bool:
        """Add user to the item's waitlist. Returns False if already waiting."""

        entry = WaitlistEntry(item_id=item_id, user_id=user_id, joined_at=self._clock.now())
        added = await call_with_retries("join waitlist", lambda: self._store.add_waiter(entry), self._retry)
        if added:
            logger.info("User %s joined waitlist for item %s", user_id, item_id)
        return added

    async def leave(self, user_id: str, item_id: int) -> int:
        return await call_with_retries(
            "leave waitlist", lambda: self._store.remove_waiter(user_id, item_id), self._retry
        )

    async def leave_all(self, user_id: str) -> int:
        return await call_with_retries(
            "leave waitlists", lambda: self._store.remove_waiters_for_user(user_id), self._retry
        )

    async def waiters(self, item_id: int) -> List[WaitlistEntry]:
        return await call_with_retries("read waitlist", lambda: self._store.list_waiters(item_id), self._retry)

    async def items_for(self, user_id: str) -> List[int]:
        entries = await call_with_retries(
            "read waitlist", lambda: self._store.list_waitlisted(user_id), self._retry
        )
        return [entry.item_id for entry in entries]

    async def is_waiting(self, user_id: str, item_id: int) -> bool:
        return item_id in await self.items_for(user_id)

    def is_draining(self, item_id: int) -> bool:
        lock = self._drain_locks.get(item_id)
        return lock is not None and lock.locked()

    async def drain(self, item_id: int) -> int:
        """
        Notify and clear the item's waitlist.

        Returns the number of users notified. Returns 0 without side effects
        when the item has no stock or a drain of the same item is in progress.
        """

        lock = self._drain_locks[item_id]
        if lock.locked():
            logger.debug("Drain for item %s already in progress", item_id)
            return 0

        async with lock:
            if await self._ledger.aggregate(item_id) <= 0:
                return 0

            entries = await self.waiters(item_id)
            if not entries:
                return 0

            tiers: Dict[str, int] = {}
            for entry in entries:
                tiers[entry.user_id] = await self._tiers.tier_of(entry.user_id)
            ordered = drain_order(entries, tiers.__getitem__)

            item = self._catalog.item_by_id(item_id) if self._catalog is not None else None
            message = back_in_stock_message(item, item_id)

            notified = 0
            for entry in ordered:
                if await send_best_effort(self._notifier, entry.user_id, message, timeout=self._send_timeout):
                    notified += 1

            user_ids = [entry.user_id for entry in ordered]
            await call_with_retries(
                "clear waitlist", lambda: self._store.clear_waiters(item_id, user_ids), self._retry
            )

        logger.info("Drained waitlist for item %s: %d/%d notified", item_id, notified, len(ordered))
        await self._audit.emit(
            AuditEvent(
                event_type=EventType.WAITLIST_DRAINED,
                occurred_at=self._clock.now(),
                item_id=item_id,
                quantity=notified,
            )
        )
        return notified
