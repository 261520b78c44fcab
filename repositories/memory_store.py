"""
In-memory store (persistence).

Process-local implementation of the Store protocol used for tests, local
development and single-process deployments without a database.

Atomicity:
- Each method acquires the asyncio locks for the keys it touches, then reads
  and writes without suspending, so no two operations interleave on the same
  key while unrelated keys proceed independently.
- Multi-key operations acquire their locks in a fixed order (request, then
  restock queue, then stock keys sorted) to avoid deadlocks.
- Request locks are dropped once the request is terminal and the lock is
  free; a later caller simply gets a fresh lock.

Replays:
- Stock operation ids are remembered (most recent _MAX_REMEMBERED_OPS) with
  the result they produced.
- Completions are remembered per request together with their restock entry id.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, defaultdict
from contextlib import AsyncExitStack
from dataclasses import replace
from datetime import datetime
from typing import Collection, Dict, Hashable, Iterable, List, Optional, Tuple

from domain.panel import PanelRecord
from domain.request import Request, RequestState
from domain.restock import RestockCredit, RestockQueueEntry, group_credits
from domain.stock import FulfillmentMethod, StockEntry, StockKey, Supplier
from domain.waitlist import WaitlistEntry
from repositories.store import CompletionOutcome

_RESTOCK_QUEUE_LOCK = ("restock_queue",)

_MAX_REMEMBERED_OPS: int = 10_000


def _request_lock(request_id: str) -> Tuple[str, str]:
    return ("request", request_id)


class InMemoryStore:
    def __init__(self) -> None:
        self._suppliers: Dict[str, Supplier] = {}
        self._stock: Dict[StockKey, StockEntry] = {}
        self._requests: Dict[str, Request] = {}
        self._restocks: Dict[str, RestockQueueEntry] = {}
        self._waiters: Dict[int, Dict[str, WaitlistEntry]] = {}
        self._panel: Optional[PanelRecord] = None
        self._locks: Dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._applied_ops: "OrderedDict[str, Tuple[StockEntry, int]]" = OrderedDict()
        self._completions: Dict[str, Tuple[str, CompletionOutcome]] = {}

    async def _acquire(self, stack: AsyncExitStack, keys: Iterable[Hashable]) -> None:
        for key in keys:
            await stack.enter_async_context(self._locks[key])

    def _release_if_terminal(self, request_id: str) -> None:
        stored = self._requests.get(request_id)
        if stored is None or not stored.is_terminal:
            return
        lock = self._locks.get(_request_lock(request_id))
        if lock is not None and not lock.locked():
            del self._locks[_request_lock(request_id)]

    def _replayed(self, op_id: Optional[str]) -> Optional[Tuple[StockEntry, int]]:
        return self._applied_ops.get(op_id) if op_id is not None else None

    def _remember(self, op_id: Optional[str], entry: StockEntry, amount: int) -> None:
        if op_id is None:
            return
        self._applied_ops[op_id] = (entry, amount)
        while len(self._applied_ops) > _MAX_REMEMBERED_OPS:
            self._applied_ops.popitem(last=False)

    # Suppliers and stock -------------------------------------------------

    async def get_supplier(self, supplier_id: str) -> Optional[Supplier]:
        return self._suppliers.get(supplier_id)

    async def set_supplier_away(self, supplier_id: str, away: bool) -> Supplier:
        async with self._locks[("supplier", supplier_id)]:
            supplier = Supplier(supplier_id=supplier_id, away=away)
            self._suppliers[supplier_id] = supplier
            return supplier

    async def list_suppliers(self) -> List[Supplier]:
        return list(self._suppliers.values())

    async def get_stock(self, supplier_id: str, item_id: int) -> Optional[StockEntry]:
        return self._stock.get((supplier_id, item_id))

    async def list_stock(
        self, *, item_id: Optional[int] = None, supplier_id: Optional[str] = None
    ) -> List[StockEntry]:
        return [
            entry
            for entry in self._stock.values()
            if (item_id is None or entry.item_id == item_id)
            and (supplier_id is None or entry.supplier_id == supplier_id)
        ]

    async def increment_stock(
        self,
        supplier_id: str,
        item_id: int,
        quantity: int,
        at: datetime,
        *,
        method: Optional[FulfillmentMethod] = None,
        credential_ref: Optional[str] = None,
        op_id: Optional[str] = None,
    ) -> StockEntry:
        async with self._locks[("stock", supplier_id, item_id)]:
            replayed = self._replayed(op_id)
            if replayed is not None:
                return replayed[0]
            self._suppliers.setdefault(supplier_id, Supplier(supplier_id=supplier_id))
            existing = self._stock.get((supplier_id, item_id))
            if existing is None:
                entry = StockEntry(
                    supplier_id=supplier_id,
                    item_id=item_id,
                    quantity=quantity,
                    updated_at=at,
                    method=method or FulfillmentMethod.MANUAL,
                    credential_ref=credential_ref,
                )
            else:
                entry = replace(
                    existing,
                    quantity=existing.quantity + quantity,
                    updated_at=at,
                    method=method or existing.method,
                    credential_ref=credential_ref if credential_ref is not None else existing.credential_ref,
                )
            self._stock[entry.key] = entry
            self._remember(op_id, entry, quantity)
            return entry

    async def decrement_stock(
        self,
        supplier_id: str,
        item_id: int,
        quantity: int,
        at: datetime,
        *,
        op_id: Optional[str] = None,
    ) -> Optional[Tuple[StockEntry, int]]:
        async with self._locks[("stock", supplier_id, item_id)]:
            replayed = self._replayed(op_id)
            if replayed is not None:
                return replayed
            existing = self._stock.get((supplier_id, item_id))
            if existing is None:
                return None
            updated, removed = existing.decremented(quantity, at)
            self._stock[updated.key] = updated
            self._remember(op_id, updated, removed)
            return updated, removed

    # Requests ------------------------------------------------------------

    async def insert_request(self, request: Request) -> Request:
        async with self._locks[_request_lock(request.request_id)]:
            existing = self._requests.get(request.request_id)
            if existing is not None:
                if existing == request:
                    return existing
                raise ValueError(f"Request already exists: {request.request_id}")
            self._requests[request.request_id] = request
            return request

    async def get_request(self, request_id: str) -> Optional[Request]:
        return self._requests.get(request_id)

    async def update_request(
        self, updated: Request, expected_states: Collection[RequestState]
    ) -> Optional[Request]:
        written: Optional[Request] = None
        async with self._locks[_request_lock(updated.request_id)]:
            stored = self._requests.get(updated.request_id)
            if stored is not None and stored.state in expected_states and stored.version == updated.version:
                written = replace(updated, version=stored.version + 1)
                self._requests[written.request_id] = written
        self._release_if_terminal(updated.request_id)
        return written

    async def complete_request(
        self, completed: Request, restock: RestockQueueEntry
    ) -> Optional[CompletionOutcome]:
        if completed.supplier_id is None:
            raise ValueError("A completed request must have an assigned supplier")
        stock_key = ("stock", completed.supplier_id, completed.item_id)
        try:
            async with AsyncExitStack() as stack:
                await self._acquire(
                    stack, [_request_lock(completed.request_id), _RESTOCK_QUEUE_LOCK, stock_key]
                )
                return self._complete_locked(completed, restock)
        finally:
            self._release_if_terminal(completed.request_id)

    def _complete_locked(
        self, completed: Request, restock: RestockQueueEntry
    ) -> Optional[CompletionOutcome]:
        stored = self._requests.get(completed.request_id)
        if stored is None:
            return None
        if stored.state is RequestState.COMPLETED:
            recorded = self._completions.get(completed.request_id)
            if recorded is not None and recorded[0] == restock.entry_id:
                return recorded[1]
            return None
        if stored.state is not RequestState.CLAIMED:
            return None

        written = replace(
            stored,
            state=RequestState.COMPLETED,
            updated_at=completed.updated_at,
            completed_at=completed.completed_at,
            proof=completed.proof,
            version=stored.version + 1,
        )

        debited = 0
        entry = self._stock.get((completed.supplier_id, completed.item_id))
        if entry is not None:
            updated_entry, debited = entry.decremented(1, completed.updated_at)
            self._stock[updated_entry.key] = updated_entry

        enqueued: Optional[RestockQueueEntry] = None
        if debited > 0:
            self._restocks[restock.entry_id] = restock
            enqueued = restock

        self._requests[written.request_id] = written
        outcome = CompletionOutcome(request=written, debited=debited, restock=enqueued)
        self._completions[written.request_id] = (restock.entry_id, outcome)
        return outcome

    async def latest_completions(
        self, requester_id: str, item_id: Optional[int] = None
    ) -> Dict[int, datetime]:
        latest: Dict[int, datetime] = {}
        for request in self._requests.values():
            if request.requester_id != requester_id or request.state is not RequestState.COMPLETED:
                continue
            if item_id is not None and request.item_id != item_id:
                continue
            if request.completed_at is None:
                continue
            current = latest.get(request.item_id)
            if current is None or request.completed_at > current:
                latest[request.item_id] = request.completed_at
        return latest

    async def list_stale_requests(self, cutoff: datetime) -> List[Request]:
        stale = [request for request in self._requests.values() if request.is_stale(cutoff)]
        return sorted(stale, key=lambda r: r.updated_at)

    # Restock queue -------------------------------------------------------

    async def insert_restock(self, entry: RestockQueueEntry) -> RestockQueueEntry:
        async with self._locks[_RESTOCK_QUEUE_LOCK]:
            self._restocks[entry.entry_id] = entry
            return entry

    async def apply_due_restocks(self, now: datetime) -> List[RestockCredit]:
        async with AsyncExitStack() as stack:
            await self._acquire(stack, [_RESTOCK_QUEUE_LOCK])
            due = [
                entry
                for entry in self._restocks.values()
                if entry.is_due(now) and (entry.supplier_id, entry.item_id) in self._stock
            ]
            if not due:
                return []
            credits = group_credits(due)
            stock_keys = sorted({(c.supplier_id, c.item_id) for c in credits})
            await self._acquire(stack, [("stock", s, i) for s, i in stock_keys])

            # Credit and delete with no suspension point in between.
            for credit in credits:
                entry = self._stock[(credit.supplier_id, credit.item_id)]
                self._stock[entry.key] = entry.with_quantity(entry.quantity + credit.quantity, now)
            for entry in due:
                del self._restocks[entry.entry_id]
            return credits

    async def list_restocks(
        self, *, supplier_id: Optional[str] = None, item_id: Optional[int] = None
    ) -> List[RestockQueueEntry]:
        entries = [
            entry
            for entry in self._restocks.values()
            if (supplier_id is None or entry.supplier_id == supplier_id)
            and (item_id is None or entry.item_id == item_id)
        ]
        return sorted(entries, key=lambda e: e.scheduled_at)

    async def delete_orphaned_restocks(self, before: datetime) -> int:
        async with self._locks[_RESTOCK_QUEUE_LOCK]:
            orphaned = [
                entry.entry_id
                for entry in self._restocks.values()
                if entry.scheduled_at < before and (entry.supplier_id, entry.item_id) not in self._stock
            ]
            for entry_id in orphaned:
                del self._restocks[entry_id]
            return len(orphaned)

    # Waitlist ------------------------------------------------------------

    async def add_waiter(self, entry: WaitlistEntry) -> bool:
        async with self._locks[("waitlist", entry.item_id)]:
            waiters = self._waiters.setdefault(entry.item_id, {})
            if entry.user_id in waiters:
                return False
            waiters[entry.user_id] = entry
            return True

    async def remove_waiter(self, user_id: str, item_id: int) -> int:
        async with self._locks[("waitlist", item_id)]:
            waiters = self._waiters.get(item_id)
            if waiters is None or waiters.pop(user_id, None) is None:
                return 0
            if not waiters:
                del self._waiters[item_id]
            return 1

    async def remove_waiters_for_user(self, user_id: str) -> int:
        removed = 0
        for item_id in list(self._waiters):
            removed += await self.remove_waiter(user_id, item_id)
        return removed

    async def list_waiters(self, item_id: int) -> List[WaitlistEntry]:
        return sorted(self._waiters.get(item_id, {}).values(), key=lambda e: e.joined_at)

    async def list_waitlisted(self, user_id: str) -> List[WaitlistEntry]:
        entries = [
            waiters[user_id] for waiters in self._waiters.values() if user_id in waiters
        ]
        return sorted(entries, key=lambda e: e.joined_at)

    async def clear_waiters(self, item_id: int, user_ids: Collection[str]) -> int:
        async with self._locks[("waitlist", item_id)]:
            waiters = self._waiters.get(item_id)
            if waiters is None:
                return 0
            removed = [user_id for user_id in user_ids if user_id in waiters]
            for user_id in removed:
                del waiters[user_id]
            if not waiters:
                del self._waiters[item_id]
            return len(removed)

    # Panel ---------------------------------------------------------------

    async def get_panel(self) -> Optional[PanelRecord]:
        return self._panel

    async def save_panel(self, record: PanelRecord) -> PanelRecord:
        async with self._locks[("panel",)]:
            self._panel = record
            return record

    async def delete_panel(self) -> bool:
        async with self._locks[("panel",)]:
            existed = self._panel is not None
            self._panel = None
            return existed


__all__ = ["InMemoryStore"]
