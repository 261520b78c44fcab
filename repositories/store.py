"""
Store protocol (persistence collaborator).

Every method is one atomic, serializable unit against the backing store. The
composite read-modify-write operations the services depend on are exposed as
single methods rather than as client-side transactions:

- update_request():       compare-and-set on the stored request state.
- complete_request():     CLAIMED -> COMPLETED + floor-at-zero debit + restock
                          enqueue, all or nothing.
- decrement_stock():      floor-at-zero decrement re-checked at write time.
- apply_due_restocks():   credit due rows and delete them together, so a crash
                          between credit and delete cannot double-credit.

Implementations:
- repositories.memory_store.InMemoryStore (per-key asyncio locks)
- repositories.supabase_store.SupabaseStore (PostgreSQL RPC functions)

Stores raise domain.errors.TransientStoreError for failures that are safe to
retry; everything else propagates unchanged. A transient failure may arrive
after the write committed, so every write the services retry is replay-safe:

- increment_stock() / decrement_stock() take an op_id; replaying an applied
  op_id returns the recorded result without touching the quantity again.
- complete_request() is keyed by the restock entry id; replaying it after the
  request completed with that id returns the recorded outcome.
- insert_request() / insert_restock() accept a replay of an identical row.
- update_request() replays return None; callers compare the stored row with
  their write (Request.reflects) to tell a landed write from a lost race.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Collection, Dict, List, Optional, Protocol, Tuple

from domain.panel import PanelRecord
from domain.request import Request, RequestState
from domain.restock import RestockCredit, RestockQueueEntry
from domain.stock import FulfillmentMethod, StockEntry, Supplier
from domain.waitlist import WaitlistEntry


@dataclass(frozen=True, slots=True)
class CompletionOutcome:
    """Result of an atomic completion."""

    request: Request
    debited: int
    restock: Optional[RestockQueueEntry]


class Store(Protocol):
    # Suppliers and stock -------------------------------------------------

    async def get_supplier(self, supplier_id: str) -> Optional[Supplier]: ...

    async def set_supplier_away(self, supplier_id: str, away: bool) -> Supplier: ...

    async def list_suppliers(self) -> List[Supplier]: ...

    async def get_stock(self, supplier_id: str, item_id: int) -> Optional[StockEntry]: ...

    async def list_stock(
        self, *, item_id: Optional[int] = None, supplier_id: Optional[str] = None
    ) -> List[StockEntry]: ...

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
    ) -> StockEntry: ...

    async def decrement_stock(
        self,
        supplier_id: str,
        item_id: int,
        quantity: int,
        at: datetime,
        *,
        op_id: Optional[str] = None,
    ) -> Optional[Tuple[StockEntry, int]]: ...

    # Requests ------------------------------------------------------------

    async def insert_request(self, request: Request) -> Request: ...

    async def get_request(self, request_id: str) -> Optional[Request]: ...

    async def update_request(
        self, updated: Request, expected_states: Collection[RequestState]
    ) -> Optional[Request]: ...

    async def complete_request(
        self, completed: Request, restock: RestockQueueEntry
    ) -> Optional[CompletionOutcome]: ...

    async def latest_completions(
        self, requester_id: str, item_id: Optional[int] = None
    ) -> Dict[int, datetime]: ...

    async def list_stale_requests(self, cutoff: datetime) -> List[Request]: ...

    # Restock queue -------------------------------------------------------

    async def insert_restock(self, entry: RestockQueueEntry) -> RestockQueueEntry: ...

    async def apply_due_restocks(self, now: datetime) -> List[RestockCredit]: ...

    async def list_restocks(
        self, *, supplier_id: Optional[str] = None, item_id: Optional[int] = None
    ) -> List[RestockQueueEntry]: ...

    async def delete_orphaned_restocks(self, before: datetime) -> int: ...

    # Waitlist ------------------------------------------------------------

    async def add_waiter(self, entry: WaitlistEntry) -> bool: ...

    async def remove_waiter(self, user_id: str, item_id: int) -> int: ...

    async def remove_waiters_for_user(self, user_id: str) -> int: ...

    async def list_waiters(self, item_id: int) -> List[WaitlistEntry]: ...

    async def list_waitlisted(self, user_id: str) -> List[WaitlistEntry]: ...

    async def clear_waiters(self, item_id: int, user_ids: Collection[str]) -> int: ...

    # Panel ---------------------------------------------------------------

    async def get_panel(self) -> Optional[PanelRecord]: ...

    async def save_panel(self, record: PanelRecord) -> PanelRecord: ...

    async def delete_panel(self) -> bool: ...


__all__ = ["CompletionOutcome", "Store"]
