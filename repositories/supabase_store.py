"""
Supabase store (persistence).

Implements the Store protocol on top of the async Supabase client. Plain reads
and single-row writes go through the PostgREST table builder; every composite
read-modify-write is a PostgreSQL function invoked via rpc() so it executes in
a single database transaction with row locking:

- increment_stock_atomic(p_supplier_id, p_item_id, p_quantity, p_at, p_method, p_credential_ref, p_op_id)
- decrement_stock_atomic(p_supplier_id, p_item_id, p_quantity, p_at, p_op_id)
- complete_request_atomic(p_request_id, p_completed_at, p_proof, p_restock_entry_id, p_restock_at)
- apply_due_restocks_atomic(p_now)

Request compare-and-set uses a conditional UPDATE filtered on request_id,
version and state; an empty result means the CAS lost.

This module contains no business rules; it only maps rows to domain entities
and surfaces failures (TransientStoreError for retryable ones, RuntimeError
otherwise).

A timeout after the request was sent leaves the outcome unknown. That is only
retryable for reads and for writes that are safe to replay (keyed by an
operation id, a primary key or a row version). Other writes are retried only
when the connection was never established.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Collection, Dict, List, Mapping, Optional, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient

from domain.errors import TransientStoreError
from domain.panel import PanelRecord
from domain.request import Request, RequestState
from domain.restock import RestockCredit, RestockQueueEntry
from domain.stock import FulfillmentMethod, StockEntry, Supplier
from domain.time import parse_utc_datetime, to_iso_utc
from domain.waitlist import WaitlistEntry
from repositories.store import CompletionOutcome

logger = logging.getLogger(__name__)

# Supabase table names. Keep these aligned with your database schema.
_SUPPLIERS_TABLE: str = "suppliers"
_STOCK_TABLE: str = "stock_entries"
_REQUESTS_TABLE: str = "requests"
_RESTOCK_TABLE: str = "restock_queue"
_WAITLIST_TABLE: str = "waitlist"
_PANEL_TABLE: str = "panel"

# Singleton panel row id (CHECK (id = 1) in the schema).
_PANEL_ROW_ID: int = 1

# PostgreSQL error codes that are safe to retry.
_TRANSIENT_PG_CODES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available (FOR UPDATE NOWAIT)
    "57014",  # query_canceled (statement timeout)
}

# Failures raised before the request reached the server.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def _optional_dt(value: Any) -> Optional[datetime]:
    return parse_utc_datetime(value) if value is not None else None


def _row_to_supplier(row: Mapping[str, Any]) -> Supplier:
    return Supplier(supplier_id=str(row["supplier_id"]), away=bool(row.get("away", False)))


def _row_to_stock(row: Mapping[str, Any]) -> StockEntry:
    return StockEntry(
        supplier_id=str(row["supplier_id"]),
        item_id=int(row["item_id"]),
        quantity=int(row["quantity"]),
        updated_at=parse_utc_datetime(row["updated_at_utc"]),
        method=FulfillmentMethod(str(row.get("method") or FulfillmentMethod.MANUAL.value)),
        credential_ref=row.get("credential_ref"),
    )


def _row_to_request(row: Mapping[str, Any]) -> Request:
    return Request(
        request_id=str(row["request_id"]),
        item_id=int(row["item_id"]),
        requester_id=str(row["requester_id"]),
        state=RequestState(str(row["state"])),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        updated_at=parse_utc_datetime(row["updated_at_utc"]),
        supplier_id=str(row["supplier_id"]) if row.get("supplier_id") is not None else None,
        completed_at=_optional_dt(row.get("completed_at_utc")),
        no_auto_close=bool(row.get("no_auto_close", False)),
        evidence_verified=bool(row.get("evidence_verified", False)),
        proof=row.get("proof"),
        reason=row.get("reason"),
        version=int(row.get("version", 0)),
    )


def _request_to_row(request: Request) -> Dict[str, Any]:
    return {
        "request_id": request.request_id,
        "item_id": request.item_id,
        "requester_id": request.requester_id,
        "state": request.state.value,
        "created_at_utc": to_iso_utc(request.created_at, name="created_at"),
        "updated_at_utc": to_iso_utc(request.updated_at, name="updated_at"),
        "supplier_id": request.supplier_id,
        "completed_at_utc": (
            to_iso_utc(request.completed_at, name="completed_at") if request.completed_at else None
        ),
        "no_auto_close": request.no_auto_close,
        "evidence_verified": request.evidence_verified,
        "proof": request.proof,
        "reason": request.reason,
        "version": request.version,
    }


def _row_to_restock(row: Mapping[str, Any]) -> RestockQueueEntry:
    return RestockQueueEntry(
        entry_id=str(row["entry_id"]),
        supplier_id=str(row["supplier_id"]),
        item_id=int(row["item_id"]),
        scheduled_at=parse_utc_datetime(row["scheduled_at_utc"]),
        pending_quantity=int(row.get("pending_quantity", 1)),
    )


def _row_to_waiter(row: Mapping[str, Any]) -> WaitlistEntry:
    return WaitlistEntry(
        item_id=int(row["item_id"]),
        user_id=str(row["user_id"]),
        joined_at=parse_utc_datetime(row["joined_at_utc"]),
    )


def _row_to_panel(row: Mapping[str, Any]) -> PanelRecord:
    return PanelRecord(
        guild_id=str(row["guild_id"]),
        channel_id=str(row["channel_id"]),
        message_id=str(row["message_id"]),
        updated_at=parse_utc_datetime(row["updated_at_utc"]),
        paused=bool(row.get("paused", False)),
        reopen_at=_optional_dt(row.get("reopen_at_utc")),
    )


class SupabaseStore:
    def __init__(self, client: AsyncClient):
        self._client = client

    async def _execute(self, query: Any, what: str, *, replayable: bool = True) -> List[Dict[str, Any]]:
        """
        Execute a PostgREST query, normalizing errors and returning the row list.

        replayable=False marks a write that must not run twice; a transport
        failure after the request was sent is then reported as RuntimeError.
        """

        try:
            response = await query.execute()
        except (httpx.TimeoutException, httpx.TransportError) as e:
            if replayable or isinstance(e, _NOT_SENT_ERRORS):
                raise TransientStoreError(f"{what}: {e}") from e
            raise RuntimeError(f"Failed to {what} (outcome unknown): {e}") from e
        except APIError as e:
            if str(getattr(e, "code", "")) in _TRANSIENT_PG_CODES:
                raise TransientStoreError(f"{what}: {e}") from e
            raise RuntimeError(f"Failed to {what}: {e}") from e

        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to {what}: {error}")

        data = getattr(response, "data", None)
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)

    # Suppliers and stock -------------------------------------------------

    async def get_supplier(self, supplier_id: str) -> Optional[Supplier]:
        rows = await self._execute(
            self._client.table(_SUPPLIERS_TABLE).select("*").eq("supplier_id", supplier_id).limit(1),
            "fetch supplier",
        )
        return _row_to_supplier(rows[0]) if rows else None

    async def set_supplier_away(self, supplier_id: str, away: bool) -> Supplier:
        rows = await self._execute(
            self._client.table(_SUPPLIERS_TABLE).upsert(
                {"supplier_id": supplier_id, "away": away}, on_conflict="supplier_id"
            ),
            "update supplier availability",
        )
        return _row_to_supplier(rows[0]) if rows else Supplier(supplier_id=supplier_id, away=away)

    async def list_suppliers(self) -> List[Supplier]:
        rows = await self._execute(self._client.table(_SUPPLIERS_TABLE).select("*"), "list suppliers")
        return [_row_to_supplier(row) for row in rows]

    async def get_stock(self, supplier_id: str, item_id: int) -> Optional[StockEntry]:
        rows = await self._execute(
            self._client.table(_STOCK_TABLE)
            .select("*")
            .eq("supplier_id", supplier_id)
            .eq("item_id", item_id)
            .limit(1),
            "fetch stock entry",
        )
        return _row_to_stock(rows[0]) if rows else None

    async def list_stock(
        self, *, item_id: Optional[int] = None, supplier_id: Optional[str] = None
    ) -> List[StockEntry]:
        query = self._client.table(_STOCK_TABLE).select("*")
        if item_id is not None:
            query = query.eq("item_id", item_id)
        if supplier_id is not None:
            query = query.eq("supplier_id", supplier_id)
        rows = await self._execute(query, "list stock entries")
        return [_row_to_stock(row) for row in rows]

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
        rows = await self._execute(
            self._client.rpc(
                "increment_stock_atomic",
                {
                    "p_supplier_id": supplier_id,
                    "p_item_id": item_id,
                    "p_quantity": quantity,
                    "p_at": to_iso_utc(at, name="at"),
                    "p_method": method.value if method else None,
                    "p_credential_ref": credential_ref,
                    "p_op_id": op_id,
                },
            ),
            "increment stock",
            replayable=op_id is not None,
        )
        if not rows:
            raise RuntimeError("increment_stock_atomic returned no row")
        return _row_to_stock(rows[0])

    async def decrement_stock(
        self,
        supplier_id: str,
        item_id: int,
        quantity: int,
        at: datetime,
        *,
        op_id: Optional[str] = None,
    ) -> Optional[Tuple[StockEntry, int]]:
        rows = await self._execute(
            self._client.rpc(
                "decrement_stock_atomic",
                {
                    "p_supplier_id": supplier_id,
                    "p_item_id": item_id,
                    "p_quantity": quantity,
                    "p_at": to_iso_utc(at, name="at"),
                    "p_op_id": op_id,
                },
            ),
            "decrement stock",
            replayable=op_id is not None,
        )
        if not rows or rows[0].get("supplier_id") is None:
            return None
        row = rows[0]
        return _row_to_stock(row), int(row.get("removed", 0))

    # Requests ------------------------------------------------------------

    async def insert_request(self, request: Request) -> Request:
        # A replayed insert hits the existing row and returns nothing.
        rows = await self._execute(
            self._client.table(_REQUESTS_TABLE).upsert(
                _request_to_row(request), on_conflict="request_id", ignore_duplicates=True
            ),
            "create request",
        )
        if rows:
            return _row_to_request(rows[0])
        return await self.get_request(request.request_id) or request

    async def get_request(self, request_id: str) -> Optional[Request]:
        rows = await self._execute(
            self._client.table(_REQUESTS_TABLE).select("*").eq("request_id", request_id).limit(1),
            "fetch request",
        )
        return _row_to_request(rows[0]) if rows else None

    async def update_request(
        self, updated: Request, expected_states: Collection[RequestState]
    ) -> Optional[Request]:
        payload = _request_to_row(updated)
        payload["version"] = updated.version + 1
        rows = await self._execute(
            self._client.table(_REQUESTS_TABLE)
            .update(payload)
            .eq("request_id", updated.request_id)
            .eq("version", updated.version)
            .in_("state", [state.value for state in expected_states]),
            "update request",
        )
        # No rows updated: the request moved on (or vanished) since it was read.
        return _row_to_request(rows[0]) if rows else None

    async def complete_request(
        self, completed: Request, restock: RestockQueueEntry
    ) -> Optional[CompletionOutcome]:
        rows = await self._execute(
            self._client.rpc(
                "complete_request_atomic",
                {
                    "p_request_id": completed.request_id,
                    "p_completed_at": to_iso_utc(completed.updated_at, name="completed_at"),
                    "p_proof": completed.proof,
                    "p_restock_entry_id": restock.entry_id,
                    "p_restock_at": to_iso_utc(restock.scheduled_at, name="restock_at"),
                },
            ),
            "complete request",
        )
        if not rows or not rows[0].get("success"):
            return None
        row = rows[0]
        debited = int(row.get("debited", 0))
        return CompletionOutcome(
            request=_row_to_request(row["request"]),
            debited=debited,
            restock=restock if debited > 0 else None,
        )

    async def latest_completions(
        self, requester_id: str, item_id: Optional[int] = None
    ) -> Dict[int, datetime]:
        query = (
            self._client.table(_REQUESTS_TABLE)
            .select("item_id, completed_at_utc")
            .eq("requester_id", requester_id)
            .eq("state", RequestState.COMPLETED.value)
        )
        if item_id is not None:
            query = query.eq("item_id", item_id)
        rows = await self._execute(query, "fetch completions")

        latest: Dict[int, datetime] = {}
        for row in rows:
            if row.get("completed_at_utc") is None:
                continue
            key = int(row["item_id"])
            completed_at = parse_utc_datetime(row["completed_at_utc"])
            if key not in latest or completed_at > latest[key]:
                latest[key] = completed_at
        return latest

    async def list_stale_requests(self, cutoff: datetime) -> List[Request]:
        rows = await self._execute(
            self._client.table(_REQUESTS_TABLE)
            .select("*")
            .in_("state", [RequestState.PENDING.value, RequestState.CLAIMED.value])
            .eq("no_auto_close", False)
            .lt("updated_at_utc", to_iso_utc(cutoff, name="cutoff"))
            .order("updated_at_utc"),
            "list stale requests",
        )
        return [_row_to_request(row) for row in rows]

    # Restock queue -------------------------------------------------------

    async def insert_restock(self, entry: RestockQueueEntry) -> RestockQueueEntry:
        await self._execute(
            self._client.table(_RESTOCK_TABLE).upsert(
                {
                    "entry_id": entry.entry_id,
                    "supplier_id": entry.supplier_id,
                    "item_id": entry.item_id,
                    "scheduled_at_utc": to_iso_utc(entry.scheduled_at, name="scheduled_at"),
                    "pending_quantity": entry.pending_quantity,
                },
                on_conflict="entry_id",
                ignore_duplicates=True,
            ),
            "enqueue restock",
        )
        return entry

    async def apply_due_restocks(self, now: datetime) -> List[RestockCredit]:
        rows = await self._execute(
            self._client.rpc("apply_due_restocks_atomic", {"p_now": to_iso_utc(now, name="now")}),
            "apply due restocks",
            replayable=False,
        )
        return [
            RestockCredit(
                supplier_id=str(row["supplier_id"]),
                item_id=int(row["item_id"]),
                quantity=int(row["quantity"]),
            )
            for row in rows
        ]

    async def list_restocks(
        self, *, supplier_id: Optional[str] = None, item_id: Optional[int] = None
    ) -> List[RestockQueueEntry]:
        query = self._client.table(_RESTOCK_TABLE).select("*")
        if supplier_id is not None:
            query = query.eq("supplier_id", supplier_id)
        if item_id is not None:
            query = query.eq("item_id", item_id)
        rows = await self._execute(query.order("scheduled_at_utc"), "list restock queue")
        return [_row_to_restock(row) for row in rows]

    async def delete_orphaned_restocks(self, before: datetime) -> int:
        rows = await self._execute(
            self._client.rpc(
                "delete_orphaned_restocks", {"p_before": to_iso_utc(before, name="before")}
            ),
            "clean up restock queue",
            replayable=False,
        )
        if rows and "deleted" in rows[0]:
            return int(rows[0]["deleted"])
        return len(rows)

    # Waitlist ------------------------------------------------------------

    async def add_waiter(self, entry: WaitlistEntry) -> bool:
        rows = await self._execute(
            self._client.table(_WAITLIST_TABLE).upsert(
                {
                    "item_id": entry.item_id,
                    "user_id": entry.user_id,
                    "joined_at_utc": to_iso_utc(entry.joined_at, name="joined_at"),
                },
                on_conflict="item_id,user_id",
                ignore_duplicates=True,
            ),
            "join waitlist",
            replayable=False,
        )
        return bool(rows)

    async def remove_waiter(self, user_id: str, item_id: int) -> int:
        rows = await self._execute(
            self._client.table(_WAITLIST_TABLE).delete().eq("user_id", user_id).eq("item_id", item_id),
            "leave waitlist",
            replayable=False,
        )
        return len(rows)

    async def remove_waiters_for_user(self, user_id: str) -> int:
        rows = await self._execute(
            self._client.table(_WAITLIST_TABLE).delete().eq("user_id", user_id),
            "leave all waitlists",
            replayable=False,
        )
        return len(rows)

    async def list_waiters(self, item_id: int) -> List[WaitlistEntry]:
        rows = await self._execute(
            self._client.table(_WAITLIST_TABLE).select("*").eq("item_id", item_id).order("joined_at_utc"),
            "list waitlist",
        )
        return [_row_to_waiter(row) for row in rows]

    async def list_waitlisted(self, user_id: str) -> List[WaitlistEntry]:
        rows = await self._execute(
            self._client.table(_WAITLIST_TABLE).select("*").eq("user_id", user_id).order("joined_at_utc"),
            "list user waitlists",
        )
        return [_row_to_waiter(row) for row in rows]

    async def clear_waiters(self, item_id: int, user_ids: Collection[str]) -> int:
        if not user_ids:
            return 0
        rows = await self._execute(
            self._client.table(_WAITLIST_TABLE)
            .delete()
            .eq("item_id", item_id)
            .in_("user_id", list(user_ids)),
            "clear waitlist",
            replayable=False,
        )
        return len(rows)

    # Panel ---------------------------------------------------------------

    async def get_panel(self) -> Optional[PanelRecord]:
        rows = await self._execute(
            self._client.table(_PANEL_TABLE).select("*").eq("id", _PANEL_ROW_ID).limit(1),
            "fetch panel",
        )
        return _row_to_panel(rows[0]) if rows else None

    async def save_panel(self, record: PanelRecord) -> PanelRecord:
        await self._execute(
            self._client.table(_PANEL_TABLE).upsert(
                {
                    "id": _PANEL_ROW_ID,
                    "guild_id": record.guild_id,
                    "channel_id": record.channel_id,
                    "message_id": record.message_id,
                    "paused": record.paused,
                    "reopen_at_utc": (
                        to_iso_utc(record.reopen_at, name="reopen_at") if record.reopen_at else None
                    ),
                    "updated_at_utc": to_iso_utc(record.updated_at, name="updated_at"),
                },
                on_conflict="id",
            ),
            "save panel",
        )
        return record

    async def delete_panel(self) -> bool:
        rows = await self._execute(
            self._client.table(_PANEL_TABLE).delete().eq("id", _PANEL_ROW_ID),
            "clear panel",
            replayable=False,
        )
        return bool(rows)


__all__ = ["SupabaseStore"]
