"""
Request lifecycle service.

Business rules:
- create():   the item must exist, have aggregate stock > 0 and the requester
              must not be within the item's cooldown since their most recent
              COMPLETED request for it (per requester and item, whichever
              supplier fulfilled it).
- claim():    one-time compare-and-set PENDING -> CLAIMED with the supplier
              assigned. The supplier must hold stock for the item. No stock
              effect.
- complete(): CLAIMED with verified evidence -> COMPLETED. One atomic store
              call records the completion, debits one unit (floor at zero) and,
              when a unit was debited, enqueues its restock after the item's
              cooldown. A second complete() raises InvalidState and has no
              effect.
- fail() / cancel(): terminal transitions with no stock effect.
- sweep_stale(): cancels idle non-terminal requests unless no_auto_close is set.

Every write is a compare-and-set on the stored row version. A write that loses
a race re-reads the request and re-evaluates the rule, so concurrent flag
updates never mask a transition and concurrent claims resolve to exactly one
winner. A compare-and-set that reports no match is first checked against the
stored row: when a retried attempt had already applied it, the stored row is
the result.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Collection, Dict, List, Optional

from domain.catalog import COOLDOWN_HOURS_HIGH_DEMAND, COOLDOWN_HOURS_NORMAL, Item, cooldown_hours_for
from domain.errors import (
    AlreadyClaimed,
    InvalidState,
    NoStockAvailable,
    NotEligible,
    NotFound,
    OnCooldown,
    Unavailable,
)
from domain.events import AuditEvent, EventType
from domain.request import (
    ACTIVE_STATES,
    STALE_REASON,
    Request,
    RequestState,
    normalize_fail_reason,
)
from repositories.store import Store
from services.audit import AuditHooks
from services.catalog import Catalog
from services.clock import Clock, SystemClock
from services.restock_scheduler import RestockScheduler
from services.retry import RetryPolicy, call_with_retries
from services.stock_ledger import StockLedger
from services.waitlist_notifier import WaitlistNotifier

logger = logging.getLogger(__name__)

# Version conflicts are retried this many times before giving up.
MAX_WRITE_ATTEMPTS: int = 5

_ANY_STATE: Collection[RequestState] = frozenset(RequestState)


class RequestLifecycle:
    def __init__(
        self,
        store: Store,
        ledger: StockLedger,
        scheduler: RestockScheduler,
        catalog: Catalog,
        *,
        waitlist: Optional[WaitlistNotifier] = None,
        audit: Optional[AuditHooks] = None,
        clock: Optional[Clock] = None,
        retry: RetryPolicy = RetryPolicy(),
        cooldown_hours: int = COOLDOWN_HOURS_NORMAL,
        high_demand_cooldown_hours: int = COOLDOWN_HOURS_HIGH_DEMAND,
    ):
        self._store = store
        self._ledger = ledger
        self._scheduler = scheduler
        self._catalog = catalog
        self._waitlist = waitlist
        self._audit = audit or AuditHooks()
        self._clock = clock or SystemClock()
        self._retry = retry
        self._cooldown_hours = cooldown_hours
        self._high_demand_cooldown_hours = high_demand_cooldown_hours

    # Cooldown policy -----------------------------------------------------

    def cooldown_hours(self, item: Optional[Item]) -> int:
        if item is None:
            return self._cooldown_hours
        return cooldown_hours_for(
            item,
            normal_hours=self._cooldown_hours,
            high_demand_hours=self._high_demand_cooldown_hours,
        )

    def cooldown_for(self, item: Optional[Item]) -> timedelta:
        return timedelta(hours=self.cooldown_hours(item))

    async def _cooldown_until(self, requester_id: str, item_id: int) -> Optional[datetime]:
        completions = await call_with_retries(
            "read completions",
            lambda: self._store.latest_completions(requester_id, item_id),
            self._retry,
        )
        completed_at = completions.get(item_id)
        if completed_at is None:
            return None
        available_at = completed_at + self.cooldown_for(self._catalog.item_by_id(item_id))
        return available_at if available_at > self._clock.now() else None

    async def cooldown_remaining(self, requester_id: str, item_id: int) -> timedelta:
        available_at = await self._cooldown_until(requester_id, item_id)
        if available_at is None:
            return timedelta(0)
        return available_at - self._clock.now()

    async def cooldowns_for(self, requester_id: str) -> Dict[int, datetime]:
        """Active cooldowns of a requester: {item_id: available_at}."""

        completions = await call_with_retries(
            "read completions", lambda: self._store.latest_completions(requester_id), self._retry
        )
        now = self._clock.now()
        active: Dict[int, datetime] = {}
        for item_id, completed_at in completions.items():
            available_at = completed_at + self.cooldown_for(self._catalog.item_by_id(item_id))
            if available_at > now:
                active[item_id] = available_at
        return active

    # Reads ---------------------------------------------------------------

    async def get(self, request_id: str) -> Request:
        request = await call_with_retries(
            "read request", lambda: self._store.get_request(request_id), self._retry
        )
        if request is None:
            raise NotFound("Request", request_id)
        return request

    # Transitions ---------------------------------------------------------

    async def create(self, item_id: int, requester_id: str, *, auto_join_waitlist: bool = False) -> Request:
        item = self._catalog.item_by_id(item_id)
        if item is None:
            raise NotFound("Item", item_id)

        if await self._ledger.aggregate(item_id) <= 0:
            joined = False
            if auto_join_waitlist and self._waitlist is not None:
                await self._waitlist.join(requester_id, item_id)
                joined = True
            raise NoStockAvailable(item_id, item.display_name, joined_waitlist=joined)

        available_at = await self._cooldown_until(requester_id, item_id)
        if available_at is not None:
            raise OnCooldown(item_id, item.display_name, available_at, self.cooldown_hours(item))

        now = self._clock.now()
        request = Request(
            request_id=str(uuid.uuid4()),
            item_id=item_id,
            requester_id=requester_id,
            state=RequestState.PENDING,
            created_at=now,
            updated_at=now,
        )
        created = await call_with_retries(
            "create request", lambda: self._store.insert_request(request), self._retry
        )
        await self._emit(EventType.REQUEST_CREATED, created)
        return created

    async def claim(self, request_id: str, supplier_id: str) -> Request:
        def change(current: Request) -> Request:
            if current.state is not RequestState.PENDING:
                raise AlreadyClaimed(request_id)
            return current.transitioned(RequestState.CLAIMED, self._clock.now(), supplier_id=supplier_id)

        current = await self.get(request_id)
        if current.state is not RequestState.PENDING:
            raise AlreadyClaimed(request_id)
        if not await self._ledger.has_stock(supplier_id, current.item_id):
            raise NotEligible(supplier_id, current.item_id)

        claimed = await self._write(request_id, "claim request", change, {RequestState.PENDING}, current)
        await self._emit(EventType.REQUEST_CLAIMED, claimed)
        return claimed

    async def complete(self, request_id: str, proof: Optional[str] = None) -> Request:
        current = await self.get(request_id)
        if current.state is not RequestState.CLAIMED:
            raise InvalidState(request_id, current.state.value, "complete")
        if not current.evidence_verified:
            raise InvalidState(request_id, "claimed without verified evidence", "complete")
        if current.supplier_id is None:
            raise InvalidState(request_id, "claimed without a supplier", "complete")

        now = self._clock.now()
        completed = current.transitioned(RequestState.COMPLETED, now, completed_at=now, proof=proof)
        restock = self._scheduler.build_entry(
            current.supplier_id,
            current.item_id,
            self.cooldown_for(self._catalog.item_by_id(current.item_id)),
        )
        outcome = await call_with_retries(
            "complete request", lambda: self._store.complete_request(completed, restock), self._retry
        )
        if outcome is None:
            latest = await self.get(request_id)
            raise InvalidState(request_id, latest.state.value, "complete")

        if outcome.debited == 0:
            logger.warning(
                "Request %s completed but supplier %s had no stock of item %s to debit",
                request_id,
                current.supplier_id,
                current.item_id,
            )
        await self._emit(EventType.REQUEST_COMPLETED, outcome.request, quantity=outcome.debited)
        return outcome.request

    async def fail(self, request_id: str, reason: Optional[str] = "failed") -> Request:
        normalized = normalize_fail_reason(reason)

        def change(current: Request) -> Request:
            if current.state is not RequestState.CLAIMED:
                raise InvalidState(request_id, current.state.value, "fail")
            return current.transitioned(RequestState.FAILED, self._clock.now(), reason=normalized)

        failed = await self._write(request_id, "fail request", change, {RequestState.CLAIMED})
        await self._emit(EventType.REQUEST_FAILED, failed, reason=normalized)
        return failed

    async def cancel(self, request_id: str, reason: str = "cancelled") -> Request:
        def change(current: Request) -> Request:
            if current.state not in ACTIVE_STATES:
                raise InvalidState(request_id, current.state.value, "cancel")
            return current.transitioned(RequestState.CANCELLED, self._clock.now(), reason=reason)

        cancelled = await self._write(request_id, "cancel request", change, ACTIVE_STATES)
        await self._emit(EventType.REQUEST_CANCELLED, cancelled, reason=reason)
        return cancelled

    async def mark_evidence_verified(self, request_id: str) -> Request:
        return await self._write(
            request_id,
            "verify evidence",
            lambda current: current.touched(self._clock.now(), evidence_verified=True),
            _ANY_STATE,
        )

    async def set_no_auto_close(self, request_id: str, flag: bool) -> Request:
        return await self._write(
            request_id,
            "set no-auto-close",
            lambda current: current.touched(self._clock.now(), no_auto_close=flag),
            _ANY_STATE,
        )

    async def sweep_stale(self, idle_threshold: timedelta) -> List[Request]:
        """Cancel idle, unprotected, non-terminal requests. Returns the cancelled requests."""

        now = self._clock.now()
        cutoff = now - idle_threshold
        candidates = await call_with_retries(
            "read stale requests", lambda: self._store.list_stale_requests(cutoff), self._retry
        )

        closed: List[Request] = []
        for request in candidates:
            if not request.is_stale(cutoff):
                continue
            cancelled = request.transitioned(RequestState.CANCELLED, now, reason=STALE_REASON)
            # A version mismatch means the request saw activity after it was listed.
            written = await call_with_retries(
                "auto-close request",
                lambda: self._store.update_request(cancelled, ACTIVE_STATES),
                self._retry,
            )
            if written is None:
                written = await self._landed(cancelled)
            if written is None:
                continue
            closed.append(written)
            await self._emit(EventType.REQUEST_AUTO_CLOSED, written, reason=STALE_REASON)

        if closed:
            logger.info("Auto-closed %d stale request(s)", len(closed))
        return closed

    # Helpers -------------------------------------------------------------

    async def _write(
        self,
        request_id: str,
        operation: str,
        change: Callable[[Request], Request],
        expected: Collection[RequestState],
        current: Optional[Request] = None,
    ) -> Request:
        for _ in range(MAX_WRITE_ATTEMPTS):
            if current is None:
                current = await self.get(request_id)
            updated = change(current)
            written = await call_with_retries(
                operation, lambda: self._store.update_request(updated, expected), self._retry
            )
            if written is None:
                written = await self._landed(updated)
            if written is not None:
                return written
            current = None
        logger.error("%s for %s kept losing version races", operation, request_id)
        raise Unavailable(operation)

    async def _landed(self, attempted: Request) -> Optional[Request]:
        """
        Return the stored row if an update that reported no match had in fact
        been applied by an earlier attempt whose response was lost.
        """

        stored = await call_with_retries(
            "read request", lambda: self._store.get_request(attempted.request_id), self._retry
        )
        if stored is not None and stored.reflects(attempted):
            return stored
        return None

    async def _emit(self, event_type: EventType, request: Request, **fields: object) -> None:
        await self._audit.emit(
            AuditEvent(
                event_type=event_type,
                occurred_at=self._clock.now(),
                request_id=request.request_id,
                item_id=request.item_id,
                supplier_id=request.supplier_id,
                user_id=request.requester_id,
                **fields,  # type: ignore[arg-type]
            )
        )
