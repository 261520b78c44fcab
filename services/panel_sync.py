"""
Panel sync.

Owns the singleton PanelRecord (the public stock panel message) and produces
the read-only PanelView the chat or HTTP layer renders.

Maintenance pause:
- pause(duration) marks the panel paused and arms the auto-reopen timer.
- reopen() cancels the armed timer and clears the pause.
- There is exactly one timer handle. Arming always cancels the previous one,
  so a manual reopen followed by a new pause never races an old timer.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from domain.errors import NotFound
from domain.panel import ItemAvailability, PanelRecord, PanelView
from repositories.store import Store
from services.catalog import Catalog
from services.clock import Clock, SystemClock
from services.restock_scheduler import RestockScheduler
from services.retry import RetryPolicy, call_with_retries
from services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

PanelRenderer = Callable[[PanelRecord, PanelView], Union[None, Awaitable[None]]]


class PanelSync:
    def __init__(
        self,
        store: Store,
        ledger: StockLedger,
        scheduler: RestockScheduler,
        catalog: Catalog,
        *,
        clock: Optional[Clock] = None,
        renderer: Optional[PanelRenderer] = None,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self._store = store
        self._ledger = ledger
        self._scheduler = scheduler
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._renderer = renderer
        self._retry = retry
        self._reopen_timer: Optional[asyncio.Task[None]] = None

    # Record lifecycle ----------------------------------------------------

    async def publish(self, guild_id: str, channel_id: str, message_id: str) -> PanelRecord:
        """Create or replace the active panel. A replaced panel loses its pause."""

        self._cancel_reopen_timer()
        record = PanelRecord(
            guild_id=guild_id,
            channel_id=channel_id,
            message_id=message_id,
            updated_at=self._clock.now(),
        )
        saved = await call_with_retries("save panel", lambda: self._store.save_panel(record), self._retry)
        logger.info("Panel published in channel %s (message %s)", channel_id, message_id)
        return saved

    async def current(self) -> Optional[PanelRecord]:
        return await call_with_retries("read panel", self._store.get_panel, self._retry)

    async def clear(self) -> bool:
        self._cancel_reopen_timer()
        removed = await call_with_retries("clear panel", self._store.delete_panel, self._retry)
        if removed:
            logger.info("Panel cleared")
        return removed

    # View ----------------------------------------------------------------

    async def view(self, item_ids: Optional[Iterable[int]] = None) -> PanelView:
        items = self._catalog.all_items()
        if item_ids is not None:
            wanted = set(item_ids)
            items = [item for item in items if item.item_id in wanted]

        stock = await self._ledger.aggregates()
        pending = await self._scheduler.pending_counts()
        record = await self.current()

        return PanelView(
            generated_at=self._clock.now(),
            items=[
                ItemAvailability(
                    item_id=item.item_id,
                    name=item.name,
                    high_demand=item.high_demand,
                    stock=stock.get(item.item_id, 0),
                    pending_restock=pending.get(item.item_id, 0),
                )
                for item in items
            ],
            available_suppliers=await self._ledger.available_supplier_count(),
            paused=record.paused if record is not None else False,
            reopen_at=record.reopen_at if record is not None else None,
        )

    async def refresh(self) -> Optional[PanelView]:
        """Recompute the view and hand it to the renderer. Failures are logged, never raised."""

        try:
            record = await self.current()
            if record is None:
                return None
            view = await self.view()
            if self._renderer is not None:
                result: Any = self._renderer(record, view)
                if inspect.isawaitable(result):
                    await result
            return view
        except Exception:
            logger.exception("Panel refresh failed")
            return None

    # Maintenance pause ---------------------------------------------------

    async def pause(self, duration: Optional[timedelta] = None) -> PanelRecord:
        """Pause the panel. With a duration, it reopens automatically afterwards."""

        record = await self.current()
        if record is None:
            raise NotFound("Panel", "active")

        now = self._clock.now()
        reopen_at = now + duration if duration is not None else None
        paused = await call_with_retries(
            "pause panel",
            lambda: self._store.save_panel(replace(record, paused=True, reopen_at=reopen_at, updated_at=now)),
            self._retry,
        )
        self._cancel_reopen_timer()
        if duration is not None:
            self._arm_reopen_timer(duration)
        logger.info(
            "Panel paused%s", f" until {reopen_at.isoformat()}" if reopen_at is not None else ""
        )
        return paused

    async def reopen(self) -> Optional[PanelRecord]:
        self._cancel_reopen_timer()
        return await self._clear_pause()

    async def restore_timer(self) -> None:
        """Re-arm the auto-reopen timer from the stored record (e.g. after a restart)."""

        record = await self.current()
        if record is None or not record.paused or record.reopen_at is None:
            return
        self._cancel_reopen_timer()
        self._arm_reopen_timer(max(record.reopen_at - self._clock.now(), timedelta(0)))

    @property
    def reopen_pending(self) -> bool:
        return self._reopen_timer is not None and not self._reopen_timer.done()

    def _arm_reopen_timer(self, delay: timedelta) -> None:
        self._reopen_timer = asyncio.create_task(self._reopen_after(delay), name="panel-auto-reopen")

    def _cancel_reopen_timer(self) -> None:
        timer, self._reopen_timer = self._reopen_timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _reopen_after(self, delay: timedelta) -> None:
        await asyncio.sleep(delay.total_seconds())
        try:
            await self._clear_pause()
            logger.info("Panel reopened automatically")
        except Exception:
            logger.exception("Panel auto-reopen failed")

    async def _clear_pause(self) -> Optional[PanelRecord]:
        record = await self.current()
        if record is None:
            return None
        if not record.paused:
            return record
        reopened = replace(record, paused=False, reopen_at=None, updated_at=self._clock.now())
        saved = await call_with_retries("reopen panel", lambda: self._store.save_panel(reopened), self._retry)
        await self.refresh()
        return saved

    async def shutdown(self) -> None:
        timer, self._reopen_timer = self._reopen_timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

    @staticmethod
    def seconds_until(reopen_at: Optional[datetime], now: datetime) -> int:
        if reopen_at is None:
            return 0
        return max(0, int((reopen_at - now).total_seconds()))
