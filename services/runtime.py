"""
Pool runtime.

Wires the services together around one Store and owns the periodic work:

- restock loop:      tick -> audit RESTOCK_CREDITED -> drain each credited item
                     -> panel refresh
- auto-close loop:   cancel stale requests and tell their requesters
- housekeeping loop: rate limiter sweep + orphaned restock cleanup

A supplier adding stock drains that item's waitlist too (manual restock path);
drains of one item never overlap whichever path triggers them.

There is one runtime (one scheduler) per deployment.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from domain.events import AuditEvent, EventType
from domain.request import Request
from domain.restock import RestockCredit
from repositories.client import create_store
from repositories.store import Store
from services.actions import ActionDispatcher
from services.audit import AuditHooks
from services.catalog import Catalog, CatalogCache, StaticCatalog, catalog_file_loader
from services.clock import Clock, SystemClock
from services.membership import InMemoryTierDirectory, TierDirectory
from services.notifications import LoggingNotifier, Notifier, WebhookNotifier, send_best_effort
from services.panel_sync import PanelRenderer, PanelSync
from services.rate_limiter import RateLimiter
from services.request_lifecycle import RequestLifecycle
from services.restock_scheduler import RestockScheduler
from services.retry import RetryPolicy
from services.stock_ledger import StockLedger
from services.waitlist_notifier import WaitlistNotifier
from settings import Settings

logger = logging.getLogger(__name__)


class PoolRuntime:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        catalog: Catalog,
        *,
        tiers: Optional[TierDirectory] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        renderer: Optional[PanelRenderer] = None,
    ):
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotifier()
        self.audit = AuditHooks()
        retry = RetryPolicy(
            attempts=settings.store_retry_attempts,
            base_delay=settings.store_retry_base_delay_seconds,
        )

        self.ledger = StockLedger(store, clock=self.clock, audit=self.audit, retry=retry)
        self.scheduler = RestockScheduler(store, clock=self.clock, retry=retry)
        self.waitlist = WaitlistNotifier(
            store,
            self.ledger,
            notifier=self.notifier,
            tiers=tiers or InMemoryTierDirectory(),
            catalog=catalog,
            audit=self.audit,
            clock=self.clock,
            send_timeout=settings.notify_timeout_seconds,
            retry=retry,
        )
        self.lifecycle = RequestLifecycle(
            store,
            self.ledger,
            self.scheduler,
            catalog,
            waitlist=self.waitlist,
            audit=self.audit,
            clock=self.clock,
            retry=retry,
            cooldown_hours=settings.cooldown_hours,
            high_demand_cooldown_hours=settings.high_demand_cooldown_hours,
        )
        self.panel = PanelSync(
            store, self.ledger, self.scheduler, catalog, clock=self.clock, renderer=renderer, retry=retry
        )
        self.limiter = RateLimiter(self.clock)
        self.dispatcher = ActionDispatcher(
            self.lifecycle, self.ledger, self.waitlist, self.limiter, rate_limits=settings.rate_limits
        )

        self.audit.subscribe(EventType.STOCK_ADDED, self._on_stock_added)
        self.audit.subscribe(EventType.REQUEST_COMPLETED, self._on_request_completed)

        self._tasks: List[asyncio.Task[None]] = []

    @staticmethod
    async def from_settings(
        settings: Settings,
        *,
        catalog: Optional[Catalog] = None,
        tiers: Optional[TierDirectory] = None,
        clock: Optional[Clock] = None,
    ) -> "PoolRuntime":
        """Build the runtime for the configured backend, notifier and catalog."""

        store = await create_store(settings)
        if catalog is None:
            catalog = (
                CatalogCache(catalog_file_loader(settings.catalog_path))
                if settings.catalog_path
                else StaticCatalog([])
            )
        notifier: Notifier = (
            WebhookNotifier(settings.notify_webhook_url, timeout=settings.notify_timeout_seconds)
            if settings.notify_webhook_url
            else LoggingNotifier()
        )
        return PoolRuntime(settings, store, catalog, tiers=tiers, notifier=notifier, clock=clock)

    # Lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        await self.panel.restore_timer()
        self._tasks = [
            asyncio.create_task(
                self._loop("restock", self.settings.restock_check_interval_seconds, self.run_restock_cycle),
                name="restock-tick",
            ),
            asyncio.create_task(
                self._loop("auto-close", self.settings.auto_close_check_interval_seconds, self.run_sweep_cycle),
                name="auto-close-sweep",
            ),
            asyncio.create_task(
                self._loop("housekeeping", self.settings.rate_limit_sweep_seconds, self.run_housekeeping_cycle),
                name="housekeeping",
            ),
        ]
        logger.info(
            "Runtime started (restock every %ss, auto-close every %ss)",
            self.settings.restock_check_interval_seconds,
            self.settings.auto_close_check_interval_seconds,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.panel.shutdown()
        aclose = getattr(self.notifier, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Runtime stopped")

    async def _loop(self, name: str, interval: float, cycle: Callable[[], Awaitable[object]]) -> None:
        while True:
            try:
                await cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s cycle failed", name)
            await asyncio.sleep(interval)

    # Cycles --------------------------------------------------------------

    async def run_restock_cycle(self) -> List[RestockCredit]:
        credits = await self.scheduler.tick()
        now = self.clock.now()
        for credit in credits:
            await self.audit.emit(
                AuditEvent(
                    event_type=EventType.RESTOCK_CREDITED,
                    occurred_at=now,
                    item_id=credit.item_id,
                    supplier_id=credit.supplier_id,
                    quantity=credit.quantity,
                )
            )
        for item_id in dict.fromkeys(credit.item_id for credit in credits):
            await self.waitlist.drain(item_id)
        if credits:
            await self.panel.refresh()
        return credits

    async def run_sweep_cycle(self) -> List[Request]:
        closed = await self.lifecycle.sweep_stale(timedelta(minutes=self.settings.stale_ticket_minutes))
        for request in closed:
            item = self.catalog.item_by_id(request.item_id)
            name = item.name if item is not None else f"item {request.item_id}"
            await send_best_effort(
                self.notifier,
                request.requester_id,
                f"Your {name} request was closed after "
                f"{self.settings.stale_ticket_minutes} minutes without activity.",
                timeout=self.settings.notify_timeout_seconds,
            )
        return closed

    async def run_housekeeping_cycle(self) -> int:
        swept = self.limiter.sweep()
        removed = await self.scheduler.cleanup(timedelta(hours=self.settings.restock_retention_hours))
        if swept:
            logger.debug("Swept %d expired rate-limit window(s)", swept)
        return removed

    # Audit subscribers ---------------------------------------------------

    async def _on_stock_added(self, event: AuditEvent) -> None:
        if event.item_id is not None:
            await self.waitlist.drain(event.item_id)
            await self.panel.refresh()

    async def _on_request_completed(self, event: AuditEvent) -> None:
        if event.user_id is None or event.item_id is None:
            return
        item = self.catalog.item_by_id(event.item_id)
        hours = self.lifecycle.cooldown_hours(item)
        name = item.name if item is not None else f"item {event.item_id}"
        available_at = event.occurred_at + timedelta(hours=hours)
        await send_best_effort(
            self.notifier,
            event.user_id,
            f"Your {name} activation is complete. You can request it again at "
            f"{available_at.isoformat()} (cooldown: {hours} hours).",
            timeout=self.settings.notify_timeout_seconds,
        )
