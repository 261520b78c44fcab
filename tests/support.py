"""
Shared test helpers: fixed clock start, a small catalog, recording and failing
notifiers, a store that loses write responses after committing, and a Pool
bundle wiring every service to one InMemoryStore.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from domain.catalog import Item
from domain.errors import TransientStoreError
from domain.events import AuditEvent
from repositories.memory_store import InMemoryStore
from services.audit import AuditHooks
from services.catalog import StaticCatalog
from services.clock import ManualClock
from services.membership import InMemoryTierDirectory
from services.request_lifecycle import RequestLifecycle
from services.restock_scheduler import RestockScheduler
from services.retry import RetryPolicy
from services.stock_ledger import StockLedger
from services.waitlist_notifier import WaitlistNotifier

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

GAME = Item(item_id=100, name="Space Game")
HOT_GAME = Item(item_id=200, name="Hot Game", high_demand=True)
OTHER_GAME = Item(item_id=300, name="Other Game")

NO_RETRY_DELAY = RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


class RecordingNotifier:
    """Records every message; optionally fails or hangs for chosen users."""

    def __init__(self, *, fail_for: Optional[Set[str]] = None, hang_for: Optional[Set[str]] = None):
        self.sent: List[Tuple[str, str]] = []
        self.attempted: List[str] = []
        self._fail_for = fail_for or set()
        self._hang_for = hang_for or set()

    async def send(self, user_id: str, message: str) -> None:
        self.attempted.append(user_id)
        if user_id in self._hang_for:
            await asyncio.sleep(3600)
        if user_id in self._fail_for:
            raise ConnectionError(f"cannot reach {user_id}")
        self.sent.append((user_id, message))

    @property
    def recipients(self) -> List[str]:
        return [user_id for user_id, _ in self.sent]


class LostResponseStore(InMemoryStore):
    """
    Applies a write, then raises TransientStoreError as if the response never
    arrived. Each named method fails this way once.
    """

    def __init__(self, *methods: str):
        super().__init__()
        self.pending: Set[str] = set(methods)
        self.calls: Dict[str, int] = {}

    def _after_commit(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        if method in self.pending:
            self.pending.discard(method)
            raise TransientStoreError(f"{method}: connection reset after commit")

    async def increment_stock(self, *args: Any, **kwargs: Any) -> Any:
        result = await super().increment_stock(*args, **kwargs)
        self._after_commit("increment_stock")
        return result

    async def decrement_stock(self, *args: Any, **kwargs: Any) -> Any:
        result = await super().decrement_stock(*args, **kwargs)
        self._after_commit("decrement_stock")
        return result

    async def insert_request(self, *args: Any, **kwargs: Any) -> Any:
        result = await super().insert_request(*args, **kwargs)
        self._after_commit("insert_request")
        return result

    async def update_request(self, *args: Any, **kwargs: Any) -> Any:
        result = await super().update_request(*args, **kwargs)
        self._after_commit("update_request")
        return result

    async def complete_request(self, *args: Any, **kwargs: Any) -> Any:
        result = await super().complete_request(*args, **kwargs)
        self._after_commit("complete_request")
        return result

    async def insert_restock(self, *args: Any, **kwargs: Any) -> Any:
        result = await super().insert_restock(*args, **kwargs)
        self._after_commit("insert_restock")
        return result


@dataclass
class Pool:
    store: InMemoryStore
    clock: ManualClock
    audit: AuditHooks
    ledger: StockLedger
    scheduler: RestockScheduler
    waitlist: WaitlistNotifier
    lifecycle: RequestLifecycle
    notifier: RecordingNotifier
    tiers: InMemoryTierDirectory
    catalog: StaticCatalog
    events: List[AuditEvent] = field(default_factory=list)


def make_pool(
    *,
    notifier: Optional[RecordingNotifier] = None,
    tiers: Optional[Dict[str, int]] = None,
    send_timeout: float = 1.0,
    store: Optional[InMemoryStore] = None,
) -> Pool:
    store = store or InMemoryStore()
    clock = ManualClock(T0)
    audit = AuditHooks()
    catalog = StaticCatalog([GAME, HOT_GAME, OTHER_GAME])
    notifier = notifier or RecordingNotifier()
    tier_directory = InMemoryTierDirectory()
    for user_id, tier in (tiers or {}).items():
        tier_directory.set_tier(user_id, tier)  # type: ignore[arg-type]

    ledger = StockLedger(store, clock=clock, audit=audit, retry=NO_RETRY_DELAY)
    scheduler = RestockScheduler(store, clock=clock, retry=NO_RETRY_DELAY)
    waitlist = WaitlistNotifier(
        store,
        ledger,
        notifier=notifier,
        tiers=tier_directory,
        catalog=catalog,
        audit=audit,
        clock=clock,
        send_timeout=send_timeout,
        retry=NO_RETRY_DELAY,
    )
    lifecycle = RequestLifecycle(
        store,
        ledger,
        scheduler,
        catalog,
        waitlist=waitlist,
        audit=audit,
        clock=clock,
        retry=NO_RETRY_DELAY,
    )
    pool = Pool(
        store=store,
        clock=clock,
        audit=audit,
        ledger=ledger,
        scheduler=scheduler,
        waitlist=waitlist,
        lifecycle=lifecycle,
        notifier=notifier,
        tiers=tier_directory,
        catalog=catalog,
    )
    audit.subscribe(None, pool.events.append)
    return pool


async def claimed_and_verified(pool: Pool, *, requester: str = "buyer", supplier: str = "s1", item: Item = GAME):
    """Create, claim and verify one request; stock must already exist."""

    request = await pool.lifecycle.create(item.item_id, requester)
    await pool.lifecycle.claim(request.request_id, supplier)
    return await pool.lifecycle.mark_evidence_verified(request.request_id)
