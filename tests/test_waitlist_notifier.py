"""
Tests for `services/waitlist_notifier.py`.

Covers contract rules:
- join() is idempotent per (user, item).
- drain() notifies tier descending, then join time ascending.
- drain() is a no-op while aggregate stock is 0.
- A failing or hanging send does not stop the drain or the cleanup.
- Overlapping drains of one item notify each waiter once.
"""

from __future__ import annotations

import asyncio

from domain.events import EventType
from services.membership import Tier
from tests.support import GAME, OTHER_GAME, RecordingNotifier, make_pool


def test_join_is_idempotent_and_leave_reports_removed() -> None:
    async def scenario() -> None:
        pool = make_pool()

        assert await pool.waitlist.join("u1", GAME.item_id) is True
        assert await pool.waitlist.join("u1", GAME.item_id) is False
        await pool.waitlist.join("u1", OTHER_GAME.item_id)

        assert [e.user_id for e in await pool.waitlist.waiters(GAME.item_id)] == ["u1"]
        assert sorted(await pool.waitlist.items_for("u1")) == [GAME.item_id, OTHER_GAME.item_id]
        assert await pool.waitlist.is_waiting("u1", GAME.item_id) is True

        assert await pool.waitlist.leave("u1", GAME.item_id) == 1
        assert await pool.waitlist.leave("u1", GAME.item_id) == 0
        assert await pool.waitlist.leave_all("u1") == 1
        assert await pool.waitlist.items_for("u1") == []

    asyncio.run(scenario())


def test_drain_orders_by_tier_then_join_time() -> None:
    """A(tier 0, t=1), B(tier 2, t=2), C(tier 2, t=3) are notified [B, C, A]."""

    async def scenario() -> None:
        pool = make_pool(tiers={"B": Tier.MID, "C": Tier.MID})
        for user_id in ("A", "B", "C"):
            await pool.waitlist.join(user_id, GAME.item_id)
            pool.clock.advance(seconds=1)
        await pool.ledger.add("s1", GAME.item_id, 1)

        notified = await pool.waitlist.drain(GAME.item_id)

        assert notified == 3
        assert pool.notifier.recipients == ["B", "C", "A"]
        assert await pool.waitlist.waiters(GAME.item_id) == []
        assert "Space Game is back in stock" in pool.notifier.sent[0][1]

    asyncio.run(scenario())


def test_drain_is_noop_without_stock() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.waitlist.join("u1", GAME.item_id)

        assert await pool.waitlist.drain(GAME.item_id) == 0
        assert pool.notifier.sent == []
        assert len(await pool.waitlist.waiters(GAME.item_id)) == 1
        assert not any(e.event_type is EventType.WAITLIST_DRAINED for e in pool.events)

    asyncio.run(scenario())


def test_failed_and_hanging_sends_are_isolated() -> None:
    async def scenario() -> None:
        notifier = RecordingNotifier(fail_for={"broken"}, hang_for={"slow"})
        pool = make_pool(notifier=notifier, send_timeout=0.05)
        for user_id in ("broken", "slow", "ok"):
            await pool.waitlist.join(user_id, GAME.item_id)
            pool.clock.advance(seconds=1)
        await pool.ledger.add("s1", GAME.item_id, 2)

        notified = await pool.waitlist.drain(GAME.item_id)

        assert notified == 1
        assert notifier.attempted == ["broken", "slow", "ok"]
        assert notifier.recipients == ["ok"]
        # Every waiter is cleared, including those whose send failed.
        assert await pool.waitlist.waiters(GAME.item_id) == []
        drained = [e for e in pool.events if e.event_type is EventType.WAITLIST_DRAINED]
        assert len(drained) == 1 and drained[0].quantity == 1

    asyncio.run(scenario())


def test_overlapping_drains_notify_once() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.waitlist.join("u1", GAME.item_id)
        await pool.waitlist.join("u2", GAME.item_id)
        await pool.ledger.add("s1", GAME.item_id, 1)

        results = await asyncio.gather(*(pool.waitlist.drain(GAME.item_id) for _ in range(3)))

        assert sum(results) == 2
        assert sorted(pool.notifier.recipients) == ["u1", "u2"]
        assert pool.waitlist.is_draining(GAME.item_id) is False

    asyncio.run(scenario())


def test_drain_keeps_waiters_who_join_during_the_drain() -> None:
    """Only the waiters loaded by the drain are cleared."""

    async def scenario() -> None:
        class JoiningNotifier(RecordingNotifier):
            async def send(self, user_id: str, message: str) -> None:
                await super().send(user_id, message)
                await pool.waitlist.join("late", GAME.item_id)

        pool = make_pool(notifier=JoiningNotifier())
        await pool.waitlist.join("early", GAME.item_id)
        pool.clock.advance(seconds=1)
        await pool.ledger.add("s1", GAME.item_id, 1)

        assert await pool.waitlist.drain(GAME.item_id) == 1
        assert [e.user_id for e in await pool.waitlist.waiters(GAME.item_id)] == ["late"]

    asyncio.run(scenario())
