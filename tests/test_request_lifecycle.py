"""
Tests for `services/request_lifecycle.py`.

Covers contract rules:
- create() fails with NoStockAvailable / OnCooldown / NotFound.
- claim() is a one-time compare-and-set; exactly one concurrent claim wins.
- claim() has no stock effect; complete() debits once and enqueues a restock.
- complete() requires verified evidence and is effect-idempotent.
- fail() / cancel() are terminal with no stock effect.
- sweep_stale() cancels idle requests unless protected by no_auto_close.
- Writes whose response was lost after they committed are not applied twice
  and are not reported as failures.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from domain.errors import (
    AlreadyClaimed,
    InvalidState,
    NoStockAvailable,
    NotEligible,
    NotFound,
    OnCooldown,
)
from domain.events import EventType
from domain.request import Request, RequestState
from tests.support import GAME, HOT_GAME, T0, LostResponseStore, claimed_and_verified, make_pool


def test_create_requires_known_item_and_stock() -> None:
    async def scenario() -> None:
        pool = make_pool()

        with pytest.raises(NotFound):
            await pool.lifecycle.create(999, "buyer")

        with pytest.raises(NoStockAvailable) as excinfo:
            await pool.lifecycle.create(GAME.item_id, "buyer")
        assert excinfo.value.joined_waitlist is False
        assert await pool.waitlist.waiters(GAME.item_id) == []

        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")
        assert request.state is RequestState.PENDING
        assert request.supplier_id is None
        assert request.created_at == T0

    asyncio.run(scenario())


def test_create_out_of_stock_can_join_waitlist() -> None:
    async def scenario() -> None:
        pool = make_pool()

        with pytest.raises(NoStockAvailable) as excinfo:
            await pool.lifecycle.create(GAME.item_id, "buyer", auto_join_waitlist=True)

        assert excinfo.value.joined_waitlist is True
        assert "added to the waitlist" in excinfo.value.reason
        assert await pool.waitlist.is_waiting("buyer", GAME.item_id) is True

    asyncio.run(scenario())


def test_claim_assigns_supplier_without_touching_stock() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 2)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")

        claimed = await pool.lifecycle.claim(request.request_id, "s1")

        assert claimed.state is RequestState.CLAIMED
        assert claimed.supplier_id == "s1"
        assert await pool.ledger.aggregate(GAME.item_id) == 2

        with pytest.raises(AlreadyClaimed):
            await pool.lifecycle.claim(request.request_id, "s1")

    asyncio.run(scenario())


def test_claim_requires_supplier_stock() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")

        with pytest.raises(NotEligible):
            await pool.lifecycle.claim(request.request_id, "s2")

        with pytest.raises(NotFound):
            await pool.lifecycle.claim("missing", "s1")

    asyncio.run(scenario())


def test_concurrent_claims_have_exactly_one_winner() -> None:
    async def scenario() -> None:
        pool = make_pool()
        for supplier_id in ("s1", "s2", "s3"):
            await pool.ledger.add(supplier_id, GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")

        results = await asyncio.gather(
            *(pool.lifecycle.claim(request.request_id, s) for s in ("s1", "s2", "s3")),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 2 and all(isinstance(e, AlreadyClaimed) for e in losers)
        stored = await pool.lifecycle.get(request.request_id)
        assert stored.supplier_id == winners[0].supplier_id

    asyncio.run(scenario())


def test_complete_debits_and_schedules_restock() -> None:
    """Supplier has 5, a completion leaves 4 and a restock at now + 24h brings it back to 5."""

    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 5)
        request = await claimed_and_verified(pool)

        completed = await pool.lifecycle.complete(request.request_id, "token-abc")

        assert completed.state is RequestState.COMPLETED
        assert completed.completed_at == T0
        assert completed.proof == "token-abc"
        entry = await pool.ledger.entry("s1", GAME.item_id)
        assert entry is not None and entry.quantity == 4
        assert await pool.scheduler.next_restock_at("s1", GAME.item_id) == T0 + timedelta(hours=24)

        await pool.scheduler.tick(T0 + timedelta(hours=24, seconds=1))
        entry = await pool.ledger.entry("s1", GAME.item_id)
        assert entry is not None and entry.quantity == 5

    asyncio.run(scenario())


def test_high_demand_items_use_longer_cooldown() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", HOT_GAME.item_id, 2)
        request = await claimed_and_verified(pool, item=HOT_GAME)
        await pool.lifecycle.complete(request.request_id)

        assert await pool.scheduler.next_restock_at("s1", HOT_GAME.item_id) == T0 + timedelta(hours=48)
        assert await pool.lifecycle.cooldown_remaining("buyer", HOT_GAME.item_id) == timedelta(hours=48)

    asyncio.run(scenario())


def test_complete_requires_claimed_and_verified() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 2)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")

        with pytest.raises(InvalidState):
            await pool.lifecycle.complete(request.request_id)

        await pool.lifecycle.claim(request.request_id, "s1")
        with pytest.raises(InvalidState):
            await pool.lifecycle.complete(request.request_id)

        assert await pool.ledger.aggregate(GAME.item_id) == 2

    asyncio.run(scenario())


def test_double_complete_has_no_second_effect() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 5)
        request = await claimed_and_verified(pool)

        await pool.lifecycle.complete(request.request_id)
        with pytest.raises(InvalidState):
            await pool.lifecycle.complete(request.request_id)

        assert await pool.ledger.aggregate(GAME.item_id) == 4
        assert await pool.scheduler.pending_for("s1", GAME.item_id) == 1
        completions = [e for e in pool.events if e.event_type is EventType.REQUEST_COMPLETED]
        assert len(completions) == 1

    asyncio.run(scenario())


def test_concurrent_completes_debit_once() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 5)
        request = await claimed_and_verified(pool)

        results = await asyncio.gather(
            pool.lifecycle.complete(request.request_id),
            pool.lifecycle.complete(request.request_id),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InvalidState)) == 1
        assert await pool.ledger.aggregate(GAME.item_id) == 4
        assert await pool.scheduler.pending_for("s1", GAME.item_id) == 1

    asyncio.run(scenario())


def test_complete_without_remaining_stock_skips_restock() -> None:
    """A supplier who removed their last unit after the claim gets nothing restocked."""

    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await claimed_and_verified(pool)
        await pool.ledger.remove("s1", GAME.item_id, 1)

        completed = await pool.lifecycle.complete(request.request_id)

        assert completed.state is RequestState.COMPLETED
        assert await pool.ledger.aggregate(GAME.item_id) == 0
        assert await pool.scheduler.pending_counts() == {}

    asyncio.run(scenario())


def test_cooldown_blocks_new_request_for_same_item() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 5)
        await pool.ledger.add("s2", GAME.item_id, 5)
        request = await claimed_and_verified(pool)
        await pool.lifecycle.complete(request.request_id)

        pool.clock.advance(hours=23)
        with pytest.raises(OnCooldown) as excinfo:
            await pool.lifecycle.create(GAME.item_id, "buyer")
        assert excinfo.value.available_at == T0 + timedelta(hours=24)
        assert await pool.lifecycle.cooldowns_for("buyer") == {GAME.item_id: T0 + timedelta(hours=24)}

        # Other requesters are not affected.
        await pool.lifecycle.create(GAME.item_id, "someone-else")

        pool.clock.advance(hours=1)
        assert await pool.lifecycle.cooldown_remaining("buyer", GAME.item_id) == timedelta(0)
        again = await pool.lifecycle.create(GAME.item_id, "buyer")
        assert again.state is RequestState.PENDING
        assert await pool.lifecycle.cooldowns_for("buyer") == {}

    asyncio.run(scenario())


def test_fail_and_cancel_are_terminal_without_stock_effect() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 3)

        first = await pool.lifecycle.create(GAME.item_id, "buyer")
        await pool.lifecycle.claim(first.request_id, "s1")
        failed = await pool.lifecycle.fail(first.request_id, "something odd")
        assert failed.state is RequestState.FAILED
        assert failed.reason == "failed"

        second = await pool.lifecycle.create(GAME.item_id, "buyer")
        cancelled = await pool.lifecycle.cancel(second.request_id)
        assert cancelled.state is RequestState.CANCELLED
        assert cancelled.reason == "cancelled"

        with pytest.raises(InvalidState):
            await pool.lifecycle.cancel(second.request_id)
        with pytest.raises(InvalidState):
            await pool.lifecycle.fail(second.request_id, "invalid_proof")

        assert await pool.ledger.aggregate(GAME.item_id) == 3
        types = [e.event_type for e in pool.events]
        assert EventType.REQUEST_FAILED in types
        assert EventType.REQUEST_CANCELLED in types

    asyncio.run(scenario())


def test_fail_requires_claimed() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")

        with pytest.raises(InvalidState):
            await pool.lifecycle.fail(request.request_id, "invalid_token")

    asyncio.run(scenario())


def test_flag_updates_do_not_change_state() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")
        pool.clock.advance(minutes=5)

        protected = await pool.lifecycle.set_no_auto_close(request.request_id, True)
        verified = await pool.lifecycle.mark_evidence_verified(request.request_id)

        assert protected.state is RequestState.PENDING
        assert verified.no_auto_close is True
        assert verified.evidence_verified is True
        assert verified.updated_at == T0 + timedelta(minutes=5)

        with pytest.raises(NotFound):
            await pool.lifecycle.set_no_auto_close("missing", True)

    asyncio.run(scenario())


def test_stale_sweep_respects_no_auto_close() -> None:
    """An idle claimed request is cancelled; a protected one is left alone indefinitely."""

    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 5)
        idle = await pool.lifecycle.create(GAME.item_id, "idle-buyer")
        await pool.lifecycle.claim(idle.request_id, "s1")
        protected = await pool.lifecycle.create(GAME.item_id, "protected-buyer")
        await pool.lifecycle.claim(protected.request_id, "s1")
        await pool.lifecycle.set_no_auto_close(protected.request_id, True)

        pool.clock.advance(minutes=10)
        assert await pool.lifecycle.sweep_stale(timedelta(minutes=30)) == []

        pool.clock.advance(minutes=25)
        closed = await pool.lifecycle.sweep_stale(timedelta(minutes=30))
        assert [r.request_id for r in closed] == [idle.request_id]
        assert closed[0].state is RequestState.CANCELLED
        assert closed[0].reason == "stale"

        pool.clock.advance(days=30)
        assert await pool.lifecycle.sweep_stale(timedelta(minutes=30)) == []
        still_open = await pool.lifecycle.get(protected.request_id)
        assert still_open.state is RequestState.CLAIMED
        assert await pool.ledger.aggregate(GAME.item_id) == 5
        assert [e.event_type for e in pool.events].count(EventType.REQUEST_AUTO_CLOSED) == 1

    asyncio.run(scenario())


def test_activity_postpones_stale_sweep() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")

        pool.clock.advance(minutes=25)
        await pool.lifecycle.mark_evidence_verified(request.request_id)
        pool.clock.advance(minutes=25)

        assert await pool.lifecycle.sweep_stale(timedelta(minutes=30)) == []

    asyncio.run(scenario())


def test_complete_retried_after_lost_response_completes_once() -> None:
    async def scenario() -> None:
        store = LostResponseStore("complete_request")
        pool = make_pool(store=store)
        await pool.ledger.add("s1", GAME.item_id, 5)
        request = await claimed_and_verified(pool)

        completed = await pool.lifecycle.complete(request.request_id, "token-abc")

        assert store.calls["complete_request"] == 2
        assert completed.state is RequestState.COMPLETED
        assert await pool.ledger.aggregate(GAME.item_id) == 4
        assert await pool.scheduler.pending_for("s1", GAME.item_id) == 1
        completions = [e for e in pool.events if e.event_type is EventType.REQUEST_COMPLETED]
        assert len(completions) == 1 and completions[0].quantity == 1

    asyncio.run(scenario())


def test_create_and_claim_retried_after_lost_responses() -> None:
    async def scenario() -> None:
        store = LostResponseStore("insert_request", "update_request")
        pool = make_pool(store=store)
        await pool.ledger.add("s1", GAME.item_id, 1)

        created = await pool.lifecycle.create(GAME.item_id, "buyer")
        claimed = await pool.lifecycle.claim(created.request_id, "s1")

        assert store.calls["insert_request"] == 2
        assert store.calls["update_request"] == 2
        assert claimed.state is RequestState.CLAIMED
        assert claimed.supplier_id == "s1"
        assert claimed.version == 1
        assert [e.event_type for e in pool.events].count(EventType.REQUEST_CLAIMED) == 1

    asyncio.run(scenario())


def test_stale_sweep_retried_after_lost_response_reports_the_close() -> None:
    async def scenario() -> None:
        store = LostResponseStore()
        pool = make_pool(store=store)
        await pool.ledger.add("s1", GAME.item_id, 1)
        idle = await pool.lifecycle.create(GAME.item_id, "idle-buyer")

        pool.clock.advance(minutes=31)
        store.pending.add("update_request")
        closed = await pool.lifecycle.sweep_stale(timedelta(minutes=30))

        assert [r.request_id for r in closed] == [idle.request_id]
        assert closed[0].state is RequestState.CANCELLED
        assert [e.event_type for e in pool.events].count(EventType.REQUEST_AUTO_CLOSED) == 1

    asyncio.run(scenario())


def test_lost_race_is_not_mistaken_for_a_landed_write() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        request = await pool.lifecycle.create(GAME.item_id, "buyer")
        stale_read = await pool.lifecycle.get(request.request_id)

        await pool.lifecycle.cancel(request.request_id)
        attempted = stale_read.transitioned(RequestState.CLAIMED, T0, supplier_id="s1")

        assert await pool.store.update_request(attempted, {RequestState.PENDING}) is None
        stored = await pool.lifecycle.get(request.request_id)
        assert not stored.reflects(attempted)

    asyncio.run(scenario())


def test_complete_rejects_claimed_request_without_supplier() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)
        await pool.store.insert_request(
            Request(
                request_id="r-unassigned",
                item_id=GAME.item_id,
                requester_id="buyer",
                state=RequestState.CLAIMED,
                created_at=T0,
                updated_at=T0,
                evidence_verified=True,
            )
        )

        with pytest.raises(InvalidState) as excinfo:
            await pool.lifecycle.complete("r-unassigned")

        assert excinfo.value.state == "claimed without a supplier"
        assert await pool.ledger.aggregate(GAME.item_id) == 1
        assert await pool.scheduler.pending_counts() == {}

    asyncio.run(scenario())
