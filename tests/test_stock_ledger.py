"""
Tests for `services/stock_ledger.py`.

Covers contract rules:
- add() requires a positive whole quantity and creates the entry on first use.
- remove() clamps to the available quantity, fails on a missing or empty entry.
- debit() floors at zero and reports the amount actually removed.
- Quantities never go negative for any sequence of operations.
- aggregate() sums across suppliers; away suppliers are excluded from the
  available supplier count only.
- A retry after a write committed but its response was lost applies it once.
"""

from __future__ import annotations

import asyncio

import pytest

from domain.errors import InsufficientStock, InvalidQuantity, NotFound
from domain.events import EventType
from domain.stock import FulfillmentMethod
from tests.support import GAME, OTHER_GAME, LostResponseStore, make_pool


def test_add_creates_entry_and_accumulates() -> None:
    async def scenario() -> None:
        pool = make_pool()
        first = await pool.ledger.add("s1", GAME.item_id, 3)
        second = await pool.ledger.add("s1", GAME.item_id, 2, method="automated", credential_ref="cred-1")

        assert first.quantity == 3
        assert second.quantity == 5
        assert second.method is FulfillmentMethod.AUTOMATED
        assert second.credential_ref == "cred-1"
        assert [e.event_type for e in pool.events] == [EventType.STOCK_ADDED, EventType.STOCK_ADDED]

    asyncio.run(scenario())


@pytest.mark.parametrize("quantity", [0, -1, 10_000, 1.5, True, "3"])
def test_add_rejects_invalid_quantity(quantity: object) -> None:
    async def scenario() -> None:
        pool = make_pool()
        with pytest.raises(InvalidQuantity):
            await pool.ledger.add("s1", GAME.item_id, quantity)  # type: ignore[arg-type]
        assert await pool.ledger.entry("s1", GAME.item_id) is None

    asyncio.run(scenario())


def test_remove_clamps_to_available_quantity() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 3)

        assert await pool.ledger.remove("s1", GAME.item_id, 2) == 2
        assert await pool.ledger.remove("s1", GAME.item_id, 5) == 1
        entry = await pool.ledger.entry("s1", GAME.item_id)
        assert entry is not None and entry.quantity == 0

    asyncio.run(scenario())


def test_remove_fails_on_missing_or_empty_entry() -> None:
    async def scenario() -> None:
        pool = make_pool()

        with pytest.raises(NotFound):
            await pool.ledger.remove("s1", GAME.item_id, 1)

        await pool.ledger.add("s1", GAME.item_id, 1)
        await pool.ledger.debit("s1", GAME.item_id)
        with pytest.raises(InsufficientStock):
            await pool.ledger.remove("s1", GAME.item_id, 1)

        with pytest.raises(InvalidQuantity):
            await pool.ledger.remove("s1", GAME.item_id, 0)

    asyncio.run(scenario())


def test_debit_floors_at_zero() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)

        assert await pool.ledger.debit("s1", GAME.item_id) == 1
        assert await pool.ledger.debit("s1", GAME.item_id) == 0
        assert await pool.ledger.debit("nobody", GAME.item_id) == 0
        assert await pool.ledger.aggregate(GAME.item_id) == 0

    asyncio.run(scenario())


def test_concurrent_debits_never_go_negative() -> None:
    """Two debits racing past a quantity of 1 remove exactly one unit."""

    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 1)

        removed = await asyncio.gather(*(pool.ledger.debit("s1", GAME.item_id) for _ in range(5)))

        assert sorted(removed) == [0, 0, 0, 0, 1]
        entry = await pool.ledger.entry("s1", GAME.item_id)
        assert entry is not None and entry.quantity == 0

    asyncio.run(scenario())


def test_quantity_never_negative_for_mixed_sequence() -> None:
    async def scenario() -> None:
        pool = make_pool()
        operations = [
            ("add", 2), ("debit", 1), ("remove", 5), ("debit", 3),
            ("credit", 1), ("debit", 2), ("add", 4), ("remove", 1),
        ]
        for name, quantity in operations:
            try:
                await getattr(pool.ledger, name)("s1", GAME.item_id, quantity)
            except InsufficientStock:
                pass
            entry = await pool.ledger.entry("s1", GAME.item_id)
            assert entry is not None and entry.quantity >= 0

        entry = await pool.ledger.entry("s1", GAME.item_id)
        assert entry is not None and entry.quantity == 3

    asyncio.run(scenario())


def test_aggregate_sums_across_suppliers() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 2)
        await pool.ledger.add("s2", GAME.item_id, 3)
        await pool.ledger.add("s2", OTHER_GAME.item_id, 7)

        assert await pool.ledger.aggregate(GAME.item_id) == 5
        assert await pool.ledger.aggregate(OTHER_GAME.item_id) == 7
        assert await pool.ledger.aggregates() == {GAME.item_id: 5, OTHER_GAME.item_id: 7}
        assert len(await pool.ledger.entries_for_supplier("s2")) == 2
        assert len(await pool.ledger.entries_for_item(GAME.item_id)) == 2

    asyncio.run(scenario())


def test_away_suppliers_are_not_counted_as_available() -> None:
    async def scenario() -> None:
        pool = make_pool()
        await pool.ledger.add("s1", GAME.item_id, 2)
        await pool.ledger.add("s2", GAME.item_id, 1)
        await pool.ledger.add("s3", GAME.item_id, 1)
        await pool.ledger.debit("s3", GAME.item_id)

        assert await pool.ledger.available_supplier_count() == 2

        await pool.ledger.set_away("s1", True)
        assert await pool.ledger.is_away("s1") is True
        assert await pool.ledger.available_supplier_count() == 1
        # Away only affects availability, not stock.
        assert await pool.ledger.aggregate(GAME.item_id) == 3

        await pool.ledger.set_away("s1", False)
        assert await pool.ledger.available_supplier_count() == 2

    asyncio.run(scenario())


@pytest.mark.parametrize("operation", ["add", "credit"])
def test_retried_increment_after_lost_response_applies_once(operation: str) -> None:
    async def scenario() -> None:
        store = LostResponseStore("increment_stock")
        pool = make_pool(store=store)

        entry = await getattr(pool.ledger, operation)("s1", GAME.item_id, 5)

        assert store.calls["increment_stock"] == 2
        assert entry.quantity == 5
        assert await pool.ledger.aggregate(GAME.item_id) == 5

    asyncio.run(scenario())


def test_retried_add_emits_one_audit_event() -> None:
    async def scenario() -> None:
        pool = make_pool(store=LostResponseStore("increment_stock"))

        await pool.ledger.add("s1", GAME.item_id, 5)

        assert [e.event_type for e in pool.events] == [EventType.STOCK_ADDED]
        assert pool.events[0].quantity == 5

    asyncio.run(scenario())


def test_retried_remove_and_debit_after_lost_response_apply_once() -> None:
    async def scenario() -> None:
        store = LostResponseStore("decrement_stock")
        pool = make_pool(store=store)
        await pool.ledger.add("s1", GAME.item_id, 5)

        assert await pool.ledger.remove("s1", GAME.item_id, 2) == 2
        assert await pool.ledger.aggregate(GAME.item_id) == 3

        store.pending.add("decrement_stock")
        assert await pool.ledger.debit("s1", GAME.item_id) == 1
        assert await pool.ledger.aggregate(GAME.item_id) == 2
        assert store.calls["decrement_stock"] == 4

    asyncio.run(scenario())


def test_separate_adds_are_not_mistaken_for_replays() -> None:
    async def scenario() -> None:
        pool = make_pool()

        await asyncio.gather(*(pool.ledger.add("s1", GAME.item_id, 1) for _ in range(5)))

        assert await pool.ledger.aggregate(GAME.item_id) == 5

    asyncio.run(scenario())
