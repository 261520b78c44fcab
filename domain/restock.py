"""
Domain: deferred stock credits.

A RestockQueueEntry is created when a request completes and consumed once its
scheduled time has elapsed. Several entries for the same (supplier, item) may
coexist when several completions happen before their cooldowns expire.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

from .time import require_utc_timestamp


@dataclass(frozen=True, slots=True)
class RestockQueueEntry:
    entry_id: str
    supplier_id: str
    item_id: int
    scheduled_at: datetime
    pending_quantity: int = 1

    def __post_init__(self) -> None:
        require_utc_timestamp("scheduled_at", self.scheduled_at)
        if self.pending_quantity <= 0:
            raise ValueError("pending_quantity must be > 0")

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_at <= now


@dataclass(frozen=True, slots=True)
class RestockCredit:
    """One (supplier, item) group credited by a scheduler tick."""

    supplier_id: str
    item_id: int
    quantity: int


def group_credits(entries: Iterable[RestockQueueEntry]) -> List[RestockCredit]:
    """Sum pending quantities per (supplier, item), preserving first-seen order."""

    totals: Dict[Tuple[str, int], int] = defaultdict(int)
    for entry in entries:
        totals[(entry.supplier_id, entry.item_id)] += entry.pending_quantity
    return [
        RestockCredit(supplier_id=supplier_id, item_id=item_id, quantity=quantity)
        for (supplier_id, item_id), quantity in totals.items()
    ]
