"""
Domain: waitlist entries.

A user appears at most once per item's waitlist. Drain order is tier
descending, then join time ascending; users without a tier rank lowest.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List

from .time import require_utc_timestamp


@dataclass(frozen=True, slots=True)
class WaitlistEntry:
    item_id: int
    user_id: str
    joined_at: datetime

    def __post_init__(self) -> None:
        require_utc_timestamp("joined_at", self.joined_at)


def drain_order(entries: Iterable[WaitlistEntry], tier_of: Callable[[str], int]) -> List[WaitlistEntry]:
    return sorted(entries, key=lambda e: (-tier_of(e.user_id), e.joined_at))
