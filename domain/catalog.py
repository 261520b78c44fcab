"""
Domain: catalog items and cooldown policy.

Items are read-only catalog entries sourced from an external catalog
collaborator. The core never mutates them.

Cooldown policy:
- cooldown_for(item) = 48 hours if item.high_demand else 24 hours
- The same duration gates both a requester asking for the same item again
  and the restock of the unit their completed request consumed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

COOLDOWN_HOURS_NORMAL: int = 24
COOLDOWN_HOURS_HIGH_DEMAND: int = 48


@dataclass(frozen=True, slots=True)
class Item:
    """A catalog entry that requests are made against."""

    item_id: int
    name: str
    high_demand: bool = False

    def __post_init__(self) -> None:
        if self.item_id <= 0:
            raise ValueError("item_id must be a positive integer")
        if not self.name.strip():
            raise ValueError("item name must not be empty")

    @property
    def display_name(self) -> str:
        return f"{self.name} (high demand)" if self.high_demand else self.name


def cooldown_hours_for(
    item: Item,
    *,
    normal_hours: int = COOLDOWN_HOURS_NORMAL,
    high_demand_hours: int = COOLDOWN_HOURS_HIGH_DEMAND,
) -> int:
    return high_demand_hours if item.high_demand else normal_hours


def cooldown_for(
    item: Item,
    *,
    normal_hours: int = COOLDOWN_HOURS_NORMAL,
    high_demand_hours: int = COOLDOWN_HOURS_HIGH_DEMAND,
) -> timedelta:
    """Cooldown duration for an item (high-demand items wait longer)."""

    return timedelta(
        hours=cooldown_hours_for(item, normal_hours=normal_hours, high_demand_hours=high_demand_hours)
    )
