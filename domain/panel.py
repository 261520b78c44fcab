"""
Domain: public stock panel.

There is at most one active panel. It is modeled as an explicit singleton
record with a create/replace/clear lifecycle owned by PanelSync, never as
implicit module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .time import require_utc_timestamp


@dataclass(frozen=True, slots=True)
class PanelRecord:
    guild_id: str
    channel_id: str
    message_id: str
    updated_at: datetime
    paused: bool = False
    reopen_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("updated_at", self.updated_at)
        if self.reopen_at is not None:
            require_utc_timestamp("reopen_at", self.reopen_at)


@dataclass(frozen=True, slots=True)
class ItemAvailability:
    item_id: int
    name: str
    high_demand: bool
    stock: int
    pending_restock: int

    @property
    def in_stock(self) -> bool:
        return self.stock > 0


@dataclass(frozen=True, slots=True)
class PanelView:
    """Read-only aggregate view rendered by the chat/HTTP layer."""

    generated_at: datetime
    items: List[ItemAvailability] = field(default_factory=list)
    available_suppliers: int = 0
    paused: bool = False
    reopen_at: Optional[datetime] = None

    @property
    def total_stock(self) -> int:
        return sum(item.stock for item in self.items)

    @property
    def in_stock_items(self) -> List[ItemAvailability]:
        return [item for item in self.items if item.in_stock]
