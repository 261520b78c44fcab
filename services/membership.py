"""
Membership tiers.

Tiers only order waitlist drains: higher tiers are notified first. A user
without a tier ranks lowest (Tier.NONE).
"""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, Mapping, Optional, Protocol


class Tier(IntEnum):
    NONE = 0
    LOW = 1
    MID = 2
    HIGH = 3

    @staticmethod
    def parse(value: str) -> "Tier":
        try:
            return Tier[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Invalid tier: {value}") from None


class TierDirectory(Protocol):
    async def tier_of(self, user_id: str) -> int: ...


class InMemoryTierDirectory:
    def __init__(self, tiers: Optional[Mapping[str, Tier]] = None):
        self._tiers: Dict[str, Tier] = dict(tiers or {})

    async def tier_of(self, user_id: str) -> int:
        return int(self._tiers.get(user_id, Tier.NONE))

    def set_tier(self, user_id: str, tier: Tier) -> None:
        if tier is Tier.NONE:
            self._tiers.pop(user_id, None)
        else:
            self._tiers[user_id] = tier

    def remove_tier(self, user_id: str) -> None:
        self._tiers.pop(user_id, None)
