"""
Domain: Request (ticket) lifecycle.

A Request is one user's in-flight transaction against one item.

State machine:
- PENDING  --claim-->            CLAIMED
- PENDING  --cancel-->           CANCELLED
- CLAIMED  --complete-->         COMPLETED
- CLAIMED  --fail-->             FAILED
- CLAIMED  --cancel-->           CANCELLED
- PENDING/CLAIMED --stale sweep--> CANCELLED (reason "stale", unless no_auto_close)

COMPLETED, FAILED and CANCELLED are terminal.

Supplier assignment is a one-time compare-and-set: the store applies a
transition only if the stored state is still one of the expected source
states and the stored row version is the one the caller read. This module
contains only the pure entity and transition rules.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Mapping, Optional

from .time import require_utc_timestamp


class RequestState(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[RequestState] = frozenset(
    {RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED}
)

ACTIVE_STATES: FrozenSet[RequestState] = frozenset({RequestState.PENDING, RequestState.CLAIMED})

# Source states allowed for each target state.
TRANSITIONS: Mapping[RequestState, FrozenSet[RequestState]] = {
    RequestState.CLAIMED: frozenset({RequestState.PENDING}),
    RequestState.COMPLETED: frozenset({RequestState.CLAIMED}),
    RequestState.FAILED: frozenset({RequestState.CLAIMED}),
    RequestState.CANCELLED: ACTIVE_STATES,
}

VALID_FAIL_REASONS: FrozenSet[str] = frozenset({"failed", "invalid_proof", "invalid_token"})
STALE_REASON: str = "stale"


def can_transition(source: RequestState, target: RequestState) -> bool:
    return source in TRANSITIONS.get(target, frozenset())


def normalize_fail_reason(reason: Optional[str]) -> str:
    """Unknown fail reasons collapse to 'failed'."""

    return reason if reason in VALID_FAIL_REASONS else "failed"


@dataclass(frozen=True, slots=True)
class Request:
    """
    Immutable snapshot of a request.

    Transitions return new instances; the store is the source of truth and
    applies them with compare-and-set semantics.
    """

    request_id: str
    item_id: int
    requester_id: str
    state: RequestState
    created_at: datetime
    updated_at: datetime
    supplier_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    no_auto_close: bool = False
    evidence_verified: bool = False
    proof: Optional[str] = None
    reason: Optional[str] = None
    # Row version; the store only applies a write whose version matches the stored one.
    version: int = 0

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        require_utc_timestamp("updated_at", self.updated_at)
        if self.completed_at is not None:
            require_utc_timestamp("completed_at", self.completed_at)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def is_stale(self, cutoff: datetime) -> bool:
        """True if the request may be auto-closed: active, unprotected, idle since before cutoff."""

        return not self.is_terminal and not self.no_auto_close and self.updated_at < cutoff

    def transitioned(self, target: RequestState, at: datetime, **changes: object) -> "Request":
        """
        Return a new Request in the target state.

        Raises ValueError if the transition is not allowed from the current state.
        """

        require_utc_timestamp("at", at)
        if not can_transition(self.state, target):
            raise ValueError(f"Illegal transition {self.state.value} -> {target.value}")
        return replace(self, state=target, updated_at=at, **changes)  # type: ignore[arg-type]

    def touched(self, at: datetime, **changes: object) -> "Request":
        """Return a copy with flag changes and refreshed activity time (no state change)."""

        require_utc_timestamp("at", at)
        return replace(self, updated_at=at, **changes)  # type: ignore[arg-type]

    def reflects(self, attempted: "Request") -> bool:
        """True if this stored row is exactly the attempted write, applied once."""

        return self == replace(attempted, version=attempted.version + 1)
