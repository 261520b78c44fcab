"""
Domain: error taxonomy for the activation pool.

Every precondition failure carries a human-readable ``reason`` that callers
(chat-command layer, HTTP layer) can show to the user as-is.

Kinds:
- InvalidQuantity, InsufficientStock: stock ledger preconditions.
- NoStockAvailable, OnCooldown: request creation preconditions. Both carry
  enough detail for the caller to offer a waitlist-join fallback.
- AlreadyClaimed, NotEligible, InvalidState: lifecycle preconditions violated
  by a race or misuse. Never retried automatically.
- NotFound: referenced request / stock entry / waitlist entry is absent.
- RateLimited: the caller exceeded an action's rate window.
- Unavailable: transient persistence failures exhausted their retries; the
  operation must be treated as not having happened.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class PoolError(Exception):
    """Base class for all activation pool precondition failures."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidQuantity(PoolError):
    def __init__(self, quantity: object):
        self.quantity = quantity
        super().__init__(f"Quantity must be a positive whole number, got {quantity!r}.")


class InsufficientStock(PoolError):
    def __init__(self, supplier_id: str, item_id: int, requested: int, available: int):
        self.supplier_id = supplier_id
        self.item_id = item_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for item {item_id}. "
            f"Requested: {requested}, Available: {available}"
        )


class NoStockAvailable(PoolError):
    def __init__(self, item_id: int, item_name: str, joined_waitlist: bool = False):
        self.item_id = item_id
        self.item_name = item_name
        self.joined_waitlist = joined_waitlist
        if joined_waitlist:
            reason = (
                f"{item_name} is out of stock. You've been added to the waitlist "
                f"and will be notified when it's back in stock."
            )
        else:
            reason = f"{item_name} is out of stock. Join the waitlist to be notified when it's back."
        super().__init__(reason)


class OnCooldown(PoolError):
    def __init__(self, item_id: int, item_name: str, available_at: datetime, cooldown_hours: int):
        self.item_id = item_id
        self.item_name = item_name
        self.available_at = available_at
        self.cooldown_hours = cooldown_hours
        super().__init__(
            f"You can request {item_name} again at {available_at.isoformat()} "
            f"(cooldown: {cooldown_hours} hours)."
        )


class AlreadyClaimed(PoolError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__("Request was already claimed or is no longer pending.")


class NotEligible(PoolError):
    def __init__(self, supplier_id: str, item_id: int):
        self.supplier_id = supplier_id
        self.item_id = item_id
        super().__init__("You do not have stock registered for this item.")


class InvalidState(PoolError):
    def __init__(self, request_id: str, state: str, action: str):
        self.request_id = request_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} a request in state {state}.")


class NotFound(PoolError):
    def __init__(self, kind: str, key: object):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class RateLimited(PoolError):
    def __init__(self, action: str, retry_after: int):
        self.action = action
        self.retry_after = retry_after
        super().__init__(f"Slow down! Try {action} again in {retry_after} seconds.")


class Unavailable(PoolError):
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} is temporarily unavailable. Please try again shortly.")


class TransientStoreError(Exception):
    """Raised by stores for failures that are safe to retry (timeouts, lock contention)."""


__all__ = [
    "AlreadyClaimed",
    "InsufficientStock",
    "InvalidQuantity",
    "InvalidState",
    "NoStockAvailable",
    "NotEligible",
    "NotFound",
    "OnCooldown",
    "PoolError",
    "RateLimited",
    "TransientStoreError",
    "Unavailable",
]
