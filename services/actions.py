"""
Caller actions.

Every user-facing operation is a frozen dataclass. ActionDispatcher resolves
the handler for an action type from one table, applies the action's rate
limit and converts pool errors into an ActionResult carrying the
human-readable reason, so a chat-command layer can reply without knowing the
error taxonomy.

Adding an action type without a handler is caught when the dispatcher is
constructed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Dict, Mapping, Optional, Tuple, Type, Union

from domain.errors import PoolError, RateLimited
from domain.stock import FulfillmentMethod
from services.rate_limiter import RateLimiter
from services.request_lifecycle import RequestLifecycle
from services.stock_ledger import StockLedger
from services.waitlist_notifier import WaitlistNotifier
from settings import DEFAULT_RATE_LIMITS, RateLimitRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CreateRequest:
    item_id: int
    requester_id: str
    auto_join_waitlist: bool = True
    rate_limit: ClassVar[Optional[str]] = "request"

    @property
    def subject(self) -> str:
        return self.requester_id


@dataclass(frozen=True, slots=True)
class ClaimRequest:
    request_id: str
    supplier_id: str
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class CompleteRequest:
    request_id: str
    proof: Optional[str] = None
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class FailRequest:
    request_id: str
    reason: str = "failed"
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class CancelRequest:
    request_id: str
    reason: str = "cancelled"
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class VerifyEvidence:
    request_id: str
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class SetNoAutoClose:
    request_id: str
    flag: bool
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class AddStock:
    supplier_id: str
    item_id: int
    quantity: int
    method: FulfillmentMethod = FulfillmentMethod.MANUAL
    credential_ref: Optional[str] = None
    rate_limit: ClassVar[Optional[str]] = "add"

    @property
    def subject(self) -> str:
        return self.supplier_id


@dataclass(frozen=True, slots=True)
class RemoveStock:
    supplier_id: str
    item_id: int
    quantity: int
    rate_limit: ClassVar[Optional[str]] = "remove"

    @property
    def subject(self) -> str:
        return self.supplier_id


@dataclass(frozen=True, slots=True)
class SetAway:
    supplier_id: str
    away: bool
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class JoinWaitlist:
    user_id: str
    item_id: int
    rate_limit: ClassVar[Optional[str]] = "waitlist"

    @property
    def subject(self) -> str:
        return self.user_id


@dataclass(frozen=True, slots=True)
class LeaveWaitlist:
    user_id: str
    item_id: int
    rate_limit: ClassVar[Optional[str]] = None


@dataclass(frozen=True, slots=True)
class LeaveAllWaitlists:
    user_id: str
    rate_limit: ClassVar[Optional[str]] = None


Action = Union[
    CreateRequest,
    ClaimRequest,
    CompleteRequest,
    FailRequest,
    CancelRequest,
    VerifyEvidence,
    SetNoAutoClose,
    AddStock,
    RemoveStock,
    SetAway,
    JoinWaitlist,
    LeaveWaitlist,
    LeaveAllWaitlists,
]

ACTION_TYPES: Tuple[Type[Any], ...] = Action.__args__  # type: ignore[attr-defined]

Handler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    value: Any = None
    reason: Optional[str] = None

    @staticmethod
    def success(value: Any = None) -> "ActionResult":
        return ActionResult(ok=True, value=value)

    @staticmethod
    def failure(error: PoolError) -> "ActionResult":
        return ActionResult(ok=False, value=error, reason=error.reason)


class ActionDispatcher:
    def __init__(
        self,
        lifecycle: RequestLifecycle,
        ledger: StockLedger,
        waitlist: WaitlistNotifier,
        limiter: RateLimiter,
        *,
        rate_limits: Mapping[str, RateLimitRule] = DEFAULT_RATE_LIMITS,
    ):
        self._limiter = limiter
        self._rate_limits = rate_limits
        self._handlers = self._handler_table(lifecycle, ledger, waitlist)
        missing = [t.__name__ for t in ACTION_TYPES if t not in self._handlers]
        if missing:
            raise TypeError(f"No handler registered for action(s): {', '.join(missing)}")

    @staticmethod
    def _handler_table(
        lifecycle: RequestLifecycle, ledger: StockLedger, waitlist: WaitlistNotifier
    ) -> Dict[Type[Any], Handler]:
        return {
            CreateRequest: lambda a: lifecycle.create(
                a.item_id, a.requester_id, auto_join_waitlist=a.auto_join_waitlist
            ),
            ClaimRequest: lambda a: lifecycle.claim(a.request_id, a.supplier_id),
            CompleteRequest: lambda a: lifecycle.complete(a.request_id, a.proof),
            FailRequest: lambda a: lifecycle.fail(a.request_id, a.reason),
            CancelRequest: lambda a: lifecycle.cancel(a.request_id, a.reason),
            VerifyEvidence: lambda a: lifecycle.mark_evidence_verified(a.request_id),
            SetNoAutoClose: lambda a: lifecycle.set_no_auto_close(a.request_id, a.flag),
            AddStock: lambda a: ledger.add(
                a.supplier_id, a.item_id, a.quantity, method=a.method, credential_ref=a.credential_ref
            ),
            RemoveStock: lambda a: ledger.remove(a.supplier_id, a.item_id, a.quantity),
            SetAway: lambda a: ledger.set_away(a.supplier_id, a.away),
            JoinWaitlist: lambda a: waitlist.join(a.user_id, a.item_id),
            LeaveWaitlist: lambda a: waitlist.leave(a.user_id, a.item_id),
            LeaveAllWaitlists: lambda a: waitlist.leave_all(a.user_id),
        }

    def check_rate_limit(self, action: Action) -> None:
        """Raise RateLimited if the action's subject exceeded its window."""

        key = action.rate_limit
        if key is None:
            return
        rule = self._rate_limits.get(key, RateLimitRule(5, 60_000))
        subject = action.subject  # type: ignore[union-attr]
        if not self._limiter.check(subject, key, rule.max_attempts, rule.window_ms):
            raise RateLimited(key, self._limiter.remaining_cooldown(subject, key))

    async def dispatch(self, action: Action) -> ActionResult:
        handler = self._handlers.get(type(action))
        if handler is None:
            raise TypeError(f"Unknown action type: {type(action).__name__}")
        try:
            self.check_rate_limit(action)
            value = await handler(action)
        except PoolError as e:
            logger.info("%s rejected: %s", type(action).__name__, e.reason)
            return ActionResult.failure(e)
        return ActionResult.success(value)
