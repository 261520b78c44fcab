"""
Audit hooks.

Services emit an AuditEvent for every state change. Subscribers (an audit
channel, a log shipper, tests) register per event type. Every event is also
written to the application log. A failing subscriber is logged and never
affects the operation that emitted the event.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, List, Optional, Union

from domain.events import AuditEvent, EventType

logger = logging.getLogger(__name__)

AuditHandler = Callable[[AuditEvent], Union[None, Awaitable[None]]]


class AuditHooks:
    def __init__(self) -> None:
        self._handlers: DefaultDict[Optional[EventType], List[AuditHandler]] = defaultdict(list)

    def subscribe(self, event_type: Optional[EventType], handler: AuditHandler) -> None:
        """Register handler for one event type, or for every event when event_type is None."""

        self._handlers[event_type].append(handler)

    async def emit(self, event: AuditEvent) -> None:
        logger.info("audit %s", event.describe())
        for handler in [*self._handlers.get(event.event_type, []), *self._handlers.get(None, [])]:
            try:
                result: Any = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Audit handler failed for %s", event.event_type.value)
