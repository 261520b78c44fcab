"""
Bounded retries for transient persistence failures.

Service operations wrap their store calls with call_with_retries(). Only
TransientStoreError is retried; once attempts are exhausted the failure is
surfaced as Unavailable. A transient failure can follow a write that did
commit, so every wrapped write must be replay-safe (operation ids, keyed
inserts and version checks; see repositories/store.py). Stores never leave a
partial effect: a call either applied completely or not at all.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from domain.errors import TransientStoreError, Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff: base, 2*base, 4*base ... capped at max_delay."""

        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


async def call_with_retries(
    operation: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
) -> T:
    """
    Await call(), retrying TransientStoreError up to policy.attempts times.

    Raises:
        Unavailable: if every attempt failed transiently.
    """

    last_error: TransientStoreError | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await call()
        except TransientStoreError as e:
            last_error = e
            if attempt == policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed transiently (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                attempt,
                policy.attempts,
                delay,
                e,
            )
            await asyncio.sleep(delay)

    logger.error("%s unavailable after %d attempts: %s", operation, policy.attempts, last_error)
    raise Unavailable(operation, last_error)
