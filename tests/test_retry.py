"""
Tests for `services/retry.py`.
"""

from __future__ import annotations

import asyncio

import pytest

from domain.errors import TransientStoreError, Unavailable
from services.retry import RetryPolicy, call_with_retries

NO_DELAY = RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


def test_transient_failures_are_retried_until_success() -> None:
    calls = []

    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise TransientStoreError("lock timeout")
        return "ok"

    assert asyncio.run(call_with_retries("flaky op", flaky, NO_DELAY)) == "ok"
    assert len(calls) == 3


def test_exhausted_retries_raise_unavailable() -> None:
    calls = []

    async def down() -> None:
        calls.append(1)
        raise TransientStoreError("connection reset")

    with pytest.raises(Unavailable) as excinfo:
        asyncio.run(call_with_retries("read stock", down, NO_DELAY))

    assert len(calls) == 3
    assert excinfo.value.operation == "read stock"
    assert isinstance(excinfo.value.cause, TransientStoreError)


def test_other_errors_are_not_retried() -> None:
    calls = []

    async def broken() -> None:
        calls.append(1)
        raise RuntimeError("bad schema")

    with pytest.raises(RuntimeError):
        asyncio.run(call_with_retries("read stock", broken, NO_DELAY))
    assert len(calls) == 1


def test_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(attempts=5, base_delay=0.2, max_delay=0.5)

    assert policy.delay_for(1) == pytest.approx(0.2)
    assert policy.delay_for(2) == pytest.approx(0.4)
    assert policy.delay_for(3) == pytest.approx(0.5)
