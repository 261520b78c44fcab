"""
Notification collaborator.

send(user_id, message) is best-effort: callers bound each send with a timeout
and swallow failures. Rendering for a specific chat platform happens on the
receiving side of the webhook.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, user_id: str, message: str) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log. Used when no webhook is configured."""

    async def send(self, user_id: str, message: str) -> None:
        logger.info("notify user=%s: %s", user_id, message)


class WebhookNotifier:
    """POSTs {"user_id", "message"} to a webhook that delivers the direct message."""

    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(self, user_id: str, message: str) -> None:
        response = await self._client.post(self._url, json={"user_id": user_id, "message": message})
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


async def send_best_effort(notifier: Notifier, user_id: str, message: str, *, timeout: float) -> bool:
    """Send one notification bounded by timeout. Failures are logged and reported as False."""

    try:
        await asyncio.wait_for(notifier.send(user_id, message), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Notification to %s timed out after %.1fs", user_id, timeout)
        return False
    except Exception as e:
        logger.warning("Notification to %s failed: %s", user_id, e)
        return False
    return True
