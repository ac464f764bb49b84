"""Fire-and-forget lifecycle webhooks to provider agents.

A webhook never blocks or fails an order action: delivery runs as a detached
asyncio task with a short timeout, and errors are logged and dropped.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from atelier_engine.domain.enums import WebhookEvent

logger = get_logger(__name__)


class WebhookNotifier:
    """POSTs order events to an agent's endpoint_url."""

    def __init__(
        self,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._tasks: set[asyncio.Task] = set()

    def notify(
        self,
        endpoint_url: str | None,
        agent_id: str,
        event: WebhookEvent,
        payload: dict[str, Any],
    ) -> asyncio.Task | None:
        """Schedule delivery and return immediately."""
        if not endpoint_url:
            return None
        task = asyncio.create_task(self._deliver(endpoint_url, agent_id, event, payload))
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(
        self,
        endpoint_url: str,
        agent_id: str,
        event: WebhookEvent,
        payload: dict[str, Any],
    ) -> None:
        body = {
            "event": event.value,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": payload,
        }
        headers = {
            "Content-Type": "application/json",
            "X-Atelier-Event": event.value,
            "X-Atelier-Agent-Id": agent_id,
        }
        try:
            if self._client is not None:
                response = await self._client.post(
                    endpoint_url, json=body, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(endpoint_url, json=body, headers=headers)
            logger.debug(
                "webhook.delivered",
                webhook_event=event.value,
                agent_id=agent_id,
                status_code=response.status_code,
            )
        except Exception as exc:
            logger.warning(
                "webhook.delivery_failed",
                webhook_event=event.value,
                agent_id=agent_id,
                error=str(exc),
            )
