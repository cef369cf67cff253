"""Webhook notification of order events — async, fire-and-forget."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from krakenbroker.models import OrderEvent

logger = logging.getLogger(__name__)


def event_payload(event: OrderEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event.status.value,
        "event_id": event.event_id,
        "order_id": event.order_id,
        "broker_id": event.broker_id,
        "symbol": event.symbol.ticker,
        "direction": event.direction.value,
        "timestamp": event.timestamp.isoformat(),
    }
    if event.is_fill:
        payload["fill_price"] = str(event.fill_price)
        payload["fill_quantity"] = str(event.fill_quantity)
    if event.fee is not None:
        payload["fee"] = {"currency": event.fee.currency, "amount": str(event.fee.amount)}
    if event.message:
        payload["message"] = event.message
    return payload


class WebhookNotifier:
    """Order sink that posts selected events to a webhook."""

    def __init__(self, webhook_url: str = "", enabled: bool = True, events: list[str] | None = None):
        self._url = webhook_url
        self._enabled = enabled and bool(webhook_url)
        self._events = set(events or ["filled", "cancelled", "invalid"])
        self._pending: set[asyncio.Task] = set()

    def on_order_event(self, event: OrderEvent) -> None:
        if not self._enabled or event.status.value not in self._events:
            return
        task = asyncio.get_running_loop().create_task(self.notify(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def notify(self, event: OrderEvent) -> None:
        if not self._enabled or event.status.value not in self._events:
            return
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                await client.post(self._url, json=event_payload(event))
        except Exception as e:
            logger.warning("Notification failed: %s", e)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
