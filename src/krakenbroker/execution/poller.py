"""Asyncio polling loop that drives order status updates."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from krakenbroker.errors import AuthenticationFailed

if TYPE_CHECKING:
    from krakenbroker.brokerage import KrakenBrokerage

logger = logging.getLogger(__name__)


class OrderPoller:
    def __init__(self, brokerage: KrakenBrokerage, interval_s: float = 2.0):
        self.brokerage = brokerage
        self.interval = interval_s
        self._running = False
        self._status: dict[str, Any] = {"events": 0, "last_error": None}

    async def start(self) -> None:
        self._running = True
        logger.info("Order poller started: interval=%.1fs", self.interval)
        while self._running:
            try:
                await self.run_once()
            except AuthenticationFailed as e:
                logger.error("Order poller stopped: %s", e)
                self._status["last_error"] = str(e)
                self._running = False
                raise
            self._status["next_run"] = (datetime.now(UTC) + timedelta(seconds=self.interval)).isoformat()
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def status(self) -> dict[str, Any]:
        return self._status

    async def run_once(self) -> int:
        self._status["last_run"] = datetime.now(UTC).isoformat()
        try:
            events = await self.brokerage.poll_orders()
        except AuthenticationFailed:
            raise
        except Exception as e:
            logger.error("Order poll failed: %s", e)
            self._status["last_error"] = str(e)
            return 0
        self._status["last_error"] = None
        self._status["events"] += len(events)
        return len(events)
