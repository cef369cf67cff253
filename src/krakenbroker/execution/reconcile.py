"""Reconciler: compares tracked order state with the exchange + orphan detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from krakenbroker.errors import AuthenticationFailed, BrokerageError
from krakenbroker.execution.exchange import ExchangeAdapter
from krakenbroker.models import Order, OrderStatus

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "open": OrderStatus.SUBMITTED,
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
    "rejected": OrderStatus.INVALID,
}


@dataclass
class ReconcileReport:
    mismatches: list[tuple[Order, str]] = field(default_factory=list)
    orphans: list[dict[str, Any]] = field(default_factory=list)
    unacknowledged: list[Order] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.mismatches or self.orphans or self.unacknowledged)


class Reconciler:
    def __init__(self, exchange: ExchangeAdapter) -> None:
        self._exchange = exchange

    async def reconcile(self, local_orders: list[Order]) -> list[tuple[Order, str]]:
        mismatches: list[tuple[Order, str]] = []
        for order in local_orders:
            if not order.broker_id:
                continue
            try:
                remote = await self._exchange.fetch_order(order.broker_id, order.symbol.pair)
            except AuthenticationFailed:
                raise
            except BrokerageError as e:
                logger.warning("Failed to fetch order %s: %s", order.broker_id, e)
                continue
            remote_status = _STATUS_MAP.get(remote.get("status", ""), None)
            if remote_status is None:
                continue
            local = order.status
            if local == OrderStatus.PARTIALLY_FILLED and remote_status == OrderStatus.SUBMITTED:
                continue
            if remote_status != local:
                mismatches.append((order, remote_status.value))
                logger.warning("Mismatch: %s local=%s remote=%s", order.broker_id, local.value, remote_status.value)
        return mismatches

    async def detect_orphans(self, local_ids: set[str]) -> list[dict[str, Any]]:
        """Detect exchange orders not tracked locally."""
        orphans = []
        try:
            open_orders = await self._exchange.fetch_open_orders()
        except AuthenticationFailed:
            raise
        except BrokerageError as e:
            logger.warning("Orphan detection failed: %s", e)
            return orphans
        for o in open_orders:
            if o.get("id") not in local_ids:
                orphans.append(o)
                logger.warning("Orphan order detected: %s", o.get("id"))
        return orphans
