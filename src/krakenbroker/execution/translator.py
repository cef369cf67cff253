"""Translate exchange order snapshots into normalized order events.

Kraken (through ccxt) reports an order as a snapshot: a status string and the
cumulative filled amount. The translator turns successive snapshots into a
per-order event stream:

* fills are emitted as increments of the cumulative amount, so re-delivering a
  snapshot never produces a second fill;
* every event carries a deterministic ``event_id`` and is emitted at most once;
* snapshots that would move an order backwards (stale polls) are dropped;
* an exchange status with no mapping fails closed as ``invalid``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from krakenbroker.execution.order import OrderManager
from krakenbroker.fees import KrakenFeeModel
from krakenbroker.models import (
    Order,
    OrderEvent,
    OrderFee,
    OrderStatus,
    OrderType,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "pending": OrderStatus.SUBMITTED,
    "open": OrderStatus.SUBMITTED,
    "closed": OrderStatus.FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
    "rejected": OrderStatus.INVALID,
}

_ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _timestamp(raw: dict[str, Any]) -> datetime:
    ts = raw.get("timestamp")
    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts / 1000, tz=UTC)
    return datetime.now(UTC)


class OrderEventTranslator:
    def __init__(self, fee_model: KrakenFeeModel | None = None, manager: OrderManager | None = None) -> None:
        self._fees = fee_model or KrakenFeeModel()
        self._manager = manager or OrderManager()
        self._seen: dict[int, set[str]] = {}
        self._filled: dict[int, Decimal] = {}
        self._cost: dict[int, Decimal] = {}
        self._rested: set[int] = set()

    def submitted(self, order: Order, message: str = "") -> list[OrderEvent]:
        return self._emit(order, OrderStatus.SUBMITTED, message=message)

    def invalid(self, order: Order, message: str) -> list[OrderEvent]:
        return self._emit(order, OrderStatus.INVALID, message=message)

    def translate(self, order: Order, raw: dict[str, Any]) -> list[OrderEvent]:
        """Apply one exchange snapshot of ``order`` and return the new events, in order."""
        if order.is_terminal:
            return []

        raw_status = str(raw.get("status") or "").lower()
        target = _STATUS_MAP.get(raw_status)
        when = _timestamp(raw)
        events: list[OrderEvent] = []

        # Acknowledgment and fill can arrive in the same response.
        if order.status == OrderStatus.NEW and target is not None and target != OrderStatus.INVALID:
            events += self.submitted(order)

        if target is None:
            logger.error("Order %s: unmapped exchange status %r, marking invalid", order.broker_id, raw_status)
            return events + self._emit(
                order, OrderStatus.INVALID, when=when,
                message=f"Unmapped exchange status {raw_status!r}",
            )

        filled_total = to_decimal(raw.get("filled")) or _ZERO
        if target == OrderStatus.FILLED and filled_total == 0:
            filled_total = order.absolute_quantity
        previous = self._filled.get(order.id, _ZERO)
        delta = filled_total - previous

        if target == OrderStatus.SUBMITTED and filled_total == 0:
            if order.order_type == OrderType.LIMIT:
                self._rested.add(order.id)
            return events

        if delta > 0:
            fill_status = OrderStatus.FILLED if target == OrderStatus.FILLED else OrderStatus.PARTIALLY_FILLED
            price = self._increment_price(order, raw, filled_total, delta)
            fill_events = self._emit(
                order, fill_status, when=when, price=price, quantity=delta,
                cumulative=filled_total,
            )
            if fill_events:
                self._filled[order.id] = filled_total
                self._cost[order.id] = self._cost.get(order.id, _ZERO) + price * delta
            events += fill_events
        elif delta < 0:
            logger.debug("Order %s: stale snapshot filled=%s < %s", order.broker_id, filled_total, previous)
            return events

        if target in (OrderStatus.CANCELLED, OrderStatus.INVALID):
            events += self._emit(order, target, when=when, cumulative=filled_total,
                                 message=str(raw.get("reason") or ""))
        return events

    def forget(self, order: Order) -> None:
        """Drop per-order state once the order is terminal."""
        self._seen.pop(order.id, None)
        self._filled.pop(order.id, None)
        self._cost.pop(order.id, None)
        self._rested.discard(order.id)

    def _increment_price(self, order: Order, raw: dict[str, Any], filled_total: Decimal, delta: Decimal) -> Decimal:
        average = to_decimal(raw.get("average"))
        cost = to_decimal(raw.get("cost"))
        if cost is None and average is not None:
            cost = average * filled_total
        if cost is not None:
            return (cost - self._cost.get(order.id, _ZERO)) / delta
        return to_decimal(raw.get("price")) or order.limit_price or order.stop_price or _ZERO

    def _is_maker(self, order: Order) -> bool:
        return order.post_only or order.id in self._rested

    def _emit(
        self,
        order: Order,
        status: OrderStatus,
        *,
        when: datetime | None = None,
        price: Decimal = _ZERO,
        quantity: Decimal = _ZERO,
        cumulative: Decimal | None = None,
        message: str = "",
    ) -> list[OrderEvent]:
        progress = self._filled.get(order.id, _ZERO) if cumulative is None else cumulative
        event_id = f"{order.broker_id or order.id}:{status.value}:{progress}"
        if event_id in self._seen.get(order.id, ()):
            logger.debug("Duplicate order event %s dropped", event_id)
            return []
        if not self._manager.can_transition(order, status):
            logger.debug("Order %s: ignoring %s -> %s", order.broker_id, order.status.value, status.value)
            return []

        fee: OrderFee | None = None
        if quantity > 0:
            fee = self._fees.compute_fee(
                price, quantity, order.symbol,
                maker=self._is_maker(order), fee_in_base=order.fee_in_base,
            )
        sign = Decimal(1) if order.quantity > 0 else Decimal(-1)

        self._manager.transition(order, status)
        self._seen.setdefault(order.id, set()).add(event_id)
        return [OrderEvent(
            order_id=order.id,
            symbol=order.symbol,
            timestamp=when or datetime.now(UTC),
            status=status,
            direction=order.direction,
            fill_price=price,
            fill_quantity=quantity * sign,
            fee=fee,
            broker_id=order.broker_id,
            event_id=event_id,
            message=message,
        )]
