"""Capability interfaces the connector depends on."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from krakenbroker.models import OrderEvent, Symbol, Tick

logger = logging.getLogger(__name__)


@runtime_checkable
class OrderSink(Protocol):
    def on_order_event(self, event: OrderEvent) -> None: ...


@runtime_checkable
class PriceSource(Protocol):
    async def get_tick(self, symbol: Symbol) -> Tick: ...


class CompositeSink:
    """Fan an event out to several sinks; one failing sink does not starve the rest."""

    def __init__(self, *sinks: OrderSink) -> None:
        self._sinks = list(sinks)

    def on_order_event(self, event: OrderEvent) -> None:
        for sink in self._sinks:
            try:
                sink.on_order_event(event)
            except Exception as e:
                logger.warning("Order sink %s failed on %s: %s", type(sink).__name__, event.event_id, e)


class RecordingSink:
    """Keeps every event in arrival order."""

    def __init__(self) -> None:
        self.events: list[OrderEvent] = []

    def on_order_event(self, event: OrderEvent) -> None:
        self.events.append(event)

    def for_order(self, order_id: int) -> list[OrderEvent]:
        return [e for e in self.events if e.order_id == order_id]
