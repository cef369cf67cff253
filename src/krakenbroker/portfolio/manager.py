"""In-memory multi-currency cash book fed by fill events."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from krakenbroker.models import Holding, OrderEvent, Symbol

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class PortfolioManager:
    """Applies each fill exactly once.

    A fill of signed quantity ``q`` at price ``p`` moves ``-p*q`` of the quote
    currency and ``+q`` of the base currency; the fee is then taken from
    whichever currency it was charged in.
    """

    def __init__(self, cash: dict[str, Any] | None = None) -> None:
        self._cash: dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (cash or {}).items()}
        self._holdings: dict[Symbol, Holding] = {}
        self._applied: set[str] = set()
        self._snapshots: list[dict[str, Any]] = []

    @property
    def cash_book(self) -> dict[str, Decimal]:
        return dict(self._cash)

    def balance(self, currency: str) -> Decimal:
        return self._cash.get(currency, _ZERO)

    def on_order_event(self, event: OrderEvent) -> None:
        self.process_fill(event)

    def process_fill(self, event: OrderEvent) -> bool:
        if not event.is_fill:
            return False
        if event.event_id and event.event_id in self._applied:
            logger.debug("Fill %s already applied", event.event_id)
            return False

        symbol = event.symbol
        notional = event.fill_price * event.fill_quantity
        self._cash[symbol.quote] = self.balance(symbol.quote) - notional
        self._cash[symbol.base] = self.balance(symbol.base) + event.fill_quantity
        if event.fee is not None and event.fee.amount:
            self._cash[event.fee.currency] = self.balance(event.fee.currency) - event.fee.amount

        self._update_holding(symbol, event.fill_quantity, event.fill_price)
        if event.event_id:
            self._applied.add(event.event_id)
        logger.info(
            "Applied fill %s: %s %s @ %s", event.event_id or event.order_id,
            event.fill_quantity, symbol.ticker, event.fill_price,
        )
        return True

    def _update_holding(self, symbol: Symbol, quantity: Decimal, price: Decimal) -> None:
        current = self._holdings.get(symbol)
        if current is None:
            self._holdings[symbol] = Holding(symbol, quantity, price, price)
            return
        new_qty = current.quantity + quantity
        if new_qty == 0:
            del self._holdings[symbol]
            return
        if current.quantity * quantity > 0:
            current.average_price = (
                current.average_price * current.quantity + price * quantity
            ) / new_qty
        elif current.quantity * new_qty < 0:
            current.average_price = price
        current.quantity = new_qty
        current.market_price = price

    def get_holdings(self) -> list[Holding]:
        return list(self._holdings.values())

    def snapshot(self) -> dict[str, Any]:
        snap = {"cash": self.cash_book, "timestamp": datetime.now(UTC)}
        self._snapshots.append(snap)
        return snap

    @property
    def snapshots(self) -> list[dict[str, Any]]:
        return list(self._snapshots)
