"""Kraken brokerage: order routing, account queries and order-event emission.

Placement, cancellation and fills are asynchronous. ``place_order`` returns as
soon as Kraken acknowledges the order; fills and cancellations arrive later
through polling and are pushed to the configured ``OrderSink``. Callers that
need a terminal state await ``wait_for_terminal``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from collections import deque
from decimal import Decimal
from typing import Any

from krakenbroker.config import AppConfig
from krakenbroker.data.market import MarketDataFetcher
from krakenbroker.errors import (
    AuthenticationFailed,
    BrokerageError,
    NotSupported,
    OrderNotFound,
    OrderTimeout,
    RejectedOrder,
)
from krakenbroker.execution.exchange import ExchangeAdapter
from krakenbroker.execution.poller import OrderPoller
from krakenbroker.execution.reconcile import ReconcileReport, Reconciler
from krakenbroker.execution.translator import OrderEventTranslator, to_decimal
from krakenbroker.fees import KrakenFeeModel
from krakenbroker.interfaces import OrderSink, PriceSource
from krakenbroker.models import (
    TERMINAL_STATUSES,
    Holding,
    Order,
    OrderEvent,
    OrderStatus,
    OrderType,
    Symbol,
    Tick,
)

logger = logging.getLogger(__name__)

_REQUIRED_PRICES: dict[OrderType, tuple[str, ...]] = {
    OrderType.MARKET: (),
    OrderType.LIMIT: ("limit_price",),
    OrderType.STOP_MARKET: ("stop_price",),
    OrderType.STOP_LIMIT: ("stop_price", "limit_price"),
    OrderType.LIMIT_IF_TOUCHED: ("trigger_price", "limit_price"),
}


class KrakenBrokerage:
    def __init__(
        self,
        exchange: ExchangeAdapter,
        sink: OrderSink,
        config: AppConfig | None = None,
        fee_model: KrakenFeeModel | None = None,
        prices: PriceSource | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._exchange = exchange
        self._sink = sink
        self._fees = fee_model or KrakenFeeModel(self._config.fees.thirty_day_volume)
        self._translator = OrderEventTranslator(self._fees)
        self._prices = prices or MarketDataFetcher(exchange)
        self._ids = itertools.count(1)
        self._orders: dict[str, Order] = {}
        self._completions: dict[str, asyncio.Future[OrderEvent]] = {}
        self._retired: deque[str] = deque()
        self._unacknowledged: list[Order] = []
        self._poller = OrderPoller(self, self._config.orders.poll_interval_s)
        self._poll_task: asyncio.Task | None = None

    # ── lifecycle ──

    async def connect(self, start_polling: bool = True) -> None:
        await self._exchange.load_markets()
        if start_polling and self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poller.start())
        logger.info("Kraken brokerage connected (account=%s leverage=%d)",
                    self._config.account.type, self._config.account.leverage)

    async def disconnect(self) -> None:
        self._poller.stop()
        task, self._poll_task = self._poll_task, None
        try:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except BrokerageError as e:
                    logger.warning("Order poller had stopped: %s", e)
        finally:
            await self._exchange.close()

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ── orders ──

    async def place_order(self, order: Order) -> str:
        """Submit ``order`` and return the Kraken transaction id.

        Raises ``RejectedOrder`` when local validation or the exchange declines
        (the order is marked invalid) and ``OrderTimeout`` when no
        acknowledgment arrives in time (the outcome is then unknown).
        """
        if order.status != OrderStatus.NEW:
            raise RejectedOrder(f"Order {order.id} was already submitted ({order.status.value})")
        order.id = next(self._ids)
        try:
            self._validate(order)
        except RejectedOrder as e:
            self._publish(order, self._translator.invalid(order, e.reason))
            raise

        order_type, side, price, params = self._order_request(order)
        try:
            raw = await asyncio.wait_for(
                self._exchange.create_order(
                    order.symbol.pair, order_type, side, order.absolute_quantity, price, params,
                ),
                timeout=self._config.client.request_timeout_s,
            )
        except (TimeoutError, OrderTimeout) as e:
            self._unacknowledged.append(order)
            logger.warning("Order %d: no acknowledgment within %.1fs", order.id, self._config.client.request_timeout_s)
            raise OrderTimeout(f"No acknowledgment for order {order.id}", last_status=order.status.value) from e
        except RejectedOrder as e:
            self._publish(order, self._translator.invalid(order, e.reason))
            raise

        broker_id = str(raw["id"])
        order.broker_id = broker_id
        self._orders[broker_id] = order
        self._completions[broker_id] = asyncio.get_running_loop().create_future()
        events = self._translator.submitted(order)
        # Kraken's AddOrder answer is only {descr, txid}; status arrives by polling.
        if raw.get("status"):
            events += self._translator.translate(order, raw)
        self._publish(order, events)
        logger.info("Placed %s %s %s %s -> %s", order.order_type.value, order.direction.value,
                    order.absolute_quantity, order.symbol.ticker, broker_id)
        return broker_id

    async def cancel_order(self, broker_id: str) -> bool:
        """Request cancellation. False when the order is already terminal or unknown.

        The cancelled event itself arrives asynchronously.
        """
        order = self._orders.get(broker_id)
        if order is None:
            logger.warning("Cancel for unknown order %s ignored", broker_id)
            return False
        if order.is_terminal:
            return False
        try:
            raw = await self._exchange.cancel_order(broker_id, order.symbol.pair)
        except OrderNotFound:
            await self._poll_order(order)
            return False
        if raw.get("status"):
            self._publish(order, self._translator.translate(order, raw))
        return True

    async def update_order(
        self,
        broker_id: str,
        *,
        quantity: Decimal | None = None,
        limit_price: Decimal | None = None,
        stop_price: Decimal | None = None,
        trigger_price: Decimal | None = None,
    ) -> bool:
        order = self._orders.get(broker_id)
        if order is None:
            raise OrderNotFound(f"Unknown order {broker_id}")
        if not order.is_updatable:
            raise NotSupported(f"{order.order_type.value} orders cannot be updated")
        if order.is_terminal:
            return False

        changes: dict[str, Any] = {}
        if quantity is not None:
            if quantity == 0 or (quantity > 0) != (order.quantity > 0):
                raise RejectedOrder("Updated quantity must keep the order direction")
            changes["quantity"] = quantity
        for name, value in (("limit_price", limit_price), ("stop_price", stop_price), ("trigger_price", trigger_price)):
            if value is not None:
                changes[name] = value
        if not changes:
            return False
        proposed = dataclasses.replace(order, **changes)
        self._validate(proposed)

        order_type, side, price, params = self._order_request(proposed)
        raw = await self._exchange.edit_order(
            broker_id, order.symbol.pair, order_type, side, proposed.absolute_quantity, price, params,
        )
        for name, value in changes.items():
            setattr(order, name, value)
        new_id = str(raw.get("id") or broker_id)
        if new_id != broker_id:
            self._rekey(broker_id, new_id)
        if raw.get("status"):
            self._publish(order, self._translator.translate(order, raw))
        logger.info("Updated order %s: %s", new_id, changes)
        return True

    async def wait_for_terminal(self, broker_id: str, timeout: float | None = None) -> OrderEvent:
        """Block until the order is filled, cancelled or invalid.

        Raises ``OrderTimeout`` on expiry; the order keeps being tracked.
        """
        order = self._orders.get(broker_id)
        if order is None:
            raise OrderNotFound(f"Unknown order {broker_id}")
        limit = self._config.orders.completion_timeout_s if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._await_completion(order), timeout=limit)
        except TimeoutError as e:
            raise OrderTimeout(
                f"Order {order.broker_id} not terminal after {limit}s",
                broker_id=order.broker_id, last_status=order.status.value,
            ) from e

    async def _await_completion(self, order: Order) -> OrderEvent:
        while True:
            fut = self._completions[order.broker_id]
            if fut.done():
                return fut.result()
            if not self.polling:
                await self._poll_order(order)
                if fut.done():
                    return fut.result()
            await asyncio.wait({fut}, timeout=self._config.orders.poll_interval_s)

    async def poll_orders(self) -> list[OrderEvent]:
        events: list[OrderEvent] = []
        for order in [o for o in self._orders.values() if not o.is_terminal]:
            events += await self._poll_order(order)
        return events

    async def _poll_order(self, order: Order) -> list[OrderEvent]:
        try:
            raw = await self._exchange.fetch_order(order.broker_id, order.symbol.pair)
        except AuthenticationFailed:
            raise
        except BrokerageError as e:
            logger.warning("Failed to fetch order %s: %s", order.broker_id, e)
            return []
        events = self._translator.translate(order, raw)
        self._publish(order, events)
        return events

    # ── account & market data ──

    async def get_account_holdings(self) -> list[Holding]:
        account = self._config.account
        if account.type == "cash":
            return []
        # Kraken margin accounting reports no positions at unit leverage.
        if account.leverage == 1:
            return []
        return [self._holding_from_raw(p) for p in await self._exchange.fetch_positions()]

    async def get_cash_balance(self) -> dict[str, Decimal]:
        return await self._exchange.fetch_balance()

    async def get_open_orders(self) -> list[Order]:
        out: list[Order] = []
        for raw in await self._exchange.fetch_open_orders():
            tracked = self._orders.get(str(raw.get("id")))
            out.append(tracked if tracked is not None else self._order_from_raw(raw))
        return out

    async def adopt_open_orders(self) -> list[Order]:
        """Start tracking open exchange orders placed outside this session."""
        adopted: list[Order] = []
        for order in await self.get_open_orders():
            if order.broker_id in self._orders:
                continue
            order.id = next(self._ids)
            self._orders[order.broker_id] = order
            self._completions[order.broker_id] = asyncio.get_running_loop().create_future()
            adopted.append(order)
        if adopted:
            logger.info("Adopted %d open orders", len(adopted))
        return adopted

    async def get_tick(self, symbol: Symbol) -> Tick:
        return await self._prices.get_tick(symbol)

    async def reconcile(self) -> ReconcileReport:
        reconciler = Reconciler(self._exchange)
        tracked = list(self._orders.values())
        report = ReconcileReport(
            mismatches=await reconciler.reconcile(tracked),
            orphans=await reconciler.detect_orphans(set(self._orders)),
            unacknowledged=list(self._unacknowledged),
        )
        for order, _ in report.mismatches:
            await self._poll_order(order)
        return report

    def get_order(self, broker_id: str) -> Order | None:
        return self._orders.get(broker_id)

    # ── internals ──

    def _validate(self, order: Order) -> None:
        symbol = order.symbol
        if order.quantity == 0:
            raise RejectedOrder("Order quantity must be non-zero")
        if not self._exchange.supports(symbol.pair):
            raise RejectedOrder(f"Symbol {symbol.ticker} is not supported")
        minimum = self._exchange.minimum_amount(symbol.pair)
        if minimum is not None and order.absolute_quantity < minimum:
            raise RejectedOrder(
                f"Quantity {order.absolute_quantity} below {symbol.base} minimum {minimum}"
            )
        for name in _REQUIRED_PRICES[order.order_type]:
            value = getattr(order, name)
            if value is None or value <= 0:
                raise RejectedOrder(f"{order.order_type.value} order requires a positive {name}")
        if order.post_only and order.order_type != OrderType.LIMIT:
            raise RejectedOrder("post_only is only valid for limit orders")

    def _order_request(self, order: Order) -> tuple[str, str, Decimal | None, dict[str, Any]]:
        side = "buy" if order.quantity > 0 else "sell"
        params: dict[str, Any] = {}
        if order.order_type == OrderType.MARKET:
            order_type, price = "market", None
        elif order.order_type == OrderType.LIMIT:
            order_type, price = "limit", order.limit_price
        elif order.order_type == OrderType.STOP_MARKET:
            order_type, price = "market", None
            params["stopLossPrice"] = order.stop_price
        elif order.order_type == OrderType.STOP_LIMIT:
            order_type, price = "limit", order.limit_price
            params["stopLossPrice"] = order.stop_price
        else:
            order_type, price = "limit", order.limit_price
            params["takeProfitPrice"] = order.trigger_price
        if order.fee_in_base:
            params["oflags"] = "fcib"
        if order.post_only:
            params["postOnly"] = True
        account = self._config.account
        if account.type == "margin" and account.leverage > 1:
            params["leverage"] = account.leverage
        return order_type, side, price, params

    def _publish(self, order: Order, events: list[OrderEvent]) -> None:
        for event in events:
            self._sink.on_order_event(event)
            if event.status in TERMINAL_STATUSES:
                self._translator.forget(order)
                fut = self._completions.get(order.broker_id or "")
                if fut is not None and not fut.done():
                    fut.set_result(event)
                self._retire(order)

    def _retire(self, order: Order) -> None:
        """Keep only the most recent terminal orders addressable by txid."""
        if not order.broker_id or order.broker_id not in self._orders:
            return
        self._retired.append(order.broker_id)
        while len(self._retired) > self._config.orders.retain_terminal:
            old = self._retired.popleft()
            self._orders.pop(old, None)
            self._completions.pop(old, None)

    def _rekey(self, old: str, new: str) -> None:
        order = self._orders.pop(old)
        order.broker_id = new
        self._orders[new] = order
        self._completions[new] = self._completions.pop(old)

    def _holding_from_raw(self, raw: dict[str, Any]) -> Holding:
        info = raw.get("info") or {}
        pair = raw.get("symbol") or info.get("pair", "")
        symbol = Symbol.create(pair)
        quantity = to_decimal(raw.get("contracts")) or (
            (to_decimal(info.get("vol")) or Decimal("0")) - (to_decimal(info.get("vol_closed")) or Decimal("0"))
        )
        if (raw.get("side") or info.get("type")) in ("short", "sell"):
            quantity = -abs(quantity)
        average = to_decimal(raw.get("entryPrice"))
        if average is None:
            cost = to_decimal(info.get("cost")) or Decimal("0")
            average = cost / abs(quantity) if quantity else Decimal("0")
        market = to_decimal(raw.get("markPrice")) or average
        return Holding(symbol=symbol, quantity=quantity, average_price=average, market_price=market)

    def _order_from_raw(self, raw: dict[str, Any]) -> Order:
        amount = to_decimal(raw.get("amount")) or Decimal("0")
        limit = to_decimal(raw.get("price"))
        stop = to_decimal(raw.get("stopLossPrice"))
        touch = to_decimal(raw.get("takeProfitPrice"))
        is_limit = raw.get("type") == "limit"
        if stop is not None:
            order_type = OrderType.STOP_LIMIT if is_limit else OrderType.STOP_MARKET
        elif touch is not None:
            order_type = OrderType.LIMIT_IF_TOUCHED
        else:
            order_type = OrderType.LIMIT if is_limit else OrderType.MARKET
        return Order(
            symbol=Symbol.create(str(raw.get("symbol", ""))),
            quantity=amount if raw.get("side") == "buy" else -amount,
            order_type=order_type,
            limit_price=limit if is_limit else None,
            stop_price=stop,
            trigger_price=touch,
            status=OrderStatus.SUBMITTED,
            broker_id=str(raw.get("id")),
        )
