"""KrakenBrokerage order lifecycle against the paper exchange."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from krakenbroker.brokerage import KrakenBrokerage
from krakenbroker.config import AccountConfig, AppConfig, ClientConfig, OrdersConfig
from krakenbroker.errors import AuthenticationFailed, NotSupported, OrderTimeout, RejectedOrder
from krakenbroker.execution.simulator import PaperExchange
from krakenbroker.interfaces import CompositeSink, RecordingSink
from krakenbroker.models import Order, OrderStatus, OrderType, Symbol
from krakenbroker.portfolio.manager import PortfolioManager

ETHUSD = Symbol.create("ETHUSD")
QTY = Decimal("0.004")  # ETH order minimum
START = {"USD": Decimal("100000"), "ETH": Decimal("1")}


def _config(**account):
    return AppConfig(
        account=AccountConfig(**account),
        client=ClientConfig(request_timeout_s=1.0),
        orders=OrdersConfig(completion_timeout_s=1.0, poll_interval_s=0.01),
    )


class Harness:
    def __init__(self, config=None, exchange=None):
        self.exchange = exchange or PaperExchange(dict(START))
        if isinstance(self.exchange, PaperExchange):
            self.exchange.set_ticker("ETH/USD", "1999", "2000")
        self.recorder = RecordingSink()
        self.portfolio = PortfolioManager(dict(START))
        self.brokerage = KrakenBrokerage(
            self.exchange, CompositeSink(self.recorder, self.portfolio), config or _config(),
        )

    def statuses(self, order):
        return [e.status for e in self.recorder.for_order(order.id)]


@pytest.fixture
def h():
    return Harness()


# ── placement ──

@pytest.mark.asyncio
async def test_market_buy_scenario(h):
    tick = await h.brokerage.get_tick(ETHUSD)
    order = Order(ETHUSD, QTY)
    broker_id = await h.brokerage.place_order(order)

    event = await h.brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.FILLED
    assert event.fill_quantity == QTY
    assert event.fill_price == tick.ask
    assert event.fee.amount >= 0
    assert h.statuses(order) == [OrderStatus.SUBMITTED, OrderStatus.FILLED]

    assert h.portfolio.balance("USD") == START["USD"] - tick.ask * QTY - event.fee.amount
    assert h.portfolio.balance("ETH") == START["ETH"] + QTY
    exchange_cash = await h.brokerage.get_cash_balance()
    assert exchange_cash["USD"] == h.portfolio.balance("USD")
    assert exchange_cash["ETH"] == h.portfolio.balance("ETH")


def _long_orders():
    return [
        Order(ETHUSD, QTY),
        Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("2100")),
        Order(ETHUSD, QTY, OrderType.STOP_MARKET, stop_price=Decimal("1900")),
        Order(ETHUSD, QTY, OrderType.STOP_LIMIT, stop_price=Decimal("1900"), limit_price=Decimal("2100")),
        Order(ETHUSD, QTY, OrderType.LIMIT_IF_TOUCHED, trigger_price=Decimal("2100"), limit_price=Decimal("2100")),
    ]


def _short_orders():
    return [
        Order(ETHUSD, -QTY),
        Order(ETHUSD, -QTY, OrderType.LIMIT, limit_price=Decimal("1900")),
        Order(ETHUSD, -QTY, OrderType.STOP_MARKET, stop_price=Decimal("2100")),
        Order(ETHUSD, -QTY, OrderType.STOP_LIMIT, stop_price=Decimal("2100"), limit_price=Decimal("1900")),
        Order(ETHUSD, -QTY, OrderType.LIMIT_IF_TOUCHED, trigger_price=Decimal("1900"), limit_price=Decimal("1900")),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("index", range(5), ids=[o.order_type.value for o in _long_orders()])
async def test_long_from_zero(h, index):
    order = _long_orders()[index]
    broker_id = await h.brokerage.place_order(order)
    event = await h.brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.FILLED
    assert h.portfolio.balance("ETH") == START["ETH"] + QTY


@pytest.mark.asyncio
@pytest.mark.parametrize("index", range(5), ids=[o.order_type.value for o in _short_orders()])
async def test_short_from_zero(h, index):
    order = _short_orders()[index]
    broker_id = await h.brokerage.place_order(order)
    event = await h.brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.FILLED
    assert event.fill_quantity == -QTY
    assert h.portfolio.balance("ETH") == START["ETH"] - QTY


@pytest.mark.asyncio
async def test_open_then_close_restores_balances_net_of_fees(h):
    h.exchange.set_ticker("ETH/USD", "2000", "2000")
    opened = await h.brokerage.wait_for_terminal(await h.brokerage.place_order(Order(ETHUSD, QTY)))
    closed = await h.brokerage.wait_for_terminal(await h.brokerage.place_order(Order(ETHUSD, -QTY)))
    assert h.portfolio.balance("ETH") == START["ETH"]
    assert h.portfolio.balance("USD") == START["USD"] - opened.fee.amount - closed.fee.amount


@pytest.mark.asyncio
async def test_fee_in_base_charged_in_eth(h):
    order = Order(ETHUSD, QTY, fee_in_base=True)
    event = await h.brokerage.wait_for_terminal(await h.brokerage.place_order(order))
    assert event.fee.currency == "ETH"
    assert h.portfolio.balance("ETH") == START["ETH"] + QTY - event.fee.amount
    assert (await h.brokerage.get_cash_balance())["ETH"] == h.portfolio.balance("ETH")


@pytest.mark.asyncio
async def test_concurrent_placements_get_distinct_ids(h):
    orders = [Order(ETHUSD, QTY) for _ in range(5)]
    ids = await asyncio.gather(*(h.brokerage.place_order(o) for o in orders))
    assert len(set(ids)) == 5
    assert len({o.id for o in orders}) == 5
    assert h.portfolio.balance("ETH") == START["ETH"] + 5 * QTY


# ── validation & rejection ──

@pytest.mark.asyncio
async def test_below_minimum_rejected_locally(h):
    order = Order(ETHUSD, Decimal("0.001"))
    with pytest.raises(RejectedOrder, match="minimum"):
        await h.brokerage.place_order(order)
    assert order.status == OrderStatus.INVALID
    assert h.statuses(order) == [OrderStatus.INVALID]
    assert "create_order" not in h.exchange.calls


@pytest.mark.asyncio
async def test_unsupported_symbol_rejected():
    harness = Harness(exchange=PaperExchange(dict(START), markets={"ETH/USD"}))
    with pytest.raises(RejectedOrder, match="not supported"):
        await harness.brokerage.place_order(Order(Symbol.create("BTCUSD"), Decimal("0.01")))


@pytest.mark.asyncio
async def test_limit_without_price_rejected(h):
    with pytest.raises(RejectedOrder, match="limit_price"):
        await h.brokerage.place_order(Order(ETHUSD, QTY, OrderType.LIMIT))


@pytest.mark.asyncio
async def test_exchange_rejection_marks_invalid(h):
    order = Order(ETHUSD, Decimal("1000"))
    with pytest.raises(RejectedOrder, match="Insufficient"):
        await h.brokerage.place_order(order)
    assert order.status == OrderStatus.INVALID
    assert h.recorder.events[-1].status == OrderStatus.INVALID
    assert h.portfolio.cash_book == START


@pytest.mark.asyncio
async def test_resubmitting_order_rejected(h):
    order = Order(ETHUSD, QTY)
    await h.brokerage.place_order(order)
    with pytest.raises(RejectedOrder):
        await h.brokerage.place_order(order)


@pytest.mark.asyncio
async def test_placement_without_acknowledgment_times_out():
    exchange = MagicMock()
    exchange.supports.return_value = True
    exchange.minimum_amount.return_value = None

    async def never_acks(*args, **kwargs):
        await asyncio.sleep(10)

    exchange.create_order = never_acks
    exchange.fetch_open_orders = AsyncMock(return_value=[])
    config = AppConfig(client=ClientConfig(request_timeout_s=0.05))
    brokerage = KrakenBrokerage(exchange, RecordingSink(), config)
    order = Order(ETHUSD, QTY)
    with pytest.raises(OrderTimeout):
        await brokerage.place_order(order)
    report = await brokerage.reconcile()
    assert report.unacknowledged == [order]
    assert order.status == OrderStatus.NEW


# ── cancellation ──

def _resting_orders():
    return [
        Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("1000")),
        Order(ETHUSD, QTY, OrderType.STOP_LIMIT, stop_price=Decimal("3000"), limit_price=Decimal("3100")),
        Order(ETHUSD, QTY, OrderType.STOP_MARKET, stop_price=Decimal("3000")),
        Order(ETHUSD, QTY, OrderType.LIMIT_IF_TOUCHED, trigger_price=Decimal("1000"), limit_price=Decimal("1010")),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("index", range(4), ids=[o.order_type.value for o in _resting_orders()])
async def test_cancel_leaves_balances_unchanged(h, index):
    order = _resting_orders()[index]
    before = await h.brokerage.get_cash_balance()
    broker_id = await h.brokerage.place_order(order)
    assert await h.brokerage.cancel_order(broker_id) is True

    event = await h.brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.CANCELLED
    assert h.statuses(order) == [OrderStatus.SUBMITTED, OrderStatus.CANCELLED]
    assert await h.brokerage.get_cash_balance() == before
    assert h.portfolio.cash_book == START
    assert await h.brokerage.get_account_holdings() == []


@pytest.mark.asyncio
async def test_cancel_is_idempotent(h):
    broker_id = await h.brokerage.place_order(_resting_orders()[0])
    assert await h.brokerage.cancel_order(broker_id) is True
    await h.brokerage.wait_for_terminal(broker_id)
    assert await h.brokerage.cancel_order(broker_id) is False


@pytest.mark.asyncio
async def test_cancel_filled_order_returns_false(h):
    broker_id = await h.brokerage.place_order(Order(ETHUSD, QTY))
    assert await h.brokerage.cancel_order(broker_id) is False


@pytest.mark.asyncio
async def test_cancel_unknown_order_returns_false(h):
    assert await h.brokerage.cancel_order("OUNKN-OWN00-000000") is False


# ── updates ──

@pytest.mark.asyncio
async def test_update_market_order_not_supported_without_network(h):
    broker_id = await h.brokerage.place_order(Order(ETHUSD, QTY))
    calls_before = list(h.exchange.calls)
    with pytest.raises(NotSupported):
        await h.brokerage.update_order(broker_id, quantity=Decimal("0.005"))
    assert h.exchange.calls == calls_before


@pytest.mark.asyncio
async def test_update_limit_price_to_marketable_fills(h):
    order = _resting_orders()[0]
    broker_id = await h.brokerage.place_order(order)
    assert await h.brokerage.update_order(broker_id, limit_price=Decimal("2050")) is True
    assert order.limit_price == Decimal("2050")
    event = await h.brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.FILLED


@pytest.mark.asyncio
async def test_update_cannot_flip_direction(h):
    broker_id = await h.brokerage.place_order(_resting_orders()[0])
    with pytest.raises(RejectedOrder):
        await h.brokerage.update_order(broker_id, quantity=-QTY)


@pytest.mark.asyncio
async def test_update_terminal_order_returns_false(h):
    broker_id = await h.brokerage.place_order(Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("2100")))
    assert await h.brokerage.update_order(broker_id, limit_price=Decimal("2200")) is False


@pytest.mark.asyncio
async def test_update_rekeys_when_exchange_issues_new_txid():
    exchange = MagicMock()
    exchange.supports.return_value = True
    exchange.minimum_amount.return_value = None
    exchange.create_order = AsyncMock(return_value={"id": "OLD", "status": "open", "filled": 0})
    exchange.edit_order = AsyncMock(return_value={"id": "NEW", "status": "open", "filled": 0})
    brokerage = KrakenBrokerage(exchange, RecordingSink(), _config())
    order = Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("1000"))
    await brokerage.place_order(order)
    await brokerage.update_order("OLD", limit_price=Decimal("1100"))
    assert order.broker_id == "NEW"
    assert brokerage.get_order("NEW") is order
    assert brokerage.get_order("OLD") is None


# ── holdings ──

@pytest.mark.asyncio
async def test_margin_unit_leverage_reports_no_holdings(h):
    assert await h.brokerage.get_account_holdings() == []
    await h.brokerage.wait_for_terminal(await h.brokerage.place_order(Order(ETHUSD, QTY)))
    assert await h.brokerage.get_account_holdings() == []
    assert "fetch_positions" not in h.exchange.calls


@pytest.mark.asyncio
async def test_cash_account_reports_no_holdings():
    harness = Harness(config=_config(type="cash"))
    assert await harness.brokerage.get_account_holdings() == []


@pytest.mark.asyncio
async def test_leveraged_margin_reads_positions():
    exchange = MagicMock()
    exchange.fetch_positions = AsyncMock(return_value=[
        {"symbol": "ETH/USD", "contracts": 0.5, "side": "short", "entryPrice": 2000.0, "markPrice": 1950.0},
        {"info": {"pair": "XXBTZUSD", "vol": "0.3", "vol_closed": "0.1", "cost": "6000", "type": "buy"}},
    ])
    brokerage = KrakenBrokerage(exchange, RecordingSink(), _config(leverage=2))
    eth, btc = await brokerage.get_account_holdings()
    assert eth.symbol == ETHUSD
    assert eth.quantity == Decimal("-0.5")
    assert eth.market_price == Decimal("1950.0")
    assert eth.market_value == Decimal("-975")
    assert btc.symbol == Symbol.create("BTCUSD")
    assert btc.quantity == Decimal("0.2")
    assert btc.average_price == Decimal("30000")


@pytest.mark.asyncio
async def test_leverage_sent_with_order():
    exchange = PaperExchange(dict(START))
    exchange.set_ticker("ETH/USD", "1999", "2000")
    exchange.create_order = AsyncMock(return_value={"id": "O1", "status": "open", "filled": 0})
    brokerage = KrakenBrokerage(exchange, RecordingSink(), _config(leverage=3))
    await brokerage.place_order(Order(ETHUSD, QTY))
    params = exchange.create_order.call_args.args[5]
    assert params["leverage"] == 3


# ── completion & polling ──

@pytest.mark.asyncio
async def test_wait_for_terminal_times_out_and_keeps_tracking(h):
    order = _resting_orders()[0]
    broker_id = await h.brokerage.place_order(order)
    with pytest.raises(OrderTimeout) as exc:
        await h.brokerage.wait_for_terminal(broker_id, timeout=0.05)
    assert exc.value.last_status == "submitted"
    assert exc.value.broker_id == broker_id

    h.exchange.set_ticker("ETH/USD", "990", "995")
    event = await h.brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.FILLED
    assert event.fill_price == Decimal("995")


@pytest.mark.asyncio
async def test_background_poller_resolves_orders(h):
    await h.brokerage.connect()
    try:
        assert h.brokerage.polling
        broker_id = await h.brokerage.place_order(_resting_orders()[0])
        h.exchange.set_ticker("ETH/USD", "990", "995")
        event = await h.brokerage.wait_for_terminal(broker_id)
        assert event.status == OrderStatus.FILLED
    finally:
        await h.brokerage.disconnect()
    assert not h.brokerage.polling


@pytest.mark.asyncio
async def test_repeated_fill_notifications_apply_once():
    exchange = MagicMock()
    exchange.supports.return_value = True
    exchange.minimum_amount.return_value = None
    exchange.create_order = AsyncMock(return_value={"id": "O1", "status": "open", "filled": 0})
    partial = {"status": "open", "filled": 0.002, "cost": 4.0}
    exchange.fetch_order = AsyncMock(side_effect=[
        partial, dict(partial), {"status": "closed", "filled": 0.004, "cost": 8.0}, dict(partial),
    ])
    portfolio = PortfolioManager(dict(START))
    recorder = RecordingSink()
    brokerage = KrakenBrokerage(exchange, CompositeSink(recorder, portfolio), _config())
    await brokerage.place_order(Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("2000")))
    for _ in range(3):
        await brokerage.poll_orders()
    assert exchange.fetch_order.await_count == 3
    assert [e.status for e in recorder.events] == [
        OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
    ]
    assert portfolio.balance("ETH") == START["ETH"] + QTY


@pytest.mark.asyncio
async def test_adopt_open_orders_then_cancel(h):
    raw = await h.exchange.create_order(
        "ETH/USD", "limit", "sell", Decimal("0.01"), Decimal("2500"), {"stopLossPrice": Decimal("1500")},
    )
    [adopted] = await h.brokerage.adopt_open_orders()
    assert adopted.broker_id == raw["id"]
    assert adopted.order_type == OrderType.STOP_LIMIT
    assert adopted.quantity == Decimal("-0.01")
    assert await h.brokerage.cancel_order(raw["id"]) is True
    assert (await h.brokerage.wait_for_terminal(raw["id"])).status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_reconcile_detects_orphans(h):
    await h.exchange.create_order("ETH/USD", "limit", "buy", QTY, Decimal("1000"))
    report = await h.brokerage.reconcile()
    assert len(report.orphans) == 1
    assert not report.clean


# ── live acknowledgment shape & session cleanup ──

def _stub_exchange(ack):
    exchange = MagicMock()
    exchange.supports.return_value = True
    exchange.minimum_amount.return_value = None
    exchange.load_markets = AsyncMock()
    exchange.close = AsyncMock()
    exchange.create_order = AsyncMock(return_value=ack)
    return exchange


@pytest.mark.asyncio
async def test_addorder_ack_without_status_keeps_order_live():
    # ccxt parses Kraken's AddOrder result ({descr, txid}) with no status.
    ack = ccxt.kraken().parse_order({
        "descr": {"order": "buy 0.00400000 ETHUSD @ limit 1000.0"},
        "txid": ["OEKVV2-IH52O-TPL6GZ"],
    })
    assert ack.get("status") is None
    exchange = _stub_exchange(ack)
    exchange.fetch_order = AsyncMock(return_value={"status": "closed", "filled": 0.004, "cost": 4.0})
    recorder = RecordingSink()
    brokerage = KrakenBrokerage(exchange, recorder, _config())

    order = Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("1000"))
    broker_id = await brokerage.place_order(order)
    assert broker_id == "OEKVV2-IH52O-TPL6GZ"
    assert order.status == OrderStatus.SUBMITTED
    assert [e.status for e in recorder.events] == [OrderStatus.SUBMITTED]

    event = await brokerage.wait_for_terminal(broker_id)
    assert event.status == OrderStatus.FILLED
    assert event.fill_price == Decimal("1000")


@pytest.mark.asyncio
async def test_disconnect_closes_exchange_after_poller_auth_failure():
    exchange = _stub_exchange({"id": "O1", "status": "open", "filled": 0})
    exchange.fetch_order = AsyncMock(side_effect=AuthenticationFailed("EAPI:Invalid key"))
    brokerage = KrakenBrokerage(exchange, RecordingSink(), _config())
    await brokerage.place_order(Order(ETHUSD, QTY, OrderType.LIMIT, limit_price=Decimal("1000")))

    await brokerage.connect()
    for _ in range(100):
        if not brokerage.polling:
            break
        await asyncio.sleep(0.01)
    assert not brokerage.polling

    await brokerage.disconnect()
    exchange.close.assert_awaited_once()


# ── terminal order retention ──

@pytest.mark.asyncio
async def test_terminal_orders_are_retired_beyond_retention():
    config = AppConfig(orders=OrdersConfig(completion_timeout_s=1.0, poll_interval_s=0.01, retain_terminal=1))
    harness = Harness(config=config)
    brokerage = harness.brokerage
    resting = await brokerage.place_order(_resting_orders()[0])
    first = await brokerage.place_order(Order(ETHUSD, QTY))
    second = await brokerage.place_order(Order(ETHUSD, QTY))

    assert brokerage.get_order(first) is None
    assert brokerage.get_order(second).status == OrderStatus.FILLED
    assert brokerage.get_order(resting).status == OrderStatus.SUBMITTED
    assert await brokerage.cancel_order(first) is False
    assert (await brokerage.wait_for_terminal(second)).status == OrderStatus.FILLED
