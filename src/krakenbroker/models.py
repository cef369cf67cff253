"""Data models for the Kraken brokerage connector."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from krakenbroker.symbols import split_ticker


# ── Symbols & Quotes ──

@dataclass(frozen=True)
class Symbol:
    ticker: str
    base: str
    quote: str
    market: str = "kraken"

    @classmethod
    def create(cls, ticker: str, market: str = "kraken") -> Symbol:
        base, quote = split_ticker(ticker)
        return cls(ticker=f"{base}{quote}", base=base, quote=quote, market=market)

    @property
    def pair(self) -> str:
        """Unified ``BASE/QUOTE`` form understood by ccxt."""
        return f"{self.base}/{self.quote}"

    def __str__(self) -> str:
        return self.ticker


@dataclass(frozen=True)
class Tick:
    symbol: Symbol
    bid: Decimal
    ask: Decimal
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2


# ── Orders ──

class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP_MARKET = "stop_market"
    STOP_LIMIT = "stop_limit"
    LIMIT_IF_TOUCHED = "limit_if_touched"


class OrderStatus(str, Enum):
    NEW = "new"
    SUBMITTED = "submitted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    INVALID = "invalid"


class OrderDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.INVALID}
)

VALID_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.NEW: {OrderStatus.SUBMITTED, OrderStatus.INVALID, OrderStatus.CANCELLED},
    OrderStatus.SUBMITTED: {
        OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
        OrderStatus.CANCELLED, OrderStatus.INVALID,
    },
    OrderStatus.PARTIALLY_FILLED: {
        OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
        OrderStatus.CANCELLED, OrderStatus.INVALID,
    },
}


@dataclass
class Order:
    symbol: Symbol
    quantity: Decimal
    order_type: OrderType = OrderType.MARKET
    limit_price: Decimal | None = None
    stop_price: Decimal | None = None
    trigger_price: Decimal | None = None
    fee_in_base: bool = False
    post_only: bool = False
    status: OrderStatus = OrderStatus.NEW
    id: int = 0
    broker_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def direction(self) -> OrderDirection:
        if self.quantity > 0:
            return OrderDirection.BUY
        if self.quantity < 0:
            return OrderDirection.SELL
        return OrderDirection.HOLD

    @property
    def absolute_quantity(self) -> Decimal:
        return abs(self.quantity)

    @property
    def is_updatable(self) -> bool:
        return self.order_type != OrderType.MARKET

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ── Events & Accounting ──

@dataclass(frozen=True)
class OrderFee:
    currency: str
    amount: Decimal

    @classmethod
    def zero(cls, currency: str = "USD") -> OrderFee:
        return cls(currency=currency, amount=Decimal("0"))


@dataclass(frozen=True)
class OrderEvent:
    order_id: int
    symbol: Symbol
    timestamp: datetime
    status: OrderStatus
    direction: OrderDirection
    fill_price: Decimal = Decimal("0")
    fill_quantity: Decimal = Decimal("0")
    fee: OrderFee | None = None
    broker_id: str | None = None
    event_id: str = ""
    message: str = ""

    @property
    def is_fill(self) -> bool:
        return self.fill_quantity != 0


@dataclass
class Holding:
    symbol: Symbol
    quantity: Decimal
    average_price: Decimal
    market_price: Decimal = Decimal("0")

    @property
    def market_value(self) -> Decimal:
        return self.quantity * self.market_price
