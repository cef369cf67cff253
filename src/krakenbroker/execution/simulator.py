"""Paper trading exchange simulator with Kraken order semantics."""

from __future__ import annotations

import time
import uuid
from decimal import Decimal
from typing import Any

from krakenbroker.errors import MarketDataUnavailable, OrderNotFound, RejectedOrder
from krakenbroker.fees import KrakenFeeModel
from krakenbroker.models import Symbol
from krakenbroker.symbols import minimum_order_size


def _txid() -> str:
    raw = uuid.uuid4().hex.upper()
    return f"O{raw[:5]}-{raw[5:10]}-{raw[10:16]}"


class PaperExchange:
    """In-memory exchange answering with ccxt-shaped order dicts.

    Market orders fill at the current ask (buy) or bid (sell). Limit orders
    fill when marketable and otherwise rest until a ticker update crosses
    them. ``stopLossPrice`` / ``takeProfitPrice`` orders rest untriggered
    until the touch price is reached, then behave as their base type.
    """

    def __init__(
        self,
        balances: dict[str, Decimal] | None = None,
        fee_model: KrakenFeeModel | None = None,
        markets: set[str] | None = None,
    ) -> None:
        self._balances: dict[str, Decimal] = dict(balances or {"USD": Decimal("10000")})
        self._fees = fee_model or KrakenFeeModel()
        self._markets = markets
        self._orders: dict[str, dict[str, Any]] = {}
        self._tickers: dict[str, tuple[Decimal, Decimal]] = {}
        self.calls: list[str] = []

    # ── market data ──

    def set_ticker(self, pair: str, bid: Decimal | float | str, ask: Decimal | float | str) -> None:
        self._tickers[pair] = (Decimal(str(bid)), Decimal(str(ask)))
        for record in list(self._orders.values()):
            if record["symbol"] == pair and record["status"] == "open":
                self._try_fill(record)

    async def fetch_ticker(self, pair: str) -> dict[str, Any]:
        self.calls.append("fetch_ticker")
        if pair not in self._tickers:
            raise MarketDataUnavailable(f"No ticker for {pair}")
        bid, ask = self._tickers[pair]
        return {"symbol": pair, "bid": float(bid), "ask": float(ask), "timestamp": int(time.time() * 1000)}

    async def load_markets(self) -> None:
        pass

    def supports(self, pair: str) -> bool:
        return self._markets is None or pair in self._markets

    def minimum_amount(self, pair: str) -> Decimal | None:
        return minimum_order_size(pair.split("/")[0])

    # ── orders ──

    async def create_order(
        self, pair: str, order_type: str, side: str, amount: Decimal,
        price: Decimal | None = None, params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.calls.append("create_order")
        params = params or {}
        amount = Decimal(str(amount))
        if not self.supports(pair):
            raise RejectedOrder(f"EQuery:Unknown asset pair {pair}")
        minimum = self.minimum_amount(pair)
        if minimum is not None and amount < minimum:
            raise RejectedOrder(f"EOrder:Order minimum not met ({amount} < {minimum})")
        if order_type == "market" and pair not in self._tickers:
            raise RejectedOrder(f"EOrder:No market price for {pair}")

        base, quote = pair.split("/")
        reference = Decimal(str(price)) if price is not None else self._tickers.get(pair, (None, None))[1]
        if side == "buy":
            needed = amount * (reference or Decimal("0"))
            if self._balances.get(quote, Decimal("0")) < needed:
                raise RejectedOrder(f"EOrder:Insufficient funds: need {needed} {quote}")
        elif self._balances.get(base, Decimal("0")) < amount:
            raise RejectedOrder(f"EOrder:Insufficient funds: need {amount} {base}")

        record: dict[str, Any] = {
            "id": _txid(),
            "symbol": pair,
            "type": order_type,
            "side": side,
            "amount": float(amount),
            "price": float(price) if price is not None else None,
            "average": None,
            "filled": 0.0,
            "cost": 0.0,
            "remaining": float(amount),
            "status": "open",
            "timestamp": int(time.time() * 1000),
            "stopLossPrice": params.get("stopLossPrice"),
            "takeProfitPrice": params.get("takeProfitPrice"),
            "postOnly": bool(params.get("postOnly")),
            "feeInBase": "fcib" in str(params.get("oflags", "")),
            "rested": False,
            "triggered": False,
            "fee": None,
        }
        self._orders[record["id"]] = record
        if record["postOnly"] and self._fill_price(record) is not None:
            record["status"] = "canceled"
            record["reason"] = "Post only order would have taken liquidity"
            return dict(record)
        self._try_fill(record)
        plain_limit = order_type == "limit" and record["stopLossPrice"] is None and record["takeProfitPrice"] is None
        if record["status"] == "open" and plain_limit:
            record["rested"] = True
        return dict(record)

    async def cancel_order(self, order_id: str, pair: str | None = None) -> dict[str, Any]:
        self.calls.append("cancel_order")
        record = self._open_record(order_id)
        record["status"] = "canceled"
        return dict(record)

    async def edit_order(
        self, order_id: str, pair: str, order_type: str, side: str, amount: Decimal,
        price: Decimal | None = None, params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.calls.append("edit_order")
        record = self._open_record(order_id)
        params = params or {}
        record["amount"] = float(amount)
        record["remaining"] = float(Decimal(str(amount)) - Decimal(str(record["filled"])))
        if price is not None:
            record["price"] = float(price)
        for key in ("stopLossPrice", "takeProfitPrice"):
            if params.get(key) is not None and params[key] != record.get(key):
                record[key] = params[key]
                record["triggered"] = False
        self._try_fill(record)
        return dict(record)

    async def fetch_order(self, order_id: str, pair: str | None = None) -> dict[str, Any]:
        self.calls.append("fetch_order")
        if order_id not in self._orders:
            raise OrderNotFound(f"EOrder:Unknown order {order_id}")
        return dict(self._orders[order_id])

    async def fetch_open_orders(self, pair: str | None = None) -> list[dict[str, Any]]:
        self.calls.append("fetch_open_orders")
        return [
            dict(o) for o in self._orders.values()
            if o["status"] == "open" and (pair is None or o["symbol"] == pair)
        ]

    async def fetch_balance(self) -> dict[str, Decimal]:
        self.calls.append("fetch_balance")
        return {k: v for k, v in self._balances.items() if v != 0}

    async def fetch_positions(self) -> list[dict[str, Any]]:
        self.calls.append("fetch_positions")
        return []

    async def close(self) -> None:
        pass

    # ── matching ──

    def _open_record(self, order_id: str) -> dict[str, Any]:
        record = self._orders.get(order_id)
        if record is None or record["status"] != "open":
            raise OrderNotFound(f"EOrder:Unknown order {order_id}")
        return record

    def _triggered(self, record: dict[str, Any], bid: Decimal, ask: Decimal) -> bool:
        # Once touched, a trigger order stays live as its base type.
        if record.get("triggered"):
            return True
        buy = record["side"] == "buy"
        fired = True
        stop = record.get("stopLossPrice")
        touch = record.get("takeProfitPrice")
        if stop is not None:
            stop = Decimal(str(stop))
            fired = ask >= stop if buy else bid <= stop
        elif touch is not None:
            touch = Decimal(str(touch))
            fired = ask <= touch if buy else bid >= touch
        if fired:
            record["triggered"] = True
        return fired

    def _fill_price(self, record: dict[str, Any]) -> Decimal | None:
        if record["symbol"] not in self._tickers:
            return None
        bid, ask = self._tickers[record["symbol"]]
        if not self._triggered(record, bid, ask):
            return None
        buy = record["side"] == "buy"
        if record["type"] == "market":
            return ask if buy else bid
        limit = Decimal(str(record["price"]))
        if buy and ask <= limit:
            return ask
        if not buy and bid >= limit:
            return bid
        return None

    def _try_fill(self, record: dict[str, Any]) -> None:
        price = self._fill_price(record)
        if price is None:
            return
        amount = Decimal(str(record["remaining"]))
        base, quote = record["symbol"].split("/")
        fee = self._fees.compute_fee(
            price, amount, Symbol(ticker=base + quote, base=base, quote=quote),
            maker=record["postOnly"] or record["rested"], fee_in_base=record["feeInBase"],
        )
        cost = price * amount
        if record["side"] == "buy":
            self._balances[quote] = self._balances.get(quote, Decimal("0")) - cost
            self._balances[base] = self._balances.get(base, Decimal("0")) + amount
        else:
            self._balances[base] = self._balances.get(base, Decimal("0")) - amount
            self._balances[quote] = self._balances.get(quote, Decimal("0")) + cost
        self._balances[fee.currency] = self._balances.get(fee.currency, Decimal("0")) - fee.amount

        filled = Decimal(str(record["filled"])) + amount
        total_cost = Decimal(str(record["cost"])) + cost
        record.update({
            "filled": float(filled),
            "cost": float(total_cost),
            "average": float(total_cost / filled),
            "remaining": 0.0,
            "status": "closed",
            "fee": {"currency": fee.currency, "cost": float(fee.amount)},
        })
