"""Best bid/ask snapshots from the exchange ticker endpoint."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

from krakenbroker.errors import MarketDataUnavailable
from krakenbroker.execution.exchange import ExchangeAdapter
from krakenbroker.models import Symbol, Tick


class MarketDataFetcher:
    """Read-only and uncached: every call asks the exchange again."""

    def __init__(self, exchange: ExchangeAdapter) -> None:
        self._exchange = exchange

    async def get_tick(self, symbol: Symbol) -> Tick:
        ticker = await self._exchange.fetch_ticker(symbol.pair)
        bid, ask = ticker.get("bid"), ticker.get("ask")
        if bid is None or ask is None:
            raise MarketDataUnavailable(f"Ticker for {symbol.pair} has no bid/ask")
        ts = ticker.get("timestamp")
        when = datetime.fromtimestamp(ts / 1000, tz=UTC) if ts else datetime.now(UTC)
        return Tick(symbol=symbol, bid=Decimal(str(bid)), ask=Decimal(str(ask)), timestamp=when)

    async def get_ticks(self, symbols: list[Symbol]) -> dict[Symbol, Tick]:
        ticks = await asyncio.gather(*(self.get_tick(s) for s in symbols))
        return dict(zip(symbols, ticks))
