"""Kraken maker/taker fee schedule."""

from __future__ import annotations

from decimal import Decimal

from krakenbroker.models import OrderFee, Symbol
from krakenbroker.symbols import is_fx_pair

# (30-day USD volume floor, maker rate, taker rate)
CRYPTO_FEE_TIERS: tuple[tuple[Decimal, Decimal, Decimal], ...] = (
    (Decimal("0"), Decimal("0.0016"), Decimal("0.0026")),
    (Decimal("50000"), Decimal("0.0014"), Decimal("0.0024")),
    (Decimal("100000"), Decimal("0.0012"), Decimal("0.0022")),
    (Decimal("250000"), Decimal("0.0010"), Decimal("0.0020")),
    (Decimal("500000"), Decimal("0.0008"), Decimal("0.0018")),
    (Decimal("1000000"), Decimal("0.0006"), Decimal("0.0016")),
    (Decimal("2500000"), Decimal("0.0004"), Decimal("0.0014")),
    (Decimal("5000000"), Decimal("0.0002"), Decimal("0.0012")),
    (Decimal("10000000"), Decimal("0"), Decimal("0.0010")),
)

FX_FEE = Decimal("0.002")


class KrakenFeeModel:
    """Pure fee function shared by live fill processing and replay.

    The fee is charged in the quote currency unless ``fee_in_base`` is set,
    in which case it is taken from the base currency (Kraken's ``fcib`` flag).
    """

    def __init__(self, thirty_day_volume: Decimal | float = 0) -> None:
        self._volume = Decimal(str(thirty_day_volume))

    def rates(self, symbol: Symbol) -> tuple[Decimal, Decimal]:
        if is_fx_pair(symbol.base, symbol.quote):
            return FX_FEE, FX_FEE
        maker, taker = CRYPTO_FEE_TIERS[0][1:]
        for floor, tier_maker, tier_taker in CRYPTO_FEE_TIERS:
            if self._volume >= floor:
                maker, taker = tier_maker, tier_taker
        return maker, taker

    def compute_fee(
        self,
        fill_price: Decimal,
        fill_quantity: Decimal,
        symbol: Symbol,
        *,
        maker: bool = False,
        fee_in_base: bool = False,
    ) -> OrderFee:
        maker_rate, taker_rate = self.rates(symbol)
        rate = maker_rate if maker else taker_rate
        quantity = abs(fill_quantity)
        if fee_in_base:
            return OrderFee(currency=symbol.base, amount=quantity * rate)
        return OrderFee(currency=symbol.quote, amount=abs(fill_price) * quantity * rate)
