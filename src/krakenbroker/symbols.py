"""Kraken asset codes, order minimums and currency classes."""

from __future__ import annotations

from decimal import Decimal

# Kraken's legacy X/Z prefixed asset codes.
_ASSET_ALIASES: dict[str, str] = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XBT.M": "BTC",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "XETH": "ETH",
    "XETC": "ETC",
    "XLTC": "LTC",
    "XXLM": "XLM",
    "XXMR": "XMR",
    "XXRP": "XRP",
    "XZEC": "ZEC",
    "XMLN": "MLN",
    "XREP": "REP",
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "ZGBP": "GBP",
    "ZCAD": "CAD",
    "ZJPY": "JPY",
    "ZCHF": "CHF",
    "ZAUD": "AUD",
}

# Longest first so "USDT" wins over "USD".
QUOTE_CURRENCIES: tuple[str, ...] = (
    "USDT", "USDC", "DAI", "USD", "EUR", "GBP", "CAD", "JPY", "CHF", "AUD", "BTC", "ETH",
)

FX_STABLECOINS: frozenset[str] = frozenset(
    {"CAD", "EUR", "GBP", "JPY", "USD", "USDT", "DAI", "USDC", "CHF", "AUD"}
)

# Published Kraken minimum order sizes, in base units.
MINIMUM_ORDER_SIZE: dict[str, Decimal] = {
    "BTC": Decimal("0.0001"),
    "ETH": Decimal("0.004"),
    "LTC": Decimal("0.1"),
    "XRP": Decimal("10"),
    "DOGE": Decimal("50"),
    "SOL": Decimal("0.02"),
    "ADA": Decimal("10"),
    "DOT": Decimal("0.5"),
    "XLM": Decimal("30"),
    "XMR": Decimal("0.03"),
    "ETC": Decimal("0.3"),
    "ZEC": Decimal("0.03"),
    "USDT": Decimal("5"),
    "USDC": Decimal("5"),
}


def normalize_asset(code: str) -> str:
    """Map a Kraken asset code (``XXBT``, ``ZUSD``) to its common form."""
    code = code.upper()
    return _ASSET_ALIASES.get(code, code)


def split_ticker(ticker: str) -> tuple[str, str]:
    ticker = ticker.upper().replace("/", "").replace("-", "")
    # Legacy pair names such as XETHZUSD or XXBTZEUR.
    if len(ticker) == 8 and ticker[0] in "XZ" and ticker[4] in "XZ" and ticker[:4] in _ASSET_ALIASES:
        return normalize_asset(ticker[:4]), normalize_asset(ticker[4:])
    for quote in QUOTE_CURRENCIES:
        if ticker.endswith(quote) and len(ticker) > len(quote):
            return normalize_asset(ticker[: -len(quote)]), quote
    raise ValueError(f"Cannot split ticker {ticker!r} into base and quote")


def minimum_order_size(base: str) -> Decimal | None:
    return MINIMUM_ORDER_SIZE.get(normalize_asset(base))


def is_fx_pair(base: str, quote: str) -> bool:
    return normalize_asset(base) in FX_STABLECOINS and normalize_asset(quote) in FX_STABLECOINS
