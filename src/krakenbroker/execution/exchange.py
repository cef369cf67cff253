"""Exchange adapter protocol and hardened live Kraken implementation."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

import ccxt
import ccxt.async_support as ccxt_async

from krakenbroker.config import AppConfig, ClientConfig, Credentials
from krakenbroker.errors import (
    AuthenticationFailed,
    BrokerageError,
    ConfigMissing,
    ExchangeUnavailable,
    OrderNotFound,
    OrderTimeout,
    RateLimited,
    RejectedOrder,
)
from krakenbroker.execution.ratelimit import KrakenRateGate
from krakenbroker.symbols import minimum_order_size, normalize_asset

logger = logging.getLogger(__name__)

_THROTTLE_ERRORS = (ccxt.RateLimitExceeded, ccxt.DDoSProtection, ccxt.InvalidNonce)


@runtime_checkable
class ExchangeAdapter(Protocol):
    async def load_markets(self) -> None: ...
    def supports(self, pair: str) -> bool: ...
    def minimum_amount(self, pair: str) -> Decimal | None: ...
    async def create_order(
        self, pair: str, order_type: str, side: str, amount: Decimal,
        price: Decimal | None = None, params: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...
    async def cancel_order(self, order_id: str, pair: str | None = None) -> dict[str, Any]: ...
    async def edit_order(
        self, order_id: str, pair: str, order_type: str, side: str, amount: Decimal,
        price: Decimal | None = None, params: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...
    async def fetch_order(self, order_id: str, pair: str | None = None) -> dict[str, Any]: ...
    async def fetch_open_orders(self, pair: str | None = None) -> list[dict[str, Any]]: ...
    async def fetch_balance(self) -> dict[str, Decimal]: ...
    async def fetch_ticker(self, pair: str) -> dict[str, Any]: ...
    async def fetch_positions(self) -> list[dict[str, Any]]: ...
    async def close(self) -> None: ...


class LiveExchange:
    """Kraken REST client built on ccxt.

    Private calls are paced by the verification-tier rate gate and
    serialized under one lock, since Kraken rejects a signed request whose
    nonce is not greater than the last one it saw.
    """

    def __init__(
        self,
        credentials: Credentials,
        client_config: ClientConfig | None = None,
        client: Any = None,
    ) -> None:
        if not credentials.complete:
            raise ConfigMissing("Kraken api-key and api-secret must both be set for live trading")
        cfg = client_config or ClientConfig()
        if client is None:
            client = ccxt_async.kraken({
                "apiKey": credentials.api_key,
                "secret": credentials.api_secret,
                "enableRateLimit": True,
                "timeout": int(cfg.request_timeout_s * 1000),
            })
        self._exchange = client
        self._attempts = max(1, cfg.max_retries)
        self._backoff = cfg.backoff_base_s
        self._gate = KrakenRateGate(credentials.verification_tier)
        self._nonce_lock = asyncio.Lock()
        self._auth_failed = False
        self._markets_loaded = False

    @property
    def session_aborted(self) -> bool:
        return self._auth_failed

    async def _call(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        private: bool = True,
        idempotent: bool = True,
    ) -> Any:
        if private and self._auth_failed:
            raise AuthenticationFailed("Kraken session aborted after an authentication failure")
        for i in range(self._attempts):
            last = i == self._attempts - 1
            try:
                if not private:
                    return await fn(*args)
                await self._gate.acquire()
                async with self._nonce_lock:
                    return await fn(*args)
            except ccxt.AuthenticationError as e:
                self._auth_failed = True
                logger.error("Kraken rejected credentials, aborting session: %s", e)
                raise AuthenticationFailed(str(e)) from e
            except ccxt.InsufficientFunds as e:
                raise RejectedOrder(f"Insufficient funds: {e}") from e
            except ccxt.OrderNotFound as e:
                raise OrderNotFound(str(e)) from e
            except (ccxt.InvalidOrder, ccxt.BadSymbol) as e:
                raise RejectedOrder(str(e)) from e
            except _THROTTLE_ERRORS as e:
                if last:
                    raise RateLimited(f"Throttled after {self._attempts} attempts: {e}", attempts=self._attempts) from e
                reason = e
            except ccxt.RequestTimeout as e:
                if not idempotent:
                    raise OrderTimeout(f"No acknowledgment from Kraken: {e}") from e
                if last:
                    raise ExchangeUnavailable(str(e)) from e
                reason = e
            except ccxt.NetworkError as e:
                if not idempotent or last:
                    raise ExchangeUnavailable(str(e)) from e
                reason = e
            except ccxt.BaseError as e:
                if not idempotent:
                    raise RejectedOrder(str(e)) from e
                raise BrokerageError(str(e)) from e
            wait = self._backoff * 2 ** i
            logger.warning("Retry %d/%d after %.1fs: %s", i + 1, self._attempts, wait, reason)
            await asyncio.sleep(wait)
        raise AssertionError("unreachable")

    async def load_markets(self) -> None:
        if not self._markets_loaded:
            await self._call(self._exchange.load_markets, private=False)
            self._markets_loaded = True

    def supports(self, pair: str) -> bool:
        if not self._markets_loaded:
            return True
        return pair in self._exchange.markets

    def minimum_amount(self, pair: str) -> Decimal | None:
        market = self._exchange.markets.get(pair, {}) if self._markets_loaded else {}
        min_amount = market.get("limits", {}).get("amount", {}).get("min")
        if min_amount:
            return Decimal(str(min_amount))
        return minimum_order_size(pair.split("/")[0])

    def _amount(self, pair: str, amount: Decimal) -> float:
        if self._markets_loaded and pair in self._exchange.markets:
            return float(self._exchange.amount_to_precision(pair, float(amount)))
        return float(amount)

    def _price(self, pair: str, price: Decimal | None) -> float | None:
        if price is None:
            return None
        if self._markets_loaded and pair in self._exchange.markets:
            return float(self._exchange.price_to_precision(pair, float(price)))
        return float(price)

    def _params(self, pair: str, params: dict[str, Any] | None) -> dict[str, Any]:
        out = dict(params or {})
        for key in ("stopLossPrice", "takeProfitPrice"):
            if key in out:
                out[key] = self._price(pair, out[key])
        return out

    async def create_order(
        self, pair: str, order_type: str, side: str, amount: Decimal,
        price: Decimal | None = None, params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self.load_markets()
        return await self._call(
            self._exchange.create_order,
            pair, order_type, side, self._amount(pair, amount), self._price(pair, price),
            self._params(pair, params),
            idempotent=False,
        )

    async def cancel_order(self, order_id: str, pair: str | None = None) -> dict[str, Any]:
        return await self._call(self._exchange.cancel_order, order_id, pair)

    async def edit_order(
        self, order_id: str, pair: str, order_type: str, side: str, amount: Decimal,
        price: Decimal | None = None, params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self.load_markets()
        return await self._call(
            self._exchange.edit_order,
            order_id, pair, order_type, side, self._amount(pair, amount), self._price(pair, price),
            self._params(pair, params),
            idempotent=False,
        )

    async def fetch_order(self, order_id: str, pair: str | None = None) -> dict[str, Any]:
        return await self._call(self._exchange.fetch_order, order_id, pair)

    async def fetch_open_orders(self, pair: str | None = None) -> list[dict[str, Any]]:
        return await self._call(self._exchange.fetch_open_orders, pair)

    async def fetch_balance(self) -> dict[str, Decimal]:
        bal = await self._call(self._exchange.fetch_balance)
        out: dict[str, Decimal] = {}
        for code, amount in (bal.get("total") or {}).items():
            value = Decimal(str(amount or 0))
            if value != 0:
                asset = normalize_asset(code)
                out[asset] = out.get(asset, Decimal("0")) + value
        return out

    async def fetch_ticker(self, pair: str) -> dict[str, Any]:
        return await self._call(self._exchange.fetch_ticker, pair, private=False)

    async def fetch_positions(self) -> list[dict[str, Any]]:
        return await self._call(self._exchange.fetch_positions)

    async def close(self) -> None:
        await self._exchange.close()


def build_exchange(config: AppConfig) -> ExchangeAdapter:
    """Live Kraken when credentials are complete, the in-memory paper exchange otherwise."""
    from krakenbroker.execution.simulator import PaperExchange
    from krakenbroker.fees import KrakenFeeModel

    if config.account.sandbox:
        logger.info("Sandbox mode, using paper exchange")
        return PaperExchange(fee_model=KrakenFeeModel(config.fees.thirty_day_volume))
    try:
        return LiveExchange(config.credentials, config.client)
    except ConfigMissing as e:
        logger.error("%s; falling back to paper exchange", e)
        return PaperExchange(fee_model=KrakenFeeModel(config.fees.thirty_day_volume))
