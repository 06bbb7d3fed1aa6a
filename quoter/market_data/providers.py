"""
Price providers.

Each backend implements the PriceProvider capability: fetch one symbol, or
fetch many in as few round trips as the backend allows. Providers return None
when they have no price for a symbol (unknown market, empty book) and raise on
transport faults; PriceSource decides what a fault means for the caller.

Providers are chosen by name at construction time via build_provider_chain().
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional

import httpx

from quoter.core.errors import ConfigError

if TYPE_CHECKING:
    from quoter.infra.exchange import ExchangeClient

log = logging.getLogger("quoter")


def _positive(raw) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


class PriceProvider(ABC):
    name: str = ""
    ttl_ms: float = 5000.0
    # False for providers that read the local venue rather than an external reference
    is_oracle: bool = True

    @abstractmethod
    async def fetch(self, symbol: str) -> Optional[float]:
        ...

    async def fetch_many(self, symbols: List[str]) -> Dict[str, float]:
        """Default: concurrent single fetches. Backends with a batch endpoint override this."""
        results = await asyncio.gather(*(self.fetch(s) for s in symbols), return_exceptions=True)
        out: Dict[str, float] = {}
        for symbol, res in zip(symbols, results):
            if isinstance(res, Exception):
                log.debug(f"[PRICE] {self.name} fetch {symbol} failed: {res}")
                continue
            if res is not None:
                out[symbol] = res
        return out

    def supports(self, symbol: str) -> bool:
        return True

    async def close(self) -> None:
        pass


class OrderBookProvider(PriceProvider):
    """Mid price of the venue's own order book."""

    name = "orderbook"
    ttl_ms = 1000.0
    is_oracle = False

    def __init__(self, exchange: "ExchangeClient", ttl_ms: float = 1000.0) -> None:
        self._exchange = exchange
        self.ttl_ms = ttl_ms

    async def fetch(self, symbol: str) -> Optional[float]:
        book = await self._exchange.get_order_book(symbol)
        return _positive(book.mid)


class _HttpProvider(PriceProvider):
    def __init__(self, base_url: str, timeout: float, client: Optional[httpx.AsyncClient]) -> None:
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class BinanceProvider(_HttpProvider):
    """USDⓈ-M futures last price; BTC-USD is read from BTCUSDT."""

    name = "binance"
    ttl_ms = 5000.0

    def __init__(
        self,
        base_url: str = "https://fapi.binance.com",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        symbol_overrides: Optional[Mapping[str, str]] = None,
        ttl_ms: float = 5000.0,
    ) -> None:
        super().__init__(base_url, timeout, client)
        self._overrides = dict(symbol_overrides or {})
        self.ttl_ms = ttl_ms

    def venue_symbol(self, symbol: str) -> str:
        if symbol in self._overrides:
            return self._overrides[symbol]
        base = symbol.split("-")[0].upper()
        return f"{base}USDT"

    async def fetch(self, symbol: str) -> Optional[float]:
        resp = await self.client.get("/fapi/v1/ticker/price", params={"symbol": self.venue_symbol(symbol)})
        if resp.status_code == 400:
            # unknown symbol
            return None
        resp.raise_for_status()
        return _positive(resp.json().get("price"))

    async def fetch_many(self, symbols: List[str]) -> Dict[str, float]:
        if len(symbols) == 1:
            price = await self.fetch(symbols[0])
            return {symbols[0]: price} if price is not None else {}
        # One call returns every ticker; pick ours out of it
        resp = await self.client.get("/fapi/v1/ticker/price")
        resp.raise_for_status()
        by_venue = {row.get("symbol"): row.get("price") for row in resp.json()}
        out: Dict[str, float] = {}
        for symbol in symbols:
            price = _positive(by_venue.get(self.venue_symbol(symbol)))
            if price is not None:
                out[symbol] = price
        return out


COINGECKO_IDS: Dict[str, str] = {
    "BTC-USD": "bitcoin",
    "ETH-USD": "ethereum",
    "SOL-USD": "solana",
    "AVAX-USD": "avalanche-2",
    "MATIC-USD": "matic-network",
    "DOT-USD": "polkadot",
    "ADA-USD": "cardano",
    "LINK-USD": "chainlink",
    "UNI-USD": "uniswap",
    "ATOM-USD": "cosmos",
    "NEAR-USD": "near",
    "LTC-USD": "litecoin",
    "DOGE-USD": "dogecoin",
    "XRP-USD": "ripple",
    "APT-USD": "aptos",
    "ARB-USD": "arbitrum",
    "OP-USD": "optimism",
    "LDO-USD": "lido-dao",
    "MKR-USD": "maker",
    "AAVE-USD": "aave",
    "CRV-USD": "curve-dao-token",
    "DYDX-USD": "dydx",
}


class CoinGeckoProvider(_HttpProvider):
    name = "coingecko"
    ttl_ms = 30000.0

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        coin_ids: Optional[Mapping[str, str]] = None,
        ttl_ms: float = 30000.0,
    ) -> None:
        super().__init__(base_url, timeout, client)
        self._ids = dict(COINGECKO_IDS)
        self._ids.update(coin_ids or {})
        self._headers = {"x-cg-demo-api-key": api_key} if api_key else {}
        self.ttl_ms = ttl_ms

    def supports(self, symbol: str) -> bool:
        return symbol in self._ids

    async def fetch(self, symbol: str) -> Optional[float]:
        return (await self.fetch_many([symbol])).get(symbol)

    async def fetch_many(self, symbols: List[str]) -> Dict[str, float]:
        wanted = {s: self._ids[s] for s in symbols if s in self._ids}
        if not wanted:
            return {}
        resp = await self.client.get(
            "/simple/price",
            params={"ids": ",".join(sorted(set(wanted.values()))), "vs_currencies": "usd"},
            headers=self._headers,
        )
        resp.raise_for_status()
        data = resp.json()
        out: Dict[str, float] = {}
        for symbol, coin_id in wanted.items():
            price = _positive((data.get(coin_id) or {}).get("usd"))
            if price is not None:
                out[symbol] = price
        return out


ProviderFactory = Callable[..., PriceProvider]


def _make_orderbook(exchange=None, **_) -> PriceProvider:
    if exchange is None:
        raise ConfigError("orderbook provider needs an exchange client")
    return OrderBookProvider(exchange)


def _make_binance(binance_url: str = "https://fapi.binance.com", timeout: float = 5.0, **_) -> PriceProvider:
    return BinanceProvider(base_url=binance_url, timeout=timeout)


def _make_coingecko(
    coingecko_url: str = "https://api.coingecko.com/api/v3",
    coingecko_api_key: Optional[str] = None,
    timeout: float = 5.0,
    **_,
) -> PriceProvider:
    return CoinGeckoProvider(base_url=coingecko_url, timeout=timeout, api_key=coingecko_api_key)


PROVIDER_REGISTRY: Dict[str, ProviderFactory] = {
    "orderbook": _make_orderbook,
    "binance": _make_binance,
    "coingecko": _make_coingecko,
}


def build_provider_chain(names: Iterable[str], **kwargs) -> List[PriceProvider]:
    """Instantiate providers in the given order; unknown names are a configuration error."""
    chain: List[PriceProvider] = []
    for name in names:
        factory = PROVIDER_REGISTRY.get(name)
        if factory is None:
            raise ConfigError(f"unknown price provider '{name}' (have: {sorted(PROVIDER_REGISTRY)})")
        chain.append(factory(**kwargs))
    return chain
