"""
Market data: price providers, TTL cache and the PriceSource fallback chain.
"""

from quoter.market_data.price_cache import PriceCache, CacheEntry
from quoter.market_data.providers import (
    PriceProvider,
    OrderBookProvider,
    BinanceProvider,
    CoinGeckoProvider,
    PROVIDER_REGISTRY,
    build_provider_chain,
)
from quoter.market_data.price_source import PriceSource

__all__ = [
    "PriceCache",
    "CacheEntry",
    "PriceProvider",
    "OrderBookProvider",
    "BinanceProvider",
    "CoinGeckoProvider",
    "PROVIDER_REGISTRY",
    "build_provider_chain",
    "PriceSource",
]
