"""
PriceSource: ordered provider chain with per-(provider, symbol) TTL caching.

get_price() walks the chain and stops at the first provider with a valid
positive price. A failed provider never evicts what is cached for it; the last
known value is only returned when the caller explicitly asks for stale data,
and it comes back marked stale.

get_market_snapshot() builds a MarketSnapshot from the venue order book. When
the book is not two-sided it can synthesize one around an oracle price, with
zero sizes so downstream code can tell there is no real depth behind it.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from quoter.core.models import MarketSnapshot, OracleReading, OrderBook
from quoter.core.rounding import is_valid_price
from quoter.infra.logging_cfg import log_event
from quoter.market_data.price_cache import PriceCache
from quoter.market_data.providers import PriceProvider

log = logging.getLogger("quoter")

SNAPSHOT_KEY = "snapshot"


class PriceSource:
    def __init__(
        self,
        providers: Iterable[PriceProvider],
        exchange: Any = None,
        cache: Optional[PriceCache] = None,
        snapshot_ttl_ms: float = 1000.0,
        metrics: Any = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._providers: List[PriceProvider] = list(providers)
        self._exchange = exchange
        self.cache = cache if cache is not None else PriceCache()
        self._snapshot_ttl_ms = snapshot_ttl_ms
        self._metrics = metrics
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log_event(log, event, level, **kwargs)

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self._providers]

    def _chain(self, preferred: Optional[str], oracle_only: bool) -> List[PriceProvider]:
        chain = [p for p in self._providers if p.is_oracle or not oracle_only]
        if preferred:
            chain.sort(key=lambda p: p.name != preferred)
        return chain

    def _reading(self, provider: PriceProvider, symbol: str, price: float) -> OracleReading:
        return OracleReading(
            symbol=symbol,
            provider=provider.name,
            price=price,
            observed_at=self.cache.now_ms() / 1000.0,
        )

    def _count(self, provider: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.price_fetches.labels(provider=provider, outcome=outcome).inc()

    # ───────────────────────────────────────────────────────────────────────
    # Single and batch price lookups
    # ───────────────────────────────────────────────────────────────────────

    async def get_price(
        self,
        symbol: str,
        preferred: Optional[str] = None,
        allow_stale: bool = False,
        oracle_only: bool = False,
    ) -> Optional[OracleReading]:
        """
        Return the first valid reading along the chain, or None when no provider
        has one. oracle_only skips providers that read the local venue.
        """
        chain = self._chain(preferred, oracle_only)
        for provider in chain:
            if not provider.supports(symbol):
                continue
            cached = self.cache.get(provider.name, symbol)
            if cached is not None:
                self._count(provider.name, "cache_hit")
                return cached
            try:
                price = await provider.fetch(symbol)
            except Exception as e:
                self._count(provider.name, "error")
                self._log_event(
                    "price_fetch_failed",
                    logging.WARNING,
                    symbol=symbol,
                    provider=provider.name,
                    error=str(e),
                )
                continue
            if price is None or not is_valid_price(price):
                self._count(provider.name, "empty")
                continue
            reading = self._reading(provider, symbol, price)
            self.cache.set(provider.name, symbol, reading, provider.ttl_ms)
            self._count(provider.name, "ok")
            return reading

        if allow_stale:
            stale = self._latest_cached(symbol, chain)
            if stale is not None:
                self._log_event(
                    "price_served_stale",
                    logging.WARNING,
                    symbol=symbol,
                    provider=stale.provider,
                    age_sec=round(stale.age(self.cache.now_ms() / 1000.0), 3),
                )
                return stale

        self._log_event("price_unavailable", logging.WARNING, symbol=symbol, providers=[p.name for p in chain])
        return None

    def _latest_cached(self, symbol: str, chain: List[PriceProvider]) -> Optional[OracleReading]:
        best = None
        for provider in chain:
            entry = self.cache.get_unchecked(provider.name, symbol)
            if entry is None:
                continue
            if best is None or entry.stored_at_ms > best.stored_at_ms:
                best = entry
        if best is None:
            return None
        return dataclasses.replace(best.value, stale=True)

    async def get_prices(
        self,
        symbols: Iterable[str],
        preferred: Optional[str] = None,
        oracle_only: bool = False,
    ) -> Dict[str, OracleReading]:
        """
        Batch lookup. Each provider is asked once for everything still missing,
        so N uncached symbols cost one round trip per provider, not N.
        Symbols no provider could price are absent from the result.
        """
        remaining = list(dict.fromkeys(symbols))
        result: Dict[str, OracleReading] = {}
        for provider in self._chain(preferred, oracle_only):
            if not remaining:
                break
            todo = []
            for symbol in remaining:
                if not provider.supports(symbol):
                    continue
                cached = self.cache.get(provider.name, symbol)
                if cached is not None:
                    self._count(provider.name, "cache_hit")
                    result[symbol] = cached
                else:
                    todo.append(symbol)
            if todo:
                try:
                    fetched = await provider.fetch_many(todo)
                except Exception as e:
                    self._count(provider.name, "error")
                    self._log_event(
                        "price_fetch_failed",
                        logging.WARNING,
                        symbol=",".join(todo),
                        provider=provider.name,
                        error=str(e),
                    )
                    fetched = {}
                for symbol, price in fetched.items():
                    if symbol not in todo or not is_valid_price(price):
                        continue
                    reading = self._reading(provider, symbol, price)
                    self.cache.set(provider.name, symbol, reading, provider.ttl_ms)
                    self._count(provider.name, "ok")
                    result[symbol] = reading
            remaining = [s for s in remaining if s not in result]
        return result

    # ───────────────────────────────────────────────────────────────────────
    # Market snapshots
    # ───────────────────────────────────────────────────────────────────────

    async def get_market_snapshot(
        self,
        symbol: str,
        force_refresh: bool = False,
        use_fallback: bool = True,
        fallback_spread_pct: float = 0.1,
    ) -> Optional[MarketSnapshot]:
        if not force_refresh:
            cached = self.cache.get(SNAPSHOT_KEY, symbol)
            if cached is not None:
                return cached

        if self._exchange is None:
            raise RuntimeError("PriceSource needs an exchange client for market snapshots")

        book: Optional[OrderBook] = None
        try:
            book = await self._exchange.get_order_book(symbol)
        except Exception as e:
            self._log_event("orderbook_fetch_failed", logging.WARNING, symbol=symbol, error=str(e))

        volume = await self._volume_24h(symbol)
        now = self.cache.now_ms() / 1000.0

        snapshot: Optional[MarketSnapshot] = None
        if book is not None and book.is_two_sided:
            bid, ask = book.best_bid, book.best_ask
            snapshot = MarketSnapshot(
                symbol=symbol,
                mid_price=(bid.price + ask.price) / 2.0,
                best_bid=bid.price,
                best_ask=ask.price,
                bid_size=bid.size,
                ask_size=ask.size,
                volume_24h=volume,
                observed_at=now,
            )
        elif use_fallback:
            reading = await self.get_price(symbol, oracle_only=True)
            if reading is not None:
                s = fallback_spread_pct / 100.0
                snapshot = MarketSnapshot(
                    symbol=symbol,
                    mid_price=reading.price,
                    best_bid=reading.price * (1 - s),
                    best_ask=reading.price * (1 + s),
                    bid_size=0.0,
                    ask_size=0.0,
                    volume_24h=volume,
                    observed_at=now,
                    synthetic=True,
                )
                self._log_event(
                    "snapshot_synthesized",
                    symbol=symbol,
                    provider=reading.provider,
                    price=reading.price,
                    spread_pct=fallback_spread_pct,
                )

        if snapshot is None:
            self._log_event("snapshot_unavailable", logging.WARNING, symbol=symbol)
            return None
        self.cache.set(SNAPSHOT_KEY, symbol, snapshot, self._snapshot_ttl_ms)
        return snapshot

    async def _volume_24h(self, symbol: str) -> float:
        try:
            stats = await self._exchange.get_market_stats(symbol)
        except Exception as e:
            log.debug(f"[PRICE] market stats for {symbol} failed: {e}")
            return 0.0
        return stats.volume_24h if stats is not None else 0.0

    def clear_cache(self, symbol: Optional[str] = None) -> None:
        self.cache.clear(symbol)

    async def close(self) -> None:
        for provider in self._providers:
            await provider.close()
