"""
Shared fixtures: an in-memory exchange that mirrors placements into its
open-order list, and small strategy builders.
"""

import asyncio
from typing import Dict, List, Optional, Set

import pytest

from quoter.config.strategy_config import StrategyConfig
from quoter.core.models import (
    BookLevel,
    MarketStats,
    OrderBook,
    OrderClass,
    OrderReceipt,
    OrderView,
    Position,
)


class FakeExchange:
    """ExchangeClient double. Placed orders show up as open until cancelled or removed."""

    def __init__(self):
        self.height = 1000
        self.book = OrderBook(
            symbol="BTC-USD",
            bids=[BookLevel(99.99, 2.0), BookLevel(99.98, 3.0)],
            asks=[BookLevel(100.01, 1.5), BookLevel(100.02, 4.0)],
        )
        self.volume_24h = 1_000_000.0
        self.position: Optional[Position] = None
        self.balance = 1000.0

        self.open: Dict[int, OrderView] = {}
        self.place_calls: List[tuple] = []
        self.cancel_calls: List[tuple] = []
        self.batch_cancel_calls: List[tuple] = []
        self.height_calls = 0

        # failure injection
        self.reject_prices: Dict[float, str] = {}
        self.raise_prices: Dict[float, Exception] = {}
        self.cancel_fail_ids: Set[int] = set()
        self.batch_cancel_error: Optional[str] = None
        self.open_orders_error: Optional[Exception] = None
        self.height_error: Optional[Exception] = None
        self.position_error: Optional[Exception] = None
        self.book_error: Optional[Exception] = None

        # concurrency probe
        self.in_flight = 0
        self.max_in_flight = 0
        self.place_delay = 0.0

    async def place_order(self, symbol, side, price, size, client_id, expiry, order_class):
        self.place_calls.append((symbol, side, price, size, client_id, expiry, order_class))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.place_delay)
        finally:
            self.in_flight -= 1
        if price in self.raise_prices:
            raise self.raise_prices[price]
        if price in self.reject_prices:
            return OrderReceipt(success=False, error=self.reject_prices[price])
        short = order_class is OrderClass.SHORT_LIVED
        self.open[client_id] = OrderView(
            client_id=client_id,
            symbol=symbol,
            side=side,
            price=price,
            size=size,
            good_til_block=int(expiry) if short else None,
            good_til_block_time=None if short else float(expiry),
            order_id=f"oid-{client_id}",
        )
        return OrderReceipt(success=True, order_id=f"oid-{client_id}")

    async def cancel_order(self, client_id, order_class, symbol, expiry):
        self.cancel_calls.append((client_id, order_class, symbol, expiry))
        if client_id in self.cancel_fail_ids:
            return OrderReceipt(success=False, error="order not found")
        self.open.pop(client_id, None)
        return OrderReceipt(success=True)

    async def batch_cancel(self, symbol, client_ids, expiry):
        self.batch_cancel_calls.append((symbol, list(client_ids), expiry))
        if self.batch_cancel_error:
            return OrderReceipt(success=False, error=self.batch_cancel_error)
        for cid in client_ids:
            self.open.pop(cid, None)
        return OrderReceipt(success=True)

    async def get_open_orders(self, symbol=None):
        if self.open_orders_error is not None:
            raise self.open_orders_error
        return [v for v in self.open.values() if symbol is None or v.symbol == symbol]

    async def get_order_book(self, symbol):
        if self.book_error is not None:
            raise self.book_error
        return OrderBook(symbol=symbol, bids=list(self.book.bids), asks=list(self.book.asks))

    async def get_chain_height(self):
        self.height_calls += 1
        if self.height_error is not None:
            raise self.height_error
        return self.height

    async def get_market_stats(self, symbol):
        return MarketStats(symbol=symbol, volume_24h=self.volume_24h)

    async def get_position(self, symbol):
        if self.position_error is not None:
            raise self.position_error
        return self.position

    async def get_balance(self, asset):
        return self.balance


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def long_config():
    """Three levels a side around 100 at 0.01% steps, no shuffling or settle delay."""
    return StrategyConfig(
        symbol="BTC-USD",
        spread=0.1,
        step_size=0.01,
        price_steps=3,
        max_orders_per_side=5,
        order_size=0.01,
        size_growth_factor=0.0,
        order_class=OrderClass.LONG_LIVED,
        good_til_seconds=300,
        batch_size=1,
        batch_delay_ms=0,
        shuffle_orders=False,
        cancel_settle_sec=0.0,
        price_decimals=3,
        size_decimals=4,
    )


@pytest.fixture
def short_config(long_config):
    return long_config.with_updates(order_class=OrderClass.SHORT_LIVED, good_til_blocks=20)
