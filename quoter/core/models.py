"""
Domain records for market data, orders and account state.

Market-facing records (snapshots, readings, books, views) are frozen: once
produced they are only ever superseded, never edited. TrackedOrder is the one
mutable record and is owned by the OrderLifecycleManager.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def is_buy(self) -> bool:
        return self is Side.BUY


class OrderClass(str, Enum):
    """
    Expiry class of an order.

    SHORT_LIVED orders expire after a number of blocks and are cancelled in
    bulk. LONG_LIVED orders expire at a wall-clock time and must be cancelled
    one by one with their original expiry.
    """
    SHORT_LIVED = "SHORT_LIVED"
    LONG_LIVED = "LONG_LIVED"


@dataclass(frozen=True)
class BookLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    """Order book with both sides sorted best-first."""
    symbol: str
    bids: List[BookLevel] = field(default_factory=list)
    asks: List[BookLevel] = field(default_factory=list)

    @property
    def best_bid(self) -> Optional[BookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[BookLevel]:
        return self.asks[0] if self.asks else None

    @property
    def is_two_sided(self) -> bool:
        bid, ask = self.best_bid, self.best_ask
        return bid is not None and ask is not None and bid.price > 0 and ask.price > 0

    @property
    def mid(self) -> Optional[float]:
        if not self.is_two_sided:
            return None
        return (self.bids[0].price + self.asks[0].price) / 2.0


@dataclass(frozen=True)
class MarketStats:
    symbol: str
    volume_24h: float = 0.0
    oracle_price: Optional[float] = None


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    mid_price: float
    best_bid: float
    best_ask: float
    bid_size: float
    ask_size: float
    volume_24h: float
    observed_at: float
    # True when the book was synthesized around a fallback price (no real depth)
    synthetic: bool = False

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid


@dataclass(frozen=True)
class OracleReading:
    symbol: str
    provider: str
    price: float
    observed_at: float
    stale: bool = False

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.observed_at


@dataclass(frozen=True)
class OrderIntent:
    """A computed, not yet submitted order for one refresh cycle."""
    side: Side
    price: float
    size: float
    level: int = 0


@dataclass
class TrackedOrder:
    symbol: str
    client_id: int
    side: Side
    price: float
    size: float
    # block height for SHORT_LIVED, epoch seconds for LONG_LIVED
    expiry: float
    order_class: OrderClass
    exchange_order_id: Optional[str] = None
    placed_at: float = field(default_factory=time.time)

    @property
    def notional(self) -> float:
        return self.price * self.size


@dataclass(frozen=True)
class OrderView:
    """The exchange's view of one open order."""
    client_id: int
    symbol: str
    side: Optional[Side] = None
    price: float = 0.0
    size: float = 0.0
    good_til_block: Optional[int] = None
    good_til_block_time: Optional[float] = None
    order_id: Optional[str] = None
    status: str = "OPEN"


@dataclass(frozen=True)
class OrderReceipt:
    success: bool
    order_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Position:
    symbol: str
    side: Optional[Side]
    size: float
    entry_price: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0

    @classmethod
    def flat(cls, symbol: str) -> "Position":
        return cls(symbol=symbol, side=None, size=0.0)


@dataclass(frozen=True)
class PortfolioSummary:
    value: float
    collateral: float
    unrealized_pnl: float
    realized_pnl: float
