"""
Ladder construction around a reference price.

Level i (0-based) sits at half the spread plus (i + 1) steps from the
reference on each side:

    bid_i = ref * (1 - (spread/2 + (i+1)*step) / 100)
    ask_i = ref * (1 + (spread/2 + (i+1)*step) / 100)

and carries base_size * (1 + i * size_growth_factor), so outer levels are a
little larger. With the default growth factor of 0.01 each level adds 1% of
the base size.

Prices are rounded to price_decimals. A level whose rounded price is not
strictly beyond the previous level (or not strictly on its side of the
reference) is dropped: coarse rounding must not produce crossed or duplicate
quotes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List

from quoter.config.strategy_config import StrategyConfig
from quoter.core.models import OrderIntent, Side
from quoter.core.rounding import round_price, round_size


@dataclass(frozen=True)
class Ladder:
    bids: List[OrderIntent] = field(default_factory=list)
    asks: List[OrderIntent] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.bids and not self.asks

    def __len__(self) -> int:
        return len(self.bids) + len(self.asks)

    def intents(self) -> List[OrderIntent]:
        """Bids and asks interleaved by level, innermost first."""
        out: List[OrderIntent] = []
        for i in range(max(len(self.bids), len(self.asks))):
            if i < len(self.bids):
                out.append(self.bids[i])
            if i < len(self.asks):
                out.append(self.asks[i])
        return out


def _finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


def compute_ladder(reference_price: float, config: StrategyConfig) -> Ladder:
    """Pure function of its inputs; degenerate inputs give an empty Ladder."""
    if not _finite(reference_price, config.spread, config.step_size, config.order_size, config.size_growth_factor):
        return Ladder()
    if reference_price <= 0 or config.price_steps <= 0 or config.max_orders_per_side <= 0:
        return Ladder()

    levels = min(config.price_steps, config.max_orders_per_side)
    half_spread = config.spread / 2.0

    bids: List[OrderIntent] = []
    asks: List[OrderIntent] = []
    for i in range(levels):
        distance_pct = half_spread + (i + 1) * config.step_size
        size = round_size(config.order_size * (1 + i * config.size_growth_factor), config.size_decimals)

        bid_px = round_price(reference_price * (1 - distance_pct / 100.0), config.price_decimals)
        ask_px = round_price(reference_price * (1 + distance_pct / 100.0), config.price_decimals)

        if bid_px < reference_price and (not bids or bid_px < bids[-1].price):
            bids.append(OrderIntent(Side.BUY, bid_px, size, level=i))
        if ask_px > reference_price and (not asks or ask_px > asks[-1].price):
            asks.append(OrderIntent(Side.SELL, ask_px, size, level=i))

    return Ladder(bids=bids, asks=asks)


class QuotingEngine:
    """Thin object wrapper so the orchestrator can hold a swappable engine."""

    def compute_ladder(self, reference_price: float, config: StrategyConfig) -> Ladder:
        return compute_ladder(reference_price, config)
