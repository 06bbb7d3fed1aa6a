"""
AccountTracker: cached view of positions and collateral for the risk gate.

Positions and balances are read from the exchange and cached briefly (5s by
default) so a 1s loop does not hit the indexer every tick. Nothing here is
ever mutated locally; a refresh replaces the cached value.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from quoter.core.models import PortfolioSummary, Position

log = logging.getLogger("quoter")


class AccountTracker:
    def __init__(
        self,
        exchange: Any,
        collateral_asset: str = "USDC",
        ttl_sec: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._exchange = exchange
        self.collateral_asset = collateral_asset
        self._ttl = ttl_sec
        self._clock = clock
        self._positions: Dict[str, Tuple[float, Position]] = {}
        self._balances: Dict[str, Tuple[float, float]] = {}

    def _fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self._ttl

    async def get_position(self, symbol: str, force_refresh: bool = False) -> Position:
        """Current position; a symbol with no open position is returned as flat."""
        cached = self._positions.get(symbol)
        if cached is not None and not force_refresh and self._fresh(cached[0]):
            return cached[1]
        position = await self._exchange.get_position(symbol)
        if position is None:
            position = Position.flat(symbol)
        self._positions[symbol] = (self._clock(), position)
        return position

    async def get_balance(self, asset: Optional[str] = None, force_refresh: bool = False) -> float:
        asset = asset or self.collateral_asset
        cached = self._balances.get(asset)
        if cached is not None and not force_refresh and self._fresh(cached[0]):
            return cached[1]
        balance = float(await self._exchange.get_balance(asset))
        self._balances[asset] = (self._clock(), balance)
        return balance

    async def get_positions(self, symbols: Iterable[str], force_refresh: bool = False) -> List[Position]:
        return [await self.get_position(s, force_refresh) for s in symbols]

    def total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for _, p in self._positions.values())

    def total_realized_pnl(self) -> float:
        return sum(p.realized_pnl for _, p in self._positions.values())

    async def portfolio_summary(self, symbols: Iterable[str] = (), force_refresh: bool = False) -> PortfolioSummary:
        """Collateral plus unrealized PnL over every position seen so far (refreshing `symbols`)."""
        for symbol in symbols:
            await self.get_position(symbol, force_refresh)
        collateral = await self.get_balance(force_refresh=force_refresh)
        unrealized = self.total_unrealized_pnl()
        return PortfolioSummary(
            value=collateral + unrealized,
            collateral=collateral,
            unrealized_pnl=unrealized,
            realized_pnl=self.total_realized_pnl(),
        )

    def position_summary(self) -> Dict[str, Any]:
        open_positions = [p for _, p in self._positions.values() if p.size != 0]
        return {
            "open_positions": len(open_positions),
            "total_size": sum(abs(p.size) for p in open_positions),
            "unrealized_pnl": self.total_unrealized_pnl(),
            "realized_pnl": self.total_realized_pnl(),
            "positions": {
                p.symbol: {
                    "side": p.side.value if p.side is not None else None,
                    "size": p.size,
                    "entry_price": p.entry_price,
                    "unrealized_pnl": p.unrealized_pnl,
                }
                for p in open_positions
            },
        }

    def clear(self) -> None:
        self._positions.clear()
        self._balances.clear()
