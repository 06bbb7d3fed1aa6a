"""
Minimal async HTTP client for the exchange indexer (read-only endpoints).

Responses are mapped straight into quoter.core.models records so nothing above
this layer sees raw JSON.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from quoter.core.errors import ExchangeRequestError
from quoter.core.models import (
    BookLevel,
    MarketStats,
    OrderBook,
    OrderView,
    Position,
    Side,
)


def _f(raw: Any, default: float = 0.0) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _parse_ts(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _side(raw: Optional[str]) -> Optional[Side]:
    if not raw:
        return None
    raw = raw.upper()
    if raw in ("BUY", "LONG"):
        return Side.BUY
    if raw in ("SELL", "SHORT"):
        return Side.SELL
    return None


class AsyncIndexer:
    def __init__(
        self,
        base_url: str,
        address: Optional[str],
        subaccount: int = 0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.address = address
        self.subaccount = subaccount
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def height(self) -> int:
        data = await self._get("/height")
        return int(data["height"])

    async def order_book(self, symbol: str) -> OrderBook:
        data = await self._get(f"/orderbooks/perpetualMarket/{symbol}")
        bids = [BookLevel(_f(b.get("price")), _f(b.get("size"))) for b in data.get("bids", [])]
        asks = [BookLevel(_f(a.get("price")), _f(a.get("size"))) for a in data.get("asks", [])]
        # Indexer already returns best-first; sort anyway so callers can rely on it
        bids.sort(key=lambda lvl: lvl.price, reverse=True)
        asks.sort(key=lambda lvl: lvl.price)
        return OrderBook(symbol=symbol, bids=bids, asks=asks)

    async def open_orders(self, symbol: Optional[str] = None) -> List[OrderView]:
        params: Dict[str, Any] = {
            "address": self._require_address(),
            "subaccountNumber": self.subaccount,
            "status": "OPEN",
        }
        if symbol:
            params["ticker"] = symbol
        data = await self._get("/orders", params=params)
        views = []
        for o in data or []:
            try:
                client_id = int(o["clientId"])
            except (KeyError, TypeError, ValueError):
                continue
            gtb = o.get("goodTilBlock")
            views.append(OrderView(
                client_id=client_id,
                symbol=o.get("ticker", symbol or ""),
                side=_side(o.get("side")),
                price=_f(o.get("price")),
                size=_f(o.get("size")),
                good_til_block=int(gtb) if gtb not in (None, "") else None,
                good_til_block_time=_parse_ts(o.get("goodTilBlockTime")),
                order_id=o.get("id"),
                status=o.get("status", "OPEN"),
            ))
        return views

    async def positions(self) -> List[Position]:
        params = {
            "address": self._require_address(),
            "subaccountNumber": self.subaccount,
            "status": "OPEN",
        }
        data = await self._get("/perpetualPositions", params=params)
        out = []
        for p in data.get("positions", []):
            size = _f(p.get("size"))
            out.append(Position(
                symbol=p.get("market", ""),
                side=_side(p.get("side")),
                size=abs(size),
                entry_price=_f(p.get("entryPrice")),
                unrealized_pnl=_f(p.get("unrealizedPnl")),
                realized_pnl=_f(p.get("realizedPnl")),
            ))
        return out

    async def position(self, symbol: str) -> Optional[Position]:
        for p in await self.positions():
            if p.symbol == symbol:
                return p
        return None

    async def subaccount_state(self) -> Dict[str, Any]:
        data = await self._get(f"/addresses/{self._require_address()}/subaccountNumber/{self.subaccount}")
        return data.get("subaccount", {})

    async def balance(self, asset: str = "USDC") -> float:
        state = await self.subaccount_state()
        pos = (state.get("assetPositions") or {}).get(asset)
        if not pos:
            return 0.0
        size = _f(pos.get("size"))
        return -abs(size) if str(pos.get("side", "LONG")).upper() == "SHORT" else size

    async def market_stats(self, symbol: str) -> MarketStats:
        data = await self._get("/perpetualMarkets", params={"ticker": symbol})
        market = (data.get("markets") or {}).get(symbol, {})
        oracle = market.get("oraclePrice")
        return MarketStats(
            symbol=symbol,
            volume_24h=_f(market.get("volume24H")),
            oracle_price=_f(oracle) if oracle not in (None, "") else None,
        )

    def _require_address(self) -> str:
        if not self.address:
            raise ExchangeRequestError("indexer address is not configured")
        return self.address

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self.client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ExchangeRequestError(f"indexer GET {path} failed: {e}") from e
        data = resp.json()
        # /orders returns a bare list; everything else is an object
        if isinstance(data, dict) and "errors" in data:
            raise ExchangeRequestError(f"indexer GET {path} error: {data['errors']}")
        return data
