"""
Exchange collaborator interfaces.

ExchangeClient is everything the engine needs from a venue. The read side is
served by the HTTP indexer (quoter.infra.indexer.AsyncIndexer); the write side
(signing and broadcasting) is an OrderSubmitter supplied by the operator, since
key management is deliberately not part of this package. IndexerExchange glues
the two together.

Blocking submitters (most signing SDKs) are wrapped in AsyncSubmitter, which
runs calls on a shared thread pool with a timeout and jittered retries.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Protocol, Sequence, runtime_checkable

from quoter.core.errors import ConfigError, is_critical_message
from quoter.core.models import (
    MarketStats,
    OrderBook,
    OrderClass,
    OrderReceipt,
    OrderView,
    Position,
    Side,
)
from quoter.infra.indexer import AsyncIndexer

log = logging.getLogger("quoter")


@runtime_checkable
class ExchangeClient(Protocol):
    async def place_order(
        self,
        symbol: str,
        side: Side,
        price: float,
        size: float,
        client_id: int,
        expiry: float,
        order_class: OrderClass,
    ) -> OrderReceipt: ...

    async def cancel_order(
        self, client_id: int, order_class: OrderClass, symbol: str, expiry: float
    ) -> OrderReceipt: ...

    async def batch_cancel(self, symbol: str, client_ids: Sequence[int], expiry: int) -> OrderReceipt: ...

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderView]: ...

    async def get_order_book(self, symbol: str) -> OrderBook: ...

    async def get_chain_height(self) -> int: ...

    async def get_market_stats(self, symbol: str) -> MarketStats: ...

    async def get_position(self, symbol: str) -> Optional[Position]: ...

    async def get_balance(self, asset: str) -> float: ...


class OrderSubmitter(Protocol):
    """
    Signing side of the exchange. Methods may be sync or async and may return
    an OrderReceipt, a dict with success/order_id/tx_hash/error keys, or None
    (treated as success).
    """

    def place_order(self, symbol, side, price, size, client_id, expiry, order_class) -> Any: ...

    def cancel_order(self, client_id, order_class, symbol, expiry) -> Any: ...

    def batch_cancel(self, symbol, client_ids, expiry) -> Any: ...


def as_receipt(result: Any) -> OrderReceipt:
    if isinstance(result, OrderReceipt):
        return result
    if result is None:
        return OrderReceipt(success=True)
    if isinstance(result, dict):
        return OrderReceipt(
            success=bool(result.get("success", result.get("error") is None)),
            order_id=result.get("order_id"),
            tx_hash=result.get("tx_hash") or result.get("hash"),
            error=result.get("error"),
        )
    # SDK transaction responses: treat any object as a broadcast acknowledgement
    return OrderReceipt(success=True, tx_hash=str(getattr(result, "hash", "")) or None)


class AsyncSubmitter:
    """Async facade over a blocking or async OrderSubmitter."""

    def __init__(
        self,
        submitter: OrderSubmitter,
        timeout: float = 10.0,
        retries: int = 2,
        max_workers: int = 4,
    ) -> None:
        self._submitter = submitter
        self._timeout = timeout
        self._retries = retries
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="quoter-exec")

    async def place_order(self, *args) -> OrderReceipt:
        return as_receipt(await self._call(self._submitter.place_order, *args))

    async def cancel_order(self, *args) -> OrderReceipt:
        return as_receipt(await self._call(self._submitter.cancel_order, *args))

    async def batch_cancel(self, *args) -> OrderReceipt:
        return as_receipt(await self._call(self._submitter.batch_cancel, *args))

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    async def _call(self, fn: Callable[..., Any], *args) -> Any:
        loop = asyncio.get_running_loop()
        backoff = 0.2
        for attempt in range(self._retries + 1):
            try:
                if inspect.iscoroutinefunction(fn):
                    return await asyncio.wait_for(fn(*args), timeout=self._timeout)
                return await asyncio.wait_for(
                    loop.run_in_executor(self._executor, lambda: fn(*args)),
                    timeout=self._timeout,
                )
            except Exception as e:
                # Critical failures are never retried; the control loop must see them
                if attempt >= self._retries or is_critical_message(str(e)):
                    raise
                log.debug(f"[SUBMIT] retry {attempt + 1}/{self._retries} after {type(e).__name__}: {e}")
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2


class IndexerExchange:
    """ExchangeClient backed by an AsyncIndexer for reads and an AsyncSubmitter for writes."""

    def __init__(self, indexer: AsyncIndexer, submitter: AsyncSubmitter) -> None:
        self._indexer = indexer
        self._submitter = submitter

    async def place_order(self, symbol, side, price, size, client_id, expiry, order_class) -> OrderReceipt:
        return await self._submitter.place_order(symbol, side, price, size, client_id, expiry, order_class)

    async def cancel_order(self, client_id, order_class, symbol, expiry) -> OrderReceipt:
        return await self._submitter.cancel_order(client_id, order_class, symbol, expiry)

    async def batch_cancel(self, symbol, client_ids, expiry) -> OrderReceipt:
        return await self._submitter.batch_cancel(symbol, list(client_ids), expiry)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderView]:
        return await self._indexer.open_orders(symbol)

    async def get_order_book(self, symbol: str) -> OrderBook:
        return await self._indexer.order_book(symbol)

    async def get_chain_height(self) -> int:
        return await self._indexer.height()

    async def get_market_stats(self, symbol: str) -> MarketStats:
        return await self._indexer.market_stats(symbol)

    async def get_position(self, symbol: str) -> Optional[Position]:
        return await self._indexer.position(symbol)

    async def get_balance(self, asset: str) -> float:
        return await self._indexer.balance(asset)

    async def close(self) -> None:
        await self._submitter.close()
        await self._indexer.close()


def load_submitter_factory(path: str) -> Callable[..., OrderSubmitter]:
    """Resolve 'package.module:callable' to the submitter factory it names."""
    if ":" not in path:
        raise ConfigError(f"submitter factory must look like 'module:callable', got {path!r}")
    module_name, attr = path.split(":", 1)
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigError(f"{path!r} is not a callable submitter factory")
    return factory
