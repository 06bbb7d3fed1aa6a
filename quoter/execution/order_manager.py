"""
OrderLifecycleManager: owns the locally tracked open orders.

Placement:
    The ladder is filtered for validity, optionally shuffled, and split into
    batches of `batch_size`. batch_size == 1 submits sequentially; larger
    batches submit concurrently with asyncio.gather(return_exceptions=True) so
    one rejection never cancels its siblings, then sleep `batch_delay_ms`
    before the next batch. Every accepted order becomes a TrackedOrder.

Expiry:
    SHORT_LIVED  good_til_block = height + randint(blocks // 2, blocks); the
                 chain height is fetched once per batch (the sequential path is
                 a single batch for this purpose), never once per order.
    LONG_LIVED   absolute epoch seconds, now + randint(secs // 2, secs).

Cancellation:
    Each tracked order is cancelled according to the class it was placed
    with. Short-lived orders go out in one bulk call. Long-lived orders are
    cancelled one at a time and need their original expiry, taken from the
    exchange's open-order view, else the local record, else now + 60s.

Reconciliation:
    A tracked order missing from the exchange's open-order list was filled,
    expired or cancelled elsewhere and is dropped. This is the only fill
    signal the engine has.

Per-order failures are counted, never raised. If any of them carried a
critical error message, the whole operation completes first and then
CriticalExchangeError is raised for the control loop to act on.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from quoter.config.strategy_config import StrategyConfig
from quoter.core.client_ids import ClientIdAllocator
from quoter.core.errors import CriticalExchangeError, is_critical_message
from quoter.core.models import OrderClass, OrderIntent, OrderReceipt, OrderView, Side, TrackedOrder
from quoter.core.rounding import is_valid_price, is_valid_size
from quoter.infra.logging_cfg import log_event
from quoter.strategy.quoting_engine import compute_ladder

log = logging.getLogger("quoter")

# Expiry used for long-lived cancels when neither the exchange nor the local record knows it
FALLBACK_CANCEL_EXPIRY_SEC = 60


@dataclass
class SubmitResult:
    """Outcome of one order submission."""
    intent: OrderIntent
    client_id: int
    success: bool
    order: Optional[TrackedOrder] = None
    error: Optional[str] = None


@dataclass
class PlacementReport:
    symbol: str
    attempted: int = 0
    accepted: int = 0
    rejected: int = 0
    invalid: int = 0
    batches: int = 0
    duration_ms: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def critical_errors(self) -> List[str]:
        return [e for e in self.errors if is_critical_message(e)]


@dataclass
class SyncResult:
    success: bool
    removed: List[TrackedOrder] = field(default_factory=list)
    remaining: int = 0
    error: Optional[str] = None


@dataclass
class OrderStats:
    total: int = 0
    buy: int = 0
    sell: int = 0
    by_symbol: Dict[str, int] = field(default_factory=dict)


@dataclass
class LifecycleCounters:
    """Cumulative counters since the manager was created."""
    attempted: int = 0
    placed: int = 0
    rejected: int = 0
    cancelled: int = 0
    cancel_failures: int = 0
    reconciled_removed: int = 0
    reconciled_notional: float = 0.0


class OrderLifecycleManager:
    def __init__(
        self,
        exchange: Any,
        id_allocator: Optional[ClientIdAllocator] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Any = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._exchange = exchange
        self._ids = id_allocator or ClientIdAllocator()
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._log_event = log_event_callback or self._default_log

        # symbol -> client_id -> order
        self._orders: Dict[str, Dict[int, TrackedOrder]] = {}
        self.counters = LifecycleCounters()
        self.last_placement: Optional[PlacementReport] = None

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log_event(log, event, level, **kwargs)

    # ───────────────────────────────────────────────────────────────────────
    # Registry
    # ───────────────────────────────────────────────────────────────────────

    def tracked(self, symbol: Optional[str] = None) -> List[TrackedOrder]:
        if symbol is not None:
            return list(self._orders.get(symbol, {}).values())
        return [o for orders in self._orders.values() for o in orders.values()]

    def symbols(self) -> List[str]:
        return [s for s, orders in self._orders.items() if orders]

    def is_tracked(self, client_id: int) -> bool:
        return any(client_id in orders for orders in self._orders.values())

    def _register(self, order: TrackedOrder) -> None:
        self._orders.setdefault(order.symbol, {})[order.client_id] = order
        self._update_open_gauge(order.symbol)

    def _untrack(self, symbol: str, client_ids: Sequence[int]) -> List[TrackedOrder]:
        orders = self._orders.get(symbol, {})
        removed = [orders.pop(cid) for cid in client_ids if cid in orders]
        self._update_open_gauge(symbol)
        return removed

    def _update_open_gauge(self, symbol: str) -> None:
        if self._metrics is not None:
            self._metrics.open_orders.labels(symbol=symbol).set(len(self._orders.get(symbol, {})))

    def get_order_stats(self, symbol: Optional[str] = None) -> OrderStats:
        stats = OrderStats()
        for order in self.tracked(symbol):
            stats.total += 1
            if order.side is Side.BUY:
                stats.buy += 1
            else:
                stats.sell += 1
            stats.by_symbol[order.symbol] = stats.by_symbol.get(order.symbol, 0) + 1
        return stats

    # ───────────────────────────────────────────────────────────────────────
    # Placement
    # ───────────────────────────────────────────────────────────────────────

    async def place_orders_around_price(
        self,
        symbol: str,
        reference_price: float,
        config: StrategyConfig,
    ) -> List[TrackedOrder]:
        """Place the ladder for reference_price; returns the orders the exchange accepted."""
        t0 = time.monotonic()
        report = PlacementReport(symbol=symbol)
        self.last_placement = report

        intents = compute_ladder(reference_price, config).intents()
        valid = [i for i in intents if is_valid_price(i.price) and is_valid_size(i.size)]
        report.invalid = len(intents) - len(valid)
        if not valid:
            self._log_event(
                "placement_skipped",
                logging.WARNING,
                symbol=symbol,
                reference_price=reference_price,
                reason="empty_ladder",
            )
            return []

        if config.shuffle_orders:
            self._rng.shuffle(valid)

        accepted: List[TrackedOrder] = []
        if config.batch_size == 1:
            report.batches = 1
            base = await self._expiry_base(symbol, config, report, len(valid))
            if base is not None:
                for intent in valid:
                    result = await self._submit(symbol, intent, config, base)
                    self._record(result, report, accepted)
        else:
            batches = [valid[i:i + config.batch_size] for i in range(0, len(valid), config.batch_size)]
            report.batches = len(batches)
            for n, batch in enumerate(batches):
                base = await self._expiry_base(symbol, config, report, len(batch))
                if base is not None:
                    results = await asyncio.gather(
                        *(self._submit(symbol, intent, config, base) for intent in batch),
                        return_exceptions=True,
                    )
                    for intent, result in zip(batch, results):
                        if isinstance(result, BaseException):
                            result = SubmitResult(intent=intent, client_id=0, success=False, error=str(result))
                        self._record(result, report, accepted)
                if n < len(batches) - 1 and config.batch_delay_ms > 0:
                    await self._sleep(config.batch_delay_ms / 1000.0)

        report.duration_ms = (time.monotonic() - t0) * 1000.0
        self.counters.attempted += report.attempted
        self.counters.placed += report.accepted
        self.counters.rejected += report.rejected
        if self._metrics is not None:
            self._metrics.placement_latency_ms.labels(symbol=symbol).observe(report.duration_ms)

        self._log_event(
            "orders_placed",
            symbol=symbol,
            reference_price=reference_price,
            order_class=config.order_class.value,
            attempted=report.attempted,
            accepted=report.accepted,
            rejected=report.rejected,
            invalid=report.invalid,
            batches=report.batches,
            duration_ms=round(report.duration_ms, 1),
        )
        if report.rejected:
            self._log_event(
                "batch_submit_errors",
                logging.WARNING,
                symbol=symbol,
                count=report.rejected,
                errors=report.errors[:5],
            )

        critical = report.critical_errors
        if critical:
            raise CriticalExchangeError(f"placement on {symbol} hit critical error: {critical[0]}")
        return accepted

    async def _expiry_base(
        self,
        symbol: str,
        config: StrategyConfig,
        report: PlacementReport,
        batch_len: int,
    ) -> Optional[float]:
        """Chain height for short-lived orders, wall clock for long-lived ones."""
        if config.order_class is OrderClass.LONG_LIVED:
            return self._clock()
        try:
            return float(await self._exchange.get_chain_height())
        except Exception as e:
            # Without a height no short-lived order in this batch can be expired correctly
            report.attempted += batch_len
            report.rejected += batch_len
            report.errors.append(f"height fetch failed: {e}")
            self._log_event("height_fetch_failed", logging.WARNING, symbol=symbol, error=str(e))
            return None

    def _expiry(self, config: StrategyConfig, base: float) -> float:
        if config.order_class is OrderClass.SHORT_LIVED:
            window = config.good_til_blocks
            return int(base) + self._rng.randint(max(1, window // 2), window)
        window = config.good_til_seconds
        return int(base) + self._rng.randint(max(1, window // 2), window)

    async def _submit(
        self,
        symbol: str,
        intent: OrderIntent,
        config: StrategyConfig,
        base: float,
    ) -> SubmitResult:
        client_id = self._ids.next_id(self.is_tracked)
        expiry = self._expiry(config, base)
        try:
            receipt: OrderReceipt = await self._exchange.place_order(
                symbol,
                intent.side,
                intent.price,
                intent.size,
                client_id,
                expiry,
                config.order_class,
            )
        except Exception as e:
            return SubmitResult(intent=intent, client_id=client_id, success=False, error=str(e))

        if receipt is None or not receipt.success:
            error = (receipt.error if receipt is not None else None) or "rejected"
            return SubmitResult(intent=intent, client_id=client_id, success=False, error=error)

        order = TrackedOrder(
            symbol=symbol,
            client_id=client_id,
            side=intent.side,
            price=intent.price,
            size=intent.size,
            expiry=expiry,
            order_class=config.order_class,
            exchange_order_id=receipt.order_id,
            placed_at=self._clock(),
        )
        self._register(order)
        return SubmitResult(intent=intent, client_id=client_id, success=True, order=order)

    def _record(self, result: SubmitResult, report: PlacementReport, accepted: List[TrackedOrder]) -> None:
        report.attempted += 1
        side = result.intent.side.value
        if result.success and result.order is not None:
            report.accepted += 1
            accepted.append(result.order)
            if self._metrics is not None:
                self._metrics.orders_submitted.labels(symbol=result.order.symbol, side=side).inc()
            return
        report.rejected += 1
        report.errors.append(result.error or "unknown")
        log.debug(
            f"[PLACE] {side} {result.intent.size}@{result.intent.price} "
            f"cid={result.client_id} failed: {result.error}"
        )
        if self._metrics is not None:
            reason = "critical" if is_critical_message(result.error or "") else "rejected"
            self._metrics.orders_rejected.labels(symbol=report.symbol, reason=reason).inc()

    # ───────────────────────────────────────────────────────────────────────
    # Cancellation
    # ───────────────────────────────────────────────────────────────────────

    async def cancel_all_for_symbol(self, symbol: str, config: Optional[StrategyConfig] = None) -> bool:
        """
        Cancel every tracked order on symbol. Returns True only if every
        attempted cancellation succeeded; cancelled ids are untracked at once.
        """
        tracked = self.tracked(symbol)
        if not tracked:
            return True

        views: Dict[int, OrderView] = {}
        try:
            for view in await self._exchange.get_open_orders(symbol):
                views[view.client_id] = view
        except Exception as e:
            self._log_event("open_orders_fetch_failed", logging.WARNING, symbol=symbol, error=str(e))

        cancel_gtb = config.cancel_good_til_blocks if config is not None else 10
        short = [o for o in tracked if o.order_class is OrderClass.SHORT_LIVED]
        long_ = [o for o in tracked if o.order_class is OrderClass.LONG_LIVED]

        errors: List[str] = []
        ok = True
        if short:
            ok = await self._cancel_short(symbol, short, cancel_gtb, errors) and ok
        if long_:
            ok = await self._cancel_long(symbol, long_, views, errors) and ok

        self._log_event(
            "orders_cancelled",
            logging.INFO if ok else logging.WARNING,
            symbol=symbol,
            attempted=len(tracked),
            remaining=len(self.tracked(symbol)),
            success=ok,
            errors=errors[:5],
        )
        critical = [e for e in errors if is_critical_message(e)]
        if critical:
            raise CriticalExchangeError(f"cancellation on {symbol} hit critical error: {critical[0]}")
        return ok

    async def _cancel_short(
        self,
        symbol: str,
        orders: List[TrackedOrder],
        cancel_gtb: int,
        errors: List[str],
    ) -> bool:
        client_ids = [o.client_id for o in orders]
        try:
            height = await self._exchange.get_chain_height()
            receipt = await self._exchange.batch_cancel(symbol, client_ids, int(height) + cancel_gtb)
        except Exception as e:
            receipt = OrderReceipt(success=False, error=str(e))

        if receipt is None or not receipt.success:
            error = (receipt.error if receipt is not None else None) or "batch cancel rejected"
            errors.append(error)
            self.counters.cancel_failures += len(client_ids)
            return False

        removed = self._untrack(symbol, client_ids)
        self.counters.cancelled += len(removed)
        if self._metrics is not None:
            self._metrics.orders_cancelled.labels(
                symbol=symbol, order_class=OrderClass.SHORT_LIVED.value
            ).inc(len(removed))
        return True

    def _cancel_expiry(self, order: TrackedOrder, views: Dict[int, OrderView]) -> float:
        view = views.get(order.client_id)
        if view is not None and view.good_til_block_time:
            return view.good_til_block_time
        if order.expiry:
            return order.expiry
        return self._clock() + FALLBACK_CANCEL_EXPIRY_SEC

    async def _cancel_long(
        self,
        symbol: str,
        orders: List[TrackedOrder],
        views: Dict[int, OrderView],
        errors: List[str],
    ) -> bool:
        ok = True
        for order in orders:
            expiry = self._cancel_expiry(order, views)
            try:
                receipt = await self._exchange.cancel_order(
                    order.client_id, OrderClass.LONG_LIVED, symbol, expiry
                )
            except Exception as e:
                receipt = OrderReceipt(success=False, error=str(e))

            if receipt is None or not receipt.success:
                ok = False
                errors.append((receipt.error if receipt is not None else None) or "cancel rejected")
                self.counters.cancel_failures += 1
                continue

            self._untrack(symbol, [order.client_id])
            self.counters.cancelled += 1
            if self._metrics is not None:
                self._metrics.orders_cancelled.labels(
                    symbol=symbol, order_class=OrderClass.LONG_LIVED.value
                ).inc()
        return ok

    async def cancel_all(self, config: Optional[StrategyConfig] = None) -> bool:
        """Cancel tracked orders on every symbol; critical errors are re-raised after all symbols ran."""
        symbols = self.symbols()
        if not symbols:
            return True
        results = await asyncio.gather(
            *(self.cancel_all_for_symbol(s, config) for s in symbols),
            return_exceptions=True,
        )
        ok = True
        critical: Optional[BaseException] = None
        for symbol, res in zip(symbols, results):
            if isinstance(res, BaseException):
                ok = False
                self._log_event("cancel_all_error", logging.ERROR, symbol=symbol, error=str(res))
                if isinstance(res, CriticalExchangeError) and critical is None:
                    critical = res
            elif not res:
                ok = False
        if critical is not None:
            raise critical
        return ok

    # ───────────────────────────────────────────────────────────────────────
    # Reconciliation
    # ───────────────────────────────────────────────────────────────────────

    async def sync_with_exchange(self, symbol: Optional[str] = None) -> SyncResult:
        """
        Drop tracked orders the exchange no longer reports as open.
        A failed fetch drops nothing.
        """
        try:
            views = await self._exchange.get_open_orders(symbol)
        except Exception as e:
            self._log_event("reconcile_failed", logging.WARNING, symbol=symbol, error=str(e))
            return SyncResult(success=False, remaining=len(self.tracked(symbol)), error=str(e))

        open_ids = {v.client_id for v in views}
        targets = [symbol] if symbol is not None else list(self._orders)
        removed: List[TrackedOrder] = []
        for sym in targets:
            missing = [cid for cid in self._orders.get(sym, {}) if cid not in open_ids]
            if missing:
                removed.extend(self._untrack(sym, missing))

        self.counters.reconciled_removed += len(removed)
        self.counters.reconciled_notional += sum(o.notional for o in removed)
        if self._metrics is not None:
            for order in removed:
                self._metrics.reconcile_removed.labels(symbol=order.symbol).inc()

        remaining = len(self.tracked(symbol))
        if removed:
            self._log_event(
                "orders_reconciled",
                symbol=symbol,
                removed=len(removed),
                removed_ids=[o.client_id for o in removed][:20],
                remaining=remaining,
                exchange_open=len(views),
            )
        return SyncResult(success=True, removed=removed, remaining=remaining)

    async def adopt_open_orders(self, symbol: str) -> List[TrackedOrder]:
        """
        Start tracking orders the exchange lists as open but we do not know
        about (left over from a previous process), so the next refresh
        cancels them. Orders carrying a good-til-block are short-lived.
        """
        try:
            views = await self._exchange.get_open_orders(symbol)
        except Exception as e:
            self._log_event("adopt_failed", logging.WARNING, symbol=symbol, error=str(e))
            return []

        adopted: List[TrackedOrder] = []
        for view in views:
            if self.is_tracked(view.client_id) or view.side is None:
                continue
            if view.good_til_block:
                order_class, expiry = OrderClass.SHORT_LIVED, float(view.good_til_block)
            else:
                order_class, expiry = OrderClass.LONG_LIVED, float(view.good_til_block_time or 0.0)
            order = TrackedOrder(
                symbol=view.symbol or symbol,
                client_id=view.client_id,
                side=view.side,
                price=view.price,
                size=view.size,
                expiry=expiry,
                order_class=order_class,
                exchange_order_id=view.order_id,
                placed_at=self._clock(),
            )
            self._register(order)
            adopted.append(order)

        if adopted:
            self._log_event("orders_adopted", symbol=symbol, count=len(adopted))
        return adopted
