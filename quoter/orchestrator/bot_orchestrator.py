"""
MarketMakerBot: single control loop for one symbol.

States:
    STOPPED -> STARTING -> RUNNING <-> PAUSED
    RUNNING / PAUSED -> ERROR on a critical failure
    any -> STOPPED on shutdown

Each RUNNING tick:
    1. market snapshot (skip the tick if unavailable)
    2. risk gate (a denial skips the refresh, never the loop)
    3. when refresh_interval has elapsed: oracle evaluation, then
       cancel -> settle -> reconcile -> place around the chosen price
    4. statistics, and a status summary every status_interval

The tick catches every exception and classifies it. Critical errors trigger
an emergency stop (bounded best-effort cancel-all, ERROR, loop exit); anything
else backs off for error_backoff seconds and retries. One persistent loop
drives the ticks, so cancellation and placement for the symbol never overlap.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional

from quoter.config.strategy_config import StrategyConfig
from quoter.core.errors import ConfigError, ErrorKind, PriceUnavailableError, classify_error
from quoter.core.models import MarketSnapshot, Side
from quoter.infra.logging_cfg import log_event
from quoter.strategy.oracle_monitor import DivergenceResult, QuoteMode

log = logging.getLogger("quoter")


class BotState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


STATE_CODES = {
    BotState.STOPPED: 0,
    BotState.STARTING: 1,
    BotState.RUNNING: 2,
    BotState.PAUSED: 3,
    BotState.ERROR: 4,
}


class TickAction(Enum):
    """What the loop should do after a tick."""
    CONTINUE = auto()
    SKIP = auto()
    BACKOFF = auto()
    STOP = auto()


@dataclass
class TickResult:
    action: TickAction = TickAction.CONTINUE
    refreshed: bool = False
    reason: Optional[str] = None
    mode: Optional[QuoteMode] = None
    reference_price: Optional[float] = None
    placed: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: float = 0.0


@dataclass
class OrchestratorConfig:
    loop_interval: float = 1.0
    error_backoff: float = 5.0
    status_interval: float = 30.0
    shutdown_timeout: float = 5.0


@dataclass
class BotStats:
    ticks: int = 0
    skipped_ticks: int = 0
    refreshes: int = 0
    risk_denials: int = 0
    errors: int = 0
    orders_placed: int = 0
    orders_cancelled: int = 0
    # orders that left the book without a cancel from us (fills or expiries)
    total_trades: int = 0
    total_volume: float = 0.0
    average_spread: float = 0.0
    last_mid: Optional[float] = None
    last_mode: Optional[str] = None
    last_diff_pct: float = 0.0
    last_reference_price: Optional[float] = None
    started_at: Optional[float] = None
    last_update: Optional[float] = None

    @property
    def uptime(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.time() - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["uptime"] = round(self.uptime, 1)
        return data


class MarketMakerBot:
    def __init__(
        self,
        config: StrategyConfig,
        price_source: Any,
        order_manager: Any,
        risk_governor: Any,
        account: Any,
        oracle_monitor: Any,
        metrics: Any = None,
        orchestrator_config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        config.validate()
        self.config = config
        self.symbol = config.symbol
        self._prices = price_source
        self._orders = order_manager
        self._risk = risk_governor
        self._account = account
        self._oracle = oracle_monitor
        self._metrics = metrics
        self.settings = orchestrator_config or OrchestratorConfig()
        self._clock = clock
        self._log_event = log_event_callback or self._default_log

        self.state = BotState.STOPPED
        self.stats = BotStats()
        self._pending_config: Optional[StrategyConfig] = None
        self._last_refresh: Optional[float] = None
        self._last_status: Optional[float] = None
        self._stop_requested = False
        self._loop_active = False
        self._wake = asyncio.Event()
        self._loop_done = asyncio.Event()
        self.last_divergence: Optional[DivergenceResult] = None
        self.last_error: Optional[str] = None

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log_event(log, event, level, symbol=self.symbol, **kwargs)

    def _set_state(self, state: BotState) -> None:
        if state is self.state:
            return
        prev, self.state = self.state, state
        self._log_event("state_change", prev=prev.value, state=state.value)
        if self._metrics is not None:
            self._metrics.bot_state.labels(symbol=self.symbol).set(STATE_CODES[state])

    # ───────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ───────────────────────────────────────────────────────────────────────

    async def start(self) -> bool:
        """STOPPED -> STARTING -> RUNNING; False (and ERROR) if the market cannot be read."""
        if self.state in (BotState.RUNNING, BotState.PAUSED):
            return True
        if self.state is not BotState.STOPPED:
            # ERROR must go through stop() first
            self._log_event("start_ignored", logging.WARNING, state=self.state.value)
            return False

        self._set_state(BotState.STARTING)
        self._stop_requested = False
        self._wake.clear()
        try:
            cfg = self.config
            snapshot = await self._prices.get_market_snapshot(
                self.symbol,
                force_refresh=True,
                use_fallback=cfg.use_price_fallback,
                fallback_spread_pct=cfg.fallback_spread_pct,
            )
            if snapshot is None:
                raise PriceUnavailableError(f"no market data for {self.symbol}")
            await self._orders.adopt_open_orders(self.symbol)
        except Exception as e:
            self.last_error = str(e)
            self._log_event("start_failed", logging.ERROR, error=str(e))
            if self._stop_requested:
                self._set_state(BotState.STOPPED)
            else:
                self._set_state(BotState.ERROR)
            return False

        if self._stop_requested or self.state is not BotState.STARTING:
            # stop() arrived mid-start; adopted orders still need cancelling
            ok = await self._cancel_all_bounded("shutdown")
            self._set_state(BotState.STOPPED)
            self._log_event("start_aborted", logging.WARNING, cancel_ok=ok)
            return False

        self.stats.started_at = time.time()
        self._last_refresh = None
        self._log_event(
            "bot_started",
            mid=snapshot.mid_price,
            synthetic=snapshot.synthetic,
            config=cfg.dump(),
        )
        self._set_state(BotState.RUNNING)
        return True

    def pause(self) -> bool:
        if self.state is not BotState.RUNNING:
            self._log_event("pause_ignored", logging.WARNING, state=self.state.value)
            return False
        self._set_state(BotState.PAUSED)
        return True

    def resume(self) -> bool:
        if self.state is not BotState.PAUSED:
            self._log_event("resume_ignored", logging.WARNING, state=self.state.value)
            return False
        self._set_state(BotState.RUNNING)
        return True

    def update_config(self, **changes: Any) -> StrategyConfig:
        """
        Validate changes now, apply them before the next tick. Raises
        ConfigError for invalid values; the running config is untouched then.
        """
        if "symbol" in changes and changes["symbol"] != self.symbol:
            raise ConfigError("symbol cannot change on a running bot")
        base = self._pending_config or self.config
        new_config = base.with_updates(**changes)
        self._pending_config = new_config
        self._log_event("config_update_queued", changes={k: str(v) for k, v in changes.items()})
        return new_config

    def _apply_pending_config(self) -> None:
        if self._pending_config is None:
            return
        self.config, self._pending_config = self._pending_config, None
        # A new config takes effect on the next refresh, not after a full interval
        self._last_refresh = None
        self._log_event("config_applied", config=self.config.dump())

    async def run(self) -> None:
        """Persistent control loop; returns once the bot is stopped or in ERROR."""
        if self.state is not BotState.RUNNING and self.state is not BotState.PAUSED:
            if not await self.start():
                return

        self._loop_active = True
        self._loop_done.clear()
        try:
            while self.state in (BotState.RUNNING, BotState.PAUSED) and not self._stop_requested:
                if self.state is BotState.PAUSED:
                    await self._idle(self.settings.loop_interval)
                    continue

                result = await self.run_tick()
                if result.action is TickAction.STOP:
                    await self.emergency_stop(result.error or "critical error")
                    break
                if self._stop_requested:
                    break
                if result.action is TickAction.BACKOFF:
                    await self._idle(self.settings.error_backoff)
                else:
                    await self._idle(self.settings.loop_interval)
        finally:
            self._loop_active = False
            if self._stop_requested and self.state is not BotState.ERROR:
                await self._shutdown("stop_requested")
            self._loop_done.set()

    async def _idle(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def stop(self, reason: str = "shutdown") -> None:
        """
        Graceful stop. With the loop running, ask it to exit and wait for its
        shutdown; otherwise cancel everything directly.
        """
        self._log_event("stop_requested", reason=reason, state=self.state.value)
        # a start() still in flight checks this flag before going RUNNING
        self._stop_requested = True
        self._wake.set()
        if self._loop_active:
            await self._loop_done.wait()
            return
        await self._shutdown(reason)

    async def _shutdown(self, reason: str) -> None:
        ok = await self._cancel_all_bounded("shutdown")
        self._set_state(BotState.STOPPED)
        self._log_event("bot_stopped", reason=reason, cancel_ok=ok, stats=self.stats.to_dict())

    @property
    def price_source(self) -> Any:
        return self._prices

    async def close(self) -> None:
        """Release the price providers' HTTP clients. Call after stop()."""
        await self._prices.close()

    async def emergency_stop(self, reason: str) -> None:
        self.last_error = reason
        self._log_event("emergency_stop", logging.CRITICAL, reason=reason)
        await self._cancel_all_bounded("emergency")
        self._set_state(BotState.ERROR)
        self._wake.set()

    async def _cancel_all_bounded(self, context: str) -> bool:
        try:
            return await asyncio.wait_for(
                self._orders.cancel_all(self.config),
                timeout=self.settings.shutdown_timeout,
            )
        except asyncio.TimeoutError:
            self._log_event(
                f"{context}_cancel_timeout",
                logging.ERROR,
                timeout=self.settings.shutdown_timeout,
                still_tracked=len(self._orders.tracked()),
            )
        except Exception as e:
            self._log_event(f"{context}_cancel_error", logging.ERROR, error=str(e))
        return False

    # ───────────────────────────────────────────────────────────────────────
    # Tick
    # ───────────────────────────────────────────────────────────────────────

    def _refresh_due(self) -> bool:
        if self._last_refresh is None:
            return True
        return self._clock() - self._last_refresh >= self.config.refresh_interval

    async def run_tick(self) -> TickResult:
        t0 = time.monotonic()
        self._apply_pending_config()
        cfg = self.config
        self.stats.ticks += 1
        try:
            result = await self._tick(cfg)
        except Exception as e:
            kind = classify_error(e)
            self.stats.errors += 1
            self.last_error = str(e)
            self._log_event(
                "tick_error",
                logging.CRITICAL if kind is ErrorKind.CRITICAL else logging.WARNING,
                kind=kind.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            if self._metrics is not None:
                self._metrics.tick_errors.labels(symbol=self.symbol, kind=kind.value).inc()
            result = TickResult(
                action=TickAction.STOP if kind is ErrorKind.CRITICAL else TickAction.BACKOFF,
                error=str(e),
                error_kind=kind,
            )

        result.duration_ms = (time.monotonic() - t0) * 1000.0
        if result.action is TickAction.SKIP:
            self.stats.skipped_ticks += 1
        if self._metrics is not None:
            self._metrics.ticks.labels(symbol=self.symbol, outcome=result.action.name.lower()).inc()
        return result

    async def _tick(self, cfg: StrategyConfig) -> TickResult:
        snapshot = await self._prices.get_market_snapshot(
            self.symbol,
            use_fallback=cfg.use_price_fallback,
            fallback_spread_pct=cfg.fallback_spread_pct,
        )
        if snapshot is None:
            return TickResult(action=TickAction.SKIP, reason="no_market_data")

        position = await self._account.get_position(self.symbol)
        portfolio = await self._account.portfolio_summary([self.symbol])
        balance = await self._account.get_balance(cfg.risk.collateral_asset)
        if self._metrics is not None:
            self._metrics.position.labels(symbol=self.symbol).set(abs(position.size))

        decision = self._risk.check_pretrade(self.symbol, position, portfolio, balance, cfg)
        if not decision.allowed:
            self.stats.risk_denials += 1
            result = TickResult(action=TickAction.SKIP, reason=f"risk:{decision.reason.value}")
        elif self._refresh_due():
            result = await self._refresh(snapshot, cfg)
        else:
            result = TickResult(action=TickAction.CONTINUE)

        self._update_stats(snapshot)
        self._maybe_emit_status(snapshot)
        return result

    async def _refresh(self, snapshot: MarketSnapshot, cfg: StrategyConfig) -> TickResult:
        divergence = await self._oracle.evaluate(snapshot.mid_price, self.symbol, cfg)
        self.last_divergence = divergence
        reference = divergence.reference_price

        before_cancel = self._orders.counters.cancelled
        cancelled_ok = await self._orders.cancel_all_for_symbol(self.symbol, cfg)
        self.stats.orders_cancelled += self._orders.counters.cancelled - before_cancel
        if not cancelled_ok:
            self._log_event("cancel_incomplete", logging.WARNING, still_tracked=len(self._orders.tracked(self.symbol)))

        if cfg.cancel_settle_sec > 0:
            await asyncio.sleep(cfg.cancel_settle_sec)

        sync = await self._orders.sync_with_exchange(self.symbol)
        if sync.removed:
            self.stats.total_trades += len(sync.removed)
            self.stats.total_volume += sum(o.notional for o in sync.removed)

        placed = await self._orders.place_orders_around_price(self.symbol, reference, cfg)
        self._last_refresh = self._clock()
        self.stats.refreshes += 1
        self.stats.orders_placed += len(placed)
        self.stats.last_mode = divergence.mode.value
        self.stats.last_diff_pct = divergence.diff_pct
        self.stats.last_reference_price = reference
        if self._metrics is not None:
            self._metrics.reference_price.labels(symbol=self.symbol).set(reference)

        self._log_event(
            "refresh_complete",
            mode=divergence.mode.value,
            oracle_status=divergence.status.value,
            reference_price=reference,
            mid=snapshot.mid_price,
            cancelled_ok=cancelled_ok,
            reconciled_removed=len(sync.removed),
            placed=len(placed),
        )
        return TickResult(
            action=TickAction.CONTINUE,
            refreshed=True,
            mode=divergence.mode,
            reference_price=reference,
            placed=len(placed),
        )

    # ───────────────────────────────────────────────────────────────────────
    # Statistics and status
    # ───────────────────────────────────────────────────────────────────────

    def _update_stats(self, snapshot: MarketSnapshot) -> None:
        orders = self._orders.tracked(self.symbol)
        bids = [o.price for o in orders if o.side is Side.BUY]
        asks = [o.price for o in orders if o.side is Side.SELL]
        if bids and asks:
            self.stats.average_spread = sum(asks) / len(asks) - sum(bids) / len(bids)
        else:
            self.stats.average_spread = 0.0
        self.stats.last_mid = snapshot.mid_price
        self.stats.last_update = time.time()

    def _maybe_emit_status(self, snapshot: MarketSnapshot) -> None:
        now = self._clock()
        if self._last_status is not None and now - self._last_status < self.settings.status_interval:
            return
        self._last_status = now
        self._log_event("bot_status", **self.get_status(snapshot))

    def get_stats(self) -> BotStats:
        return dataclasses.replace(self.stats)

    def get_status(self, snapshot: Optional[MarketSnapshot] = None) -> Dict[str, Any]:
        order_stats = self._orders.get_order_stats(self.symbol)
        status: Dict[str, Any] = {
            "state": self.state.value,
            "open_orders": order_stats.total,
            "open_buys": order_stats.buy,
            "open_sells": order_stats.sell,
            "stats": self.stats.to_dict(),
            "position": self._account.position_summary(),
        }
        if snapshot is not None:
            status["mid"] = snapshot.mid_price
            status["spread"] = snapshot.spread
            status["synthetic_book"] = snapshot.synthetic
            status["volume_24h"] = snapshot.volume_24h
        if self.last_divergence is not None:
            status["mode"] = self.last_divergence.mode.value
            status["oracle_status"] = self.last_divergence.status.value
        if self.last_error:
            status["last_error"] = self.last_error
        return status
