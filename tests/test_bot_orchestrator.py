"""
Tests for MarketMakerBot - the per-symbol control loop.

Tests cover:
- State transitions (start, pause, resume, stop)
- Refresh ordering: oracle -> cancel -> reconcile -> place
- Risk gate skipping a refresh
- Critical vs transient error handling
- Live config updates
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from quoter.core.errors import ConfigError, ErrorKind, ExchangeRequestError
from quoter.core.models import MarketSnapshot, OrderBook, PortfolioSummary, Position, Side
from quoter.execution.order_manager import LifecycleCounters, OrderLifecycleManager, OrderStats, SyncResult
from quoter.market_data.price_cache import PriceCache
from quoter.market_data.price_source import PriceSource
from quoter.market_data.providers import OrderBookProvider
from quoter.orchestrator.bot_orchestrator import BotState, MarketMakerBot, OrchestratorConfig, TickAction
from quoter.risk.account import AccountTracker
from quoter.risk.risk import RiskGovernor
from quoter.strategy.oracle_monitor import DivergenceResult, DivergenceStatus, OracleDivergenceMonitor, QuoteMode


class Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def build_bot(exchange, config, clock=None, **orchestrator):
    # A cache clock that never advances keeps snapshots deterministic within a test
    source = PriceSource([OrderBookProvider(exchange)], exchange=exchange, cache=PriceCache(clock_ms=lambda: 0.0))
    settings = OrchestratorConfig(
        loop_interval=orchestrator.get("loop_interval", 0.01),
        error_backoff=orchestrator.get("error_backoff", 0.01),
        status_interval=30.0,
        shutdown_timeout=orchestrator.get("shutdown_timeout", 1.0),
    )
    return MarketMakerBot(
        config=config,
        price_source=source,
        order_manager=OrderLifecycleManager(exchange),
        risk_governor=RiskGovernor(),
        account=AccountTracker(exchange, ttl_sec=0.0),
        oracle_monitor=OracleDivergenceMonitor(source),
        orchestrator_config=settings,
        clock=clock or Clock(),
    )


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_moves_to_running(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        assert bot.state is BotState.STOPPED

        assert await bot.start()

        assert bot.state is BotState.RUNNING
        assert bot.stats.started_at is not None

    @pytest.mark.asyncio
    async def test_start_without_market_data_is_error(self, exchange, long_config):
        exchange.book = OrderBook(symbol="BTC-USD")
        bot = build_bot(exchange, long_config)

        assert not await bot.start()

        assert bot.state is BotState.ERROR
        # ERROR only leaves through stop()
        assert not await bot.start()
        await bot.stop()
        assert bot.state is BotState.STOPPED

    @pytest.mark.asyncio
    async def test_start_adopts_leftover_orders(self, exchange, long_config):
        from quoter.core.models import OrderView

        exchange.open[99] = OrderView(99, "BTC-USD", Side.BUY, 98.0, 0.1, good_til_block_time=2e9)
        bot = build_bot(exchange, long_config)

        await bot.start()
        await bot.run_tick()

        cancelled = [c[0] for c in exchange.cancel_calls]
        assert 99 in cancelled

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        assert not bot.pause()
        await bot.start()

        assert bot.pause()
        assert bot.state is BotState.PAUSED
        assert not bot.pause()
        assert bot.resume()
        assert bot.state is BotState.RUNNING
        assert not bot.resume()

    @pytest.mark.asyncio
    async def test_stop_cancels_everything(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        await bot.start()
        await bot.run_tick()
        assert len(bot._orders.tracked()) == 6

        await bot.stop()

        assert bot.state is BotState.STOPPED
        assert bot._orders.tracked() == []
        assert exchange.open == {}

    @pytest.mark.asyncio
    async def test_stop_while_loop_running(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        task = asyncio.create_task(bot.run())
        for _ in range(100):
            if bot.stats.refreshes:
                break
            await asyncio.sleep(0.01)

        await bot.stop("test")
        await asyncio.wait_for(task, timeout=2.0)

        assert bot.state is BotState.STOPPED
        assert bot._orders.tracked() == []
        assert bot.stats.refreshes >= 1

    @pytest.mark.asyncio
    async def test_stop_during_start_wins(self, exchange, long_config):
        from quoter.core.models import OrderView

        exchange.open[99] = OrderView(99, "BTC-USD", Side.BUY, 98.0, 0.1, good_til_block_time=2e9)
        gate = asyncio.Event()
        read_book = exchange.get_order_book

        async def held_book(symbol):
            await gate.wait()
            return await read_book(symbol)

        exchange.get_order_book = held_book
        bot = build_bot(exchange, long_config)
        task = asyncio.create_task(bot.run())
        for _ in range(100):
            if bot.state is BotState.STARTING:
                break
            await asyncio.sleep(0)
        assert bot.state is BotState.STARTING

        await bot.stop("signal")
        gate.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert bot.state is BotState.STOPPED
        assert exchange.place_calls == []
        # the leftover order adopted after the stop is still cancelled
        assert 99 in [c[0] for c in exchange.cancel_calls]
        assert bot._orders.tracked() == []


class TestBoundedShutdown:

    @staticmethod
    def hang_cancels(exchange):
        async def hang(*args):
            await asyncio.Event().wait()

        exchange.cancel_order = hang
        exchange.batch_cancel = hang

    @pytest.mark.asyncio
    async def test_stop_gives_up_after_shutdown_timeout(self, exchange, long_config):
        bot = build_bot(exchange, long_config, shutdown_timeout=0.2)
        await bot.start()
        await bot.run_tick()
        self.hang_cancels(exchange)

        t0 = time.monotonic()
        await bot.stop()

        assert time.monotonic() - t0 < 1.5
        assert bot.state is BotState.STOPPED
        assert len(bot._orders.tracked()) == 6

    @pytest.mark.asyncio
    async def test_emergency_stop_gives_up_after_shutdown_timeout(self, exchange, long_config):
        bot = build_bot(exchange, long_config, shutdown_timeout=0.2)
        await bot.start()
        await bot.run_tick()
        self.hang_cancels(exchange)

        t0 = time.monotonic()
        await bot.emergency_stop("account suspended")

        assert time.monotonic() - t0 < 1.5
        assert bot.state is BotState.ERROR
        assert bot.last_error == "account suspended"


class TestTick:

    @pytest.mark.asyncio
    async def test_first_tick_refreshes_and_places(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        await bot.start()

        result = await bot.run_tick()

        assert result.action is TickAction.CONTINUE
        assert result.refreshed
        assert result.placed == 6
        assert result.mode is QuoteMode.NORMAL
        assert result.reference_price == pytest.approx(100.0)
        assert bot.stats.orders_placed == 6
        assert bot.stats.average_spread == pytest.approx(0.14)

    @pytest.mark.asyncio
    async def test_refresh_waits_for_interval(self, exchange, long_config):
        clock = Clock()
        bot = build_bot(exchange, long_config, clock=clock)
        await bot.start()
        await bot.run_tick()

        clock.now = long_config.refresh_interval - 1
        assert not (await bot.run_tick()).refreshed
        clock.now = long_config.refresh_interval
        second = await bot.run_tick()

        assert second.refreshed
        # the first ladder was cancelled before the second was placed
        assert len(exchange.cancel_calls) == 6
        assert len(bot._orders.tracked()) == 6

    @pytest.mark.asyncio
    async def test_risk_denial_skips_refresh(self, exchange, long_config):
        exchange.position = Position("BTC-USD", Side.BUY, 2.0)
        bot = build_bot(exchange, long_config)
        await bot.start()

        result = await bot.run_tick()

        assert result.action is TickAction.SKIP
        assert result.reason == "risk:position-limit"
        assert exchange.place_calls == []
        assert bot.stats.risk_denials == 1
        assert bot.state is BotState.RUNNING

    @pytest.mark.asyncio
    async def test_reconciled_orders_count_as_trades(self, exchange, long_config):
        clock = Clock()
        bot = build_bot(exchange, long_config, clock=clock)
        await bot.start()
        await bot.run_tick()

        # one resting order fills, and its cancel then fails because it is gone
        filled = bot._orders.tracked()[0]
        exchange.open.pop(filled.client_id)
        exchange.cancel_fail_ids.add(filled.client_id)
        clock.now = long_config.refresh_interval
        await bot.run_tick()

        assert bot.stats.total_trades == 1
        assert bot.stats.total_volume == pytest.approx(filled.notional)

    @pytest.mark.asyncio
    async def test_critical_error_requests_stop(self, exchange, long_config):
        exchange.reject_prices[99.94] = "insufficient funds"
        bot = build_bot(exchange, long_config)
        await bot.start()

        result = await bot.run_tick()

        assert result.action is TickAction.STOP
        assert result.error_kind is ErrorKind.CRITICAL

    @pytest.mark.asyncio
    async def test_transient_error_backs_off(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        await bot.start()
        exchange.position_error = ExchangeRequestError("indexer timeout")

        result = await bot.run_tick()

        assert result.action is TickAction.BACKOFF
        assert result.error_kind is ErrorKind.TRANSIENT
        assert bot.stats.errors == 1

    @pytest.mark.asyncio
    async def test_missing_snapshot_skips_tick(self, exchange, long_config):
        bot = build_bot(exchange, long_config.with_updates(use_price_fallback=False))
        await bot.start()
        bot.price_source.clear_cache()
        exchange.book = OrderBook(symbol="BTC-USD")

        result = await bot.run_tick()

        assert result.action is TickAction.SKIP
        assert result.reason == "no_market_data"


class TestCriticalRun:

    @pytest.mark.asyncio
    async def test_run_enters_error_and_cancels(self, exchange, long_config):
        exchange.reject_prices[99.94] = "Account suspended"
        bot = build_bot(exchange, long_config)

        await asyncio.wait_for(bot.run(), timeout=2.0)

        assert bot.state is BotState.ERROR
        assert "account suspended" in bot.last_error.lower()
        assert bot._orders.tracked() == []
        assert exchange.open == {}


class TestRefreshOrdering:

    @pytest.mark.asyncio
    async def test_oracle_cancel_sync_place_order(self, long_config):
        calls = []
        snapshot = MarketSnapshot("BTC-USD", 100.0, 99.99, 100.01, 1.0, 1.0, 0.0, 0.0)

        prices = MagicMock()
        prices.get_market_snapshot = AsyncMock(return_value=snapshot)

        orders = MagicMock()
        orders.counters = LifecycleCounters()
        orders.tracked = MagicMock(return_value=[])
        orders.get_order_stats = MagicMock(return_value=OrderStats())
        orders.adopt_open_orders = AsyncMock(return_value=[])

        async def cancel(symbol, cfg):
            calls.append("cancel")
            return True

        async def sync(symbol):
            calls.append("sync")
            return SyncResult(success=True)

        async def place(symbol, price, cfg):
            calls.append(("place", price))
            return []

        orders.cancel_all_for_symbol = AsyncMock(side_effect=cancel)
        orders.sync_with_exchange = AsyncMock(side_effect=sync)
        orders.place_orders_around_price = AsyncMock(side_effect=place)

        async def evaluate(local, symbol, cfg):
            calls.append("oracle")
            return DivergenceResult(QuoteMode.ORACLE_OVERRIDE, 101.0, 1.0, DivergenceStatus.OVERRIDE, 101.0, "binance")

        oracle = MagicMock()
        oracle.evaluate = AsyncMock(side_effect=evaluate)

        account = MagicMock()
        account.get_position = AsyncMock(return_value=Position.flat("BTC-USD"))
        account.portfolio_summary = AsyncMock(return_value=PortfolioSummary(1000.0, 1000.0, 0.0, 0.0))
        account.get_balance = AsyncMock(return_value=1000.0)
        account.position_summary = MagicMock(return_value={})

        bot = MarketMakerBot(long_config, prices, orders, RiskGovernor(), account, oracle, clock=Clock())
        await bot.start()
        result = await bot.run_tick()

        assert calls == ["oracle", "cancel", "sync", ("place", 101.0)]
        assert result.mode is QuoteMode.ORACLE_OVERRIDE
        assert bot.stats.last_reference_price == 101.0


class TestConfigUpdates:

    @pytest.mark.asyncio
    async def test_update_applied_on_next_tick(self, exchange, long_config):
        clock = Clock()
        bot = build_bot(exchange, long_config, clock=clock)
        await bot.start()
        await bot.run_tick()

        bot.update_config(price_steps=2)
        assert bot.config.price_steps == 3

        result = await bot.run_tick()

        assert bot.config.price_steps == 2
        # a new config forces a refresh without waiting out the interval
        assert result.refreshed
        assert result.placed == 4

    @pytest.mark.asyncio
    async def test_invalid_update_rejected(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        with pytest.raises(ConfigError):
            bot.update_config(spread=-1)
        with pytest.raises(ConfigError):
            bot.update_config(symbol="ETH-USD")
        assert bot._pending_config is None

    @pytest.mark.asyncio
    async def test_status_report(self, exchange, long_config):
        bot = build_bot(exchange, long_config)
        await bot.start()
        await bot.run_tick()

        status = bot.get_status()

        assert status["state"] == "RUNNING"
        assert status["open_orders"] == 6
        assert status["open_buys"] == 3
        assert status["mode"] == "NORMAL"
        assert status["oracle_status"] == "DISABLED"
        assert bot.get_stats().to_dict()["refreshes"] == 1
