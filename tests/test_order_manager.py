"""
Tests for OrderLifecycleManager: placement, expiry, cancellation and reconciliation.
"""

import random

import pytest
from unittest.mock import AsyncMock
from prometheus_client import CollectorRegistry

from quoter.core.client_ids import ClientIdAllocator
from quoter.core.errors import CriticalExchangeError, ExchangeRequestError
from quoter.core.models import OrderClass, OrderView, Side, TrackedOrder
from quoter.execution.order_manager import FALLBACK_CANCEL_EXPIRY_SEC, OrderLifecycleManager
from quoter.monitoring.metrics_rich import QuoterMetrics

NOW = 1_700_000_000.0


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def manager(exchange, sleep):
    return OrderLifecycleManager(
        exchange,
        id_allocator=ClientIdAllocator(salt=1000),
        rng=random.Random(7),
        clock=lambda: NOW,
        sleep=sleep,
    )


class TestPlacement:

    @pytest.mark.asyncio
    async def test_sequential_places_every_level(self, manager, exchange, long_config):
        placed = await manager.place_orders_around_price("BTC-USD", 100.0, long_config)

        assert len(placed) == 6
        assert len(manager.tracked("BTC-USD")) == 6
        assert exchange.max_in_flight == 1
        assert manager.last_placement.accepted == 6
        assert manager.last_placement.batches == 1

    @pytest.mark.asyncio
    async def test_one_rejection_tracks_the_rest(self, manager, exchange, long_config):
        exchange.reject_prices[100.07] = "post-only would cross"

        placed = await manager.place_orders_around_price("BTC-USD", 100.0, long_config)

        assert len(placed) == 5
        assert 100.07 not in [o.price for o in manager.tracked()]
        report = manager.last_placement
        assert report.attempted == 6 and report.rejected == 1
        assert report.errors == ["post-only would cross"]

    @pytest.mark.asyncio
    async def test_exception_in_batch_does_not_cancel_siblings(self, manager, exchange, long_config):
        cfg = long_config.with_updates(batch_size=3)
        exchange.raise_prices[99.93] = ExchangeRequestError("timeout")

        placed = await manager.place_orders_around_price("BTC-USD", 100.0, cfg)

        assert len(placed) == 5
        assert manager.last_placement.rejected == 1

    @pytest.mark.asyncio
    async def test_batches_run_concurrently_with_delay_between(self, manager, exchange, sleep, long_config):
        cfg = long_config.with_updates(batch_size=3, batch_delay_ms=250)

        await manager.place_orders_around_price("BTC-USD", 100.0, cfg)

        assert exchange.max_in_flight == 3
        assert manager.last_placement.batches == 2
        # no delay after the last batch
        sleep.assert_awaited_once_with(0.25)

    @pytest.mark.asyncio
    async def test_empty_ladder_places_nothing(self, manager, exchange, long_config):
        assert await manager.place_orders_around_price("BTC-USD", 0.0, long_config) == []
        assert exchange.place_calls == []

    @pytest.mark.asyncio
    async def test_client_ids_are_unique(self, manager, long_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)
        await manager.place_orders_around_price("BTC-USD", 101.0, long_config)

        ids = [o.client_id for o in manager.tracked()]
        assert len(ids) == 12
        assert len(set(ids)) == 12

    @pytest.mark.asyncio
    async def test_critical_rejection_raises_after_completion(self, manager, exchange, long_config):
        exchange.reject_prices[99.94] = "Insufficient funds for order"

        with pytest.raises(CriticalExchangeError):
            await manager.place_orders_around_price("BTC-USD", 100.0, long_config)

        assert len(exchange.place_calls) == 6
        assert len(manager.tracked()) == 5

    @pytest.mark.asyncio
    async def test_metrics_follow_placement(self, exchange, long_config):
        metrics = QuoterMetrics(registry=CollectorRegistry())
        manager = OrderLifecycleManager(exchange, metrics=metrics)
        exchange.reject_prices[100.06] = "rejected"

        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)

        sample = metrics.registry.get_sample_value
        assert sample("quoter_open_orders", {"symbol": "BTC-USD"}) == 5.0
        assert sample("quoter_orders_submitted_total", {"symbol": "BTC-USD", "side": "BUY"}) == 3.0
        assert sample("quoter_orders_rejected_total", {"symbol": "BTC-USD", "reason": "rejected"}) == 1.0


class TestExpiry:

    @pytest.mark.asyncio
    async def test_short_lived_expiry_within_block_window(self, manager, exchange, short_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config)

        for order in manager.tracked():
            assert order.order_class is OrderClass.SHORT_LIVED
            assert 1010 <= order.expiry <= 1020

    @pytest.mark.asyncio
    async def test_height_fetched_once_per_batch(self, manager, exchange, short_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config)
        assert exchange.height_calls == 1

        exchange.height_calls = 0
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config.with_updates(batch_size=2))
        assert exchange.height_calls == 3

    @pytest.mark.asyncio
    async def test_height_failure_rejects_batch(self, manager, exchange, short_config):
        exchange.height_error = ExchangeRequestError("no height")

        placed = await manager.place_orders_around_price("BTC-USD", 100.0, short_config)

        assert placed == []
        assert exchange.place_calls == []
        assert manager.last_placement.rejected == 6

    @pytest.mark.asyncio
    async def test_long_lived_expiry_within_seconds_window(self, manager, long_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)

        for order in manager.tracked():
            assert order.order_class is OrderClass.LONG_LIVED
            assert NOW + 150 <= order.expiry <= NOW + 300


class TestCancellation:

    @pytest.mark.asyncio
    async def test_short_lived_cancelled_in_one_bulk_call(self, manager, exchange, short_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config)
        ids = sorted(o.client_id for o in manager.tracked())

        ok = await manager.cancel_all_for_symbol("BTC-USD", short_config)

        assert ok
        assert len(exchange.batch_cancel_calls) == 1
        symbol, cancelled, expiry = exchange.batch_cancel_calls[0]
        assert sorted(cancelled) == ids
        assert expiry == exchange.height + short_config.cancel_good_til_blocks
        assert exchange.cancel_calls == []
        assert manager.tracked() == []
        assert manager.counters.cancelled == 6

    @pytest.mark.asyncio
    async def test_failed_bulk_cancel_keeps_tracking(self, manager, exchange, short_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config)
        exchange.batch_cancel_error = "tx failed"

        assert not await manager.cancel_all_for_symbol("BTC-USD", short_config)
        assert len(manager.tracked()) == 6
        assert manager.counters.cancel_failures == 6

    @pytest.mark.asyncio
    async def test_long_lived_cancelled_individually_with_exchange_expiry(self, manager, exchange, long_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)
        first = manager.tracked()[0]
        exchange.open[first.client_id] = OrderView(
            client_id=first.client_id, symbol="BTC-USD", side=first.side, good_til_block_time=NOW + 42
        )

        assert await manager.cancel_all_for_symbol("BTC-USD", long_config)

        assert len(exchange.cancel_calls) == 6
        by_id = {c[0]: c for c in exchange.cancel_calls}
        assert by_id[first.client_id] == (first.client_id, OrderClass.LONG_LIVED, "BTC-USD", NOW + 42)
        assert exchange.batch_cancel_calls == []

    @pytest.mark.asyncio
    async def test_long_lived_expiry_falls_back_to_local_then_default(self, manager, exchange, long_config):
        local = TrackedOrder("BTC-USD", 11, Side.BUY, 99.0, 0.1, expiry=NOW + 77, order_class=OrderClass.LONG_LIVED)
        unknown = TrackedOrder("BTC-USD", 12, Side.SELL, 101.0, 0.1, expiry=0.0, order_class=OrderClass.LONG_LIVED)
        manager._register(local)
        manager._register(unknown)

        await manager.cancel_all_for_symbol("BTC-USD", long_config)

        expiries = {c[0]: c[3] for c in exchange.cancel_calls}
        assert expiries[11] == NOW + 77
        assert expiries[12] == NOW + FALLBACK_CANCEL_EXPIRY_SEC

    @pytest.mark.asyncio
    async def test_partial_cancel_failure(self, manager, exchange, long_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)
        stuck = manager.tracked()[2].client_id
        exchange.cancel_fail_ids.add(stuck)

        ok = await manager.cancel_all_for_symbol("BTC-USD", long_config)

        assert not ok
        assert [o.client_id for o in manager.tracked()] == [stuck]
        assert manager.counters.cancelled == 5
        assert manager.counters.cancel_failures == 1

    @pytest.mark.asyncio
    async def test_mixed_classes_cancel_by_their_own_class(self, manager, exchange, long_config, short_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config)
        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)

        # the config passed at cancel time does not decide the path
        assert await manager.cancel_all_for_symbol("BTC-USD", long_config)

        assert len(exchange.batch_cancel_calls) == 1
        assert len(exchange.cancel_calls) == 6
        assert manager.tracked() == []

    @pytest.mark.asyncio
    async def test_nothing_tracked_is_success(self, manager, exchange):
        assert await manager.cancel_all_for_symbol("BTC-USD")
        assert await manager.cancel_all()
        assert exchange.cancel_calls == []

    @pytest.mark.asyncio
    async def test_critical_cancel_error_raises(self, manager, exchange, short_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, short_config)
        exchange.batch_cancel_error = "account suspended"

        with pytest.raises(CriticalExchangeError):
            await manager.cancel_all(short_config)


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_missing_orders_are_dropped(self, manager, exchange, long_config):
        cfg = long_config.with_updates(price_steps=2)
        await manager.place_orders_around_price("BTC-USD", 100.0, cfg)
        tracked = manager.tracked()
        assert len(tracked) == 4
        # two of them filled
        filled = tracked[0]
        exchange.open.pop(filled.client_id)
        exchange.open.pop(tracked[1].client_id)

        result = await manager.sync_with_exchange("BTC-USD")

        assert result.success
        assert {o.client_id for o in result.removed} == {filled.client_id, tracked[1].client_id}
        assert result.remaining == 2
        assert manager.counters.reconciled_removed == 2

    @pytest.mark.asyncio
    async def test_three_tracked_one_gone(self, manager, exchange):
        for cid in (1, 2, 3):
            order = TrackedOrder("BTC-USD", cid, Side.BUY, 99.0, 1.0, expiry=NOW + 100, order_class=OrderClass.LONG_LIVED)
            manager._register(order)
            exchange.open[cid] = OrderView(client_id=cid, symbol="BTC-USD", side=Side.BUY)
        exchange.open.pop(2)

        result = await manager.sync_with_exchange("BTC-USD")

        assert [o.client_id for o in result.removed] == [2]
        assert sorted(o.client_id for o in manager.tracked()) == [1, 3]
        assert manager.counters.reconciled_notional == pytest.approx(99.0)

    @pytest.mark.asyncio
    async def test_failed_fetch_drops_nothing(self, manager, exchange, long_config):
        await manager.place_orders_around_price("BTC-USD", 100.0, long_config)
        exchange.open.clear()
        exchange.open_orders_error = ExchangeRequestError("indexer down")

        result = await manager.sync_with_exchange("BTC-USD")

        assert not result.success
        assert result.removed == []
        assert len(manager.tracked()) == 6


class TestAdoption:

    @pytest.mark.asyncio
    async def test_adopts_leftover_orders(self, manager, exchange):
        exchange.open[501] = OrderView(501, "BTC-USD", Side.BUY, 99.0, 0.1, good_til_block=1015)
        exchange.open[502] = OrderView(502, "BTC-USD", Side.SELL, 101.0, 0.1, good_til_block_time=NOW + 200)
        exchange.open[503] = OrderView(503, "BTC-USD", None, 101.0, 0.1)

        adopted = await manager.adopt_open_orders("BTC-USD")

        classes = {o.client_id: o.order_class for o in adopted}
        assert classes == {501: OrderClass.SHORT_LIVED, 502: OrderClass.LONG_LIVED}
        assert manager.is_tracked(501) and manager.is_tracked(502)

    @pytest.mark.asyncio
    async def test_adopt_failure_is_empty(self, manager, exchange):
        exchange.open_orders_error = ExchangeRequestError("down")
        assert await manager.adopt_open_orders("BTC-USD") == []


def test_order_stats(manager):
    manager._register(TrackedOrder("BTC-USD", 1, Side.BUY, 99.0, 1.0, 0.0, OrderClass.LONG_LIVED))
    manager._register(TrackedOrder("BTC-USD", 2, Side.SELL, 101.0, 1.0, 0.0, OrderClass.LONG_LIVED))
    manager._register(TrackedOrder("ETH-USD", 3, Side.SELL, 11.0, 1.0, 0.0, OrderClass.LONG_LIVED))

    stats = manager.get_order_stats()
    assert (stats.total, stats.buy, stats.sell) == (3, 1, 2)
    assert stats.by_symbol == {"BTC-USD": 2, "ETH-USD": 1}
    assert manager.get_order_stats("ETH-USD").total == 1
