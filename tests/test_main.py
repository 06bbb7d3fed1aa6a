"""Tests for process wiring."""

import pytest

from quoter.config.config import Settings
from quoter.config.strategy_config import PRESETS
from quoter.main import build_bot
from quoter.monitoring.metrics_rich import QuoterMetrics
from quoter.orchestrator.bot_orchestrator import BotState


@pytest.mark.asyncio
async def test_build_bot_wires_settings(exchange, monkeypatch):
    monkeypatch.setenv("QUOTER_PRICE_PROVIDERS", "orderbook,binance")
    monkeypatch.setenv("QUOTER_SHUTDOWN_TIMEOUT_SEC", "2.5")
    settings = Settings.load()

    bot = build_bot(settings, PRESETS["short_term"], exchange, QuoterMetrics())
    try:
        assert bot.symbol == "ETH-USD"
        assert bot.state is BotState.STOPPED
        assert bot.price_source.provider_names == ["orderbook", "binance"]
        assert bot.settings.shutdown_timeout == 2.5
    finally:
        await bot.close()
