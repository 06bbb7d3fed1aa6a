"""
Process entry point.

Everything is configured through the environment (see quoter.config.config):
the strategy comes from QUOTER_STRATEGY_FILE / QUOTER_STRATEGY (or a built-in
preset), and the signing side of the exchange from QUOTER_SUBMITTER_FACTORY,
a 'module:callable' that receives the Settings and returns an OrderSubmitter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from typing import Any, Optional

from quoter.config.config import Settings
from quoter.config.config_validator import validate_and_log
from quoter.config.strategy_config import StrategyConfig, load_strategy
from quoter.core.errors import ConfigError
from quoter.execution.order_manager import OrderLifecycleManager
from quoter.infra.exchange import AsyncSubmitter, IndexerExchange, load_submitter_factory
from quoter.infra.indexer import AsyncIndexer
from quoter.infra.logging_cfg import build_logger
from quoter.market_data.price_source import PriceSource
from quoter.market_data.providers import build_provider_chain
from quoter.monitoring.metrics_rich import QuoterMetrics, serve_metrics
from quoter.orchestrator.bot_orchestrator import MarketMakerBot, OrchestratorConfig
from quoter.risk.account import AccountTracker
from quoter.risk.risk import RiskGovernor
from quoter.strategy.oracle_monitor import OracleDivergenceMonitor

log = logging.getLogger("quoter")


def build_bot(
    settings: Settings,
    strategy: StrategyConfig,
    exchange: Any,
    metrics: Optional[QuoterMetrics] = None,
) -> MarketMakerBot:
    """Wire one bot for strategy.symbol on top of an ExchangeClient."""
    providers = build_provider_chain(
        settings.price_providers,
        exchange=exchange,
        timeout=settings.http_timeout,
        binance_url=settings.binance_url,
        coingecko_url=settings.coingecko_url,
        coingecko_api_key=settings.coingecko_api_key,
    )
    price_source = PriceSource(providers, exchange=exchange, metrics=metrics)
    return MarketMakerBot(
        config=strategy,
        price_source=price_source,
        order_manager=OrderLifecycleManager(exchange, metrics=metrics),
        risk_governor=RiskGovernor(metrics=metrics),
        account=AccountTracker(exchange, collateral_asset=strategy.risk.collateral_asset),
        oracle_monitor=OracleDivergenceMonitor(price_source, metrics=metrics),
        metrics=metrics,
        orchestrator_config=OrchestratorConfig(
            loop_interval=settings.loop_interval,
            error_backoff=settings.error_backoff,
            status_interval=settings.status_interval,
            shutdown_timeout=settings.shutdown_timeout,
        ),
    )


async def main() -> None:
    cfg = Settings.load()
    build_logger("quoter", level=cfg.log_level, file_path=cfg.log_file)

    try:
        strategy = load_strategy(cfg.strategy_file, cfg.strategy_name, symbol=cfg.symbol)
    except ConfigError as e:
        log.error(f"Strategy load failed: {e}")
        sys.exit(1)

    if not validate_and_log(strategy, cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)
    if not cfg.submitter_factory:
        log.error("QUOTER_SUBMITTER_FACTORY is not set; cannot sign orders")
        sys.exit(1)

    submitter = AsyncSubmitter(
        load_submitter_factory(cfg.submitter_factory)(cfg),
        timeout=cfg.exchange_timeout,
        retries=cfg.exchange_retries,
    )
    indexer = AsyncIndexer(cfg.indexer_url, cfg.address, subaccount=cfg.subaccount, timeout=cfg.http_timeout)
    exchange = IndexerExchange(indexer, submitter)

    metrics = QuoterMetrics()
    serve_metrics(metrics, cfg.metrics_port)

    bot = build_bot(cfg, strategy, exchange, metrics)
    log.info(json.dumps({"event": "startup", "symbol": strategy.symbol, "strategy": cfg.strategy_name}))

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(bot.run())
    stop_task: Optional[asyncio.Task] = None

    def stop_all() -> None:
        nonlocal stop_task
        # Let the loop finish its tick and run the bounded cancel-all
        if stop_task is None and not run_task.done():
            stop_task = asyncio.create_task(bot.stop("signal"))

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        await run_task
        if stop_task is not None:
            await stop_task
    except (asyncio.CancelledError, KeyboardInterrupt):
        log.info("Shutdown signal received, cleaning up...")
        await bot.stop("interrupt")
    finally:
        log.info("Closing connections...")
        await bot.close()
        await exchange.close()
        log.info(json.dumps({"event": "shutdown_complete", "stats": bot.get_stats().to_dict()}))


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nQuoter stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    cli()
