"""
Environment-driven process settings.

Strategy parameters live in StrategyConfig (YAML or presets); this module only
covers what differs per deployment: endpoints, credentials, loop timing,
logging and metrics.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str, default: List[str]) -> List[str]:
    raw = os.getenv(key)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    indexer_url: str
    address: str | None
    subaccount: int
    http_timeout: float
    strategy_file: str | None
    strategy_name: str
    symbol: str | None
    price_providers: List[str]
    binance_url: str
    coingecko_url: str
    coingecko_api_key: str | None
    submitter_factory: str | None
    loop_interval: float
    error_backoff: float
    status_interval: float
    shutdown_timeout: float
    exchange_timeout: float
    exchange_retries: int
    log_level: str
    log_file: str | None
    metrics_port: int

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (secrets masked)."""
        data = self.__dict__.copy()
        if data.get("coingecko_api_key"):
            data["coingecko_api_key"] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        return cls(
            indexer_url=os.getenv("QUOTER_INDEXER_URL", "https://indexer.dydx.trade/v4"),
            address=os.getenv("QUOTER_ADDRESS"),
            subaccount=_int_env("QUOTER_SUBACCOUNT", 0),
            http_timeout=_float_env("QUOTER_HTTP_TIMEOUT", 5.0),
            strategy_file=os.getenv("QUOTER_STRATEGY_FILE") or None,
            strategy_name=os.getenv("QUOTER_STRATEGY", "long_term"),
            symbol=os.getenv("QUOTER_SYMBOL") or None,
            price_providers=_list_env("QUOTER_PRICE_PROVIDERS", ["orderbook", "binance", "coingecko"]),
            binance_url=os.getenv("QUOTER_BINANCE_URL", "https://fapi.binance.com"),
            coingecko_url=os.getenv("QUOTER_COINGECKO_URL", "https://api.coingecko.com/api/v3"),
            coingecko_api_key=os.getenv("QUOTER_COINGECKO_API_KEY") or None,
            submitter_factory=os.getenv("QUOTER_SUBMITTER_FACTORY") or None,
            loop_interval=_float_env("QUOTER_LOOP_INTERVAL_SEC", 1.0),
            error_backoff=_float_env("QUOTER_ERROR_BACKOFF_SEC", 5.0),
            status_interval=_float_env("QUOTER_STATUS_INTERVAL_SEC", 30.0),
            shutdown_timeout=_float_env("QUOTER_SHUTDOWN_TIMEOUT_SEC", 5.0),
            exchange_timeout=_float_env("QUOTER_EXCHANGE_TIMEOUT_SEC", 10.0),
            exchange_retries=_int_env("QUOTER_EXCHANGE_RETRIES", 2),
            log_level=os.getenv("QUOTER_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("QUOTER_LOG_FILE", "quoter.log") or None,
            metrics_port=_int_env("QUOTER_METRICS_PORT", 0),
        )
