"""
Oracle divergence monitor.

Compares the local reference price with an external oracle price and picks
the price to quote around:

    diff_pct = |local - oracle| / oracle * 100
    diff_pct >= threshold  -> ORACLE_OVERRIDE, quote around the oracle price
    otherwise              -> NORMAL, quote around the local price

When the oracle cannot be used (disabled, unavailable, stale, non-positive or
too old) the result is NORMAL with diff_pct 0, and `status` says why, so an
unusable oracle is never confused with a healthy one that agreed.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from quoter.config.strategy_config import StrategyConfig
from quoter.core.models import OracleReading
from quoter.infra.logging_cfg import log_event

log = logging.getLogger("quoter")


class QuoteMode(str, Enum):
    NORMAL = "NORMAL"
    ORACLE_OVERRIDE = "ORACLE_OVERRIDE"


class DivergenceStatus(str, Enum):
    DISABLED = "DISABLED"
    ORACLE_UNAVAILABLE = "ORACLE_UNAVAILABLE"
    WITHIN_THRESHOLD = "WITHIN_THRESHOLD"
    OVERRIDE = "OVERRIDE"


@dataclass(frozen=True)
class DivergenceResult:
    mode: QuoteMode
    reference_price: float
    diff_pct: float
    status: DivergenceStatus
    oracle_price: Optional[float] = None
    provider: Optional[str] = None

    @property
    def oracle_available(self) -> bool:
        return self.status in (DivergenceStatus.WITHIN_THRESHOLD, DivergenceStatus.OVERRIDE)


def _usable(reading: Optional[OracleReading], now: float, max_age_sec: float) -> bool:
    if reading is None or reading.stale:
        return False
    if not math.isfinite(reading.price) or reading.price <= 0:
        return False
    return reading.age(now) <= max_age_sec


def compare(
    local_price: float,
    reading: Optional[OracleReading],
    threshold_pct: float,
    now: Optional[float] = None,
    max_age_sec: float = 60.0,
) -> DivergenceResult:
    """Pure divergence decision over an already fetched reading."""
    now = time.time() if now is None else now
    if not _usable(reading, now, max_age_sec):
        return DivergenceResult(
            mode=QuoteMode.NORMAL,
            reference_price=local_price,
            diff_pct=0.0,
            status=DivergenceStatus.ORACLE_UNAVAILABLE,
            provider=reading.provider if reading is not None else None,
        )

    oracle_price = reading.price
    diff_pct = abs(local_price - oracle_price) / oracle_price * 100.0
    if diff_pct >= threshold_pct:
        return DivergenceResult(
            mode=QuoteMode.ORACLE_OVERRIDE,
            reference_price=oracle_price,
            diff_pct=diff_pct,
            status=DivergenceStatus.OVERRIDE,
            oracle_price=oracle_price,
            provider=reading.provider,
        )
    return DivergenceResult(
        mode=QuoteMode.NORMAL,
        reference_price=local_price,
        diff_pct=diff_pct,
        status=DivergenceStatus.WITHIN_THRESHOLD,
        oracle_price=oracle_price,
        provider=reading.provider,
    )


class OracleDivergenceMonitor:
    """
    Fetches the configured oracle through a PriceSource and applies compare().
    Holds no state of its own beyond the last result, which is kept for status
    reporting only.
    """

    def __init__(
        self,
        price_source: Any,
        metrics: Any = None,
        clock: Callable[[], float] = time.time,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._prices = price_source
        self._metrics = metrics
        self._clock = clock
        self._log_event = log_event_callback or self._default_log
        self.last_result: Optional[DivergenceResult] = None

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log_event(log, event, level, **kwargs)

    async def evaluate(self, local_price: float, symbol: str, config: StrategyConfig) -> DivergenceResult:
        oracle_cfg = config.oracle
        if not oracle_cfg.enabled:
            result = DivergenceResult(
                mode=QuoteMode.NORMAL,
                reference_price=local_price,
                diff_pct=0.0,
                status=DivergenceStatus.DISABLED,
            )
            self.last_result = result
            return result

        reading = await self._prices.get_price(symbol, preferred=oracle_cfg.provider, oracle_only=True)
        result = compare(
            local_price,
            reading,
            oracle_cfg.threshold_pct,
            now=self._clock(),
            max_age_sec=oracle_cfg.max_age_sec,
        )
        self.last_result = result

        level = logging.WARNING if result.mode is QuoteMode.ORACLE_OVERRIDE else logging.INFO
        self._log_event(
            "oracle_eval",
            level,
            symbol=symbol,
            mode=result.mode.value,
            status=result.status.value,
            local_price=local_price,
            oracle_price=result.oracle_price,
            provider=result.provider,
            diff_pct=round(result.diff_pct, 4),
            threshold_pct=oracle_cfg.threshold_pct,
        )
        if self._metrics is not None:
            self._metrics.oracle_evaluations.labels(symbol=symbol, status=result.status.value).inc()
            self._metrics.oracle_diff_pct.labels(symbol=symbol).set(result.diff_pct)
            self._metrics.quote_mode.labels(symbol=symbol).set(
                1 if result.mode is QuoteMode.ORACLE_OVERRIDE else 0
            )
        return result
