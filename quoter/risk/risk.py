"""
RiskGovernor: pre-trade gate evaluated once per refresh cycle.

Each check alone is enough to deny:
- position-limit:       |position size| >= max_position_size
- drawdown:             unrealized / portfolio value * 100 < -max_drawdown_pct
                        (only when portfolio value > 0)
- insufficient-balance: collateral balance < min_balance

A denial only stops the bot from (re)quoting this cycle; it never stops the
loop. The governor keeps counters for telemetry, but a decision depends only
on the arguments of the call.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from quoter.config.strategy_config import StrategyConfig
from quoter.core.models import PortfolioSummary, Position
from quoter.infra.logging_cfg import log_event

log = logging.getLogger("quoter")


class DenyReason(str, Enum):
    POSITION_LIMIT = "position-limit"
    DRAWDOWN = "drawdown"
    INSUFFICIENT_BALANCE = "insufficient-balance"


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: Optional[DenyReason] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "RiskDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, **details: Any) -> "RiskDecision":
        return cls(allowed=False, reason=reason, details=details)

    def __bool__(self) -> bool:
        return self.allowed


class RiskGovernor:
    def __init__(
        self,
        metrics: Any = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._metrics = metrics
        self._log_event = log_event_callback or self._default_log
        self.denials: Counter = Counter()
        self.checks = 0

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log_event(log, event, level, **kwargs)

    def check_pretrade(
        self,
        symbol: str,
        position: Optional[Position],
        portfolio: Optional[PortfolioSummary],
        balance: float,
        config: StrategyConfig,
    ) -> RiskDecision:
        self.checks += 1
        decision = self._evaluate(position, portfolio, balance, config)
        if not decision.allowed:
            self.denials[decision.reason.value] += 1
            self._log_event(
                "risk_denied",
                logging.WARNING,
                symbol=symbol,
                reason=decision.reason.value,
                **decision.details,
            )
            if self._metrics is not None:
                self._metrics.risk_denials.labels(symbol=symbol, reason=decision.reason.value).inc()
        return decision

    @staticmethod
    def _evaluate(
        position: Optional[Position],
        portfolio: Optional[PortfolioSummary],
        balance: float,
        config: StrategyConfig,
    ) -> RiskDecision:
        size = abs(position.size) if position is not None else 0.0
        # The tighter of the two configured limits applies
        max_position = min(config.max_position_size, config.risk.max_position_size)
        if size >= max_position:
            return RiskDecision.deny(
                DenyReason.POSITION_LIMIT,
                position=size,
                max_position=max_position,
            )

        if portfolio is not None and portfolio.value > 0:
            pnl_pct = portfolio.unrealized_pnl / portfolio.value * 100.0
            if pnl_pct < -config.risk.max_drawdown_pct:
                return RiskDecision.deny(
                    DenyReason.DRAWDOWN,
                    pnl_pct=round(pnl_pct, 4),
                    max_drawdown_pct=config.risk.max_drawdown_pct,
                )

        if not math.isfinite(balance) or balance < config.risk.min_balance:
            return RiskDecision.deny(
                DenyReason.INSUFFICIENT_BALANCE,
                balance=balance,
                min_balance=config.risk.min_balance,
            )

        return RiskDecision.allow()
