"""
Immutable strategy configuration plus YAML loading and presets.

A StrategyConfig is never edited in place. with_updates() returns a new,
validated instance which the orchestrator swaps in between ticks.

YAML format (configs/strategies.yaml):

    strategies:
      long_term:
        symbol: BTC-USD
        spread: 0.2
        order_class: LONG_LIVED
        risk:
          max_drawdown_pct: 5
        oracle:
          enabled: true
          provider: binance
          threshold_pct: 0.5
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from quoter.core.errors import ConfigError
from quoter.core.models import OrderClass

log = logging.getLogger("quoter")


@dataclass(frozen=True)
class RiskLimits:
    max_position_size: float = 1.0
    max_drawdown_pct: float = 10.0
    stop_loss_pct: float = 5.0
    take_profit_ratio: float = 2.0
    # minimum free collateral (quote asset) required to keep quoting
    min_balance: float = 10.0
    collateral_asset: str = "USDC"


@dataclass(frozen=True)
class OracleConfig:
    enabled: bool = False
    provider: str = "binance"
    threshold_pct: float = 0.5
    # readings older than this never trigger an override
    max_age_sec: float = 60.0


@dataclass(frozen=True)
class StrategyConfig:
    symbol: str = "BTC-USD"
    # percentages, e.g. 0.1 == 0.1%
    spread: float = 0.1
    step_size: float = 0.05
    price_steps: int = 3
    max_orders_per_side: int = 5
    order_size: float = 0.001
    size_growth_factor: float = 0.01
    refresh_interval: float = 30.0
    max_position_size: float = 1.0

    order_class: OrderClass = OrderClass.LONG_LIVED
    good_til_blocks: int = 20
    good_til_seconds: int = 300
    cancel_good_til_blocks: int = 10

    batch_size: int = 1
    batch_delay_ms: int = 100
    shuffle_orders: bool = True
    cancel_settle_sec: float = 1.0

    price_decimals: int = 3
    size_decimals: int = 4

    use_price_fallback: bool = True
    fallback_spread_pct: float = 0.1

    risk: RiskLimits = field(default_factory=RiskLimits)
    oracle: OracleConfig = field(default_factory=OracleConfig)

    def with_updates(self, **changes: Any) -> "StrategyConfig":
        """Return a new config with changes applied; nested sections accept dicts."""
        if "risk" in changes and isinstance(changes["risk"], dict):
            changes["risk"] = dataclasses.replace(self.risk, **changes["risk"])
        if "oracle" in changes and isinstance(changes["oracle"], dict):
            changes["oracle"] = dataclasses.replace(self.oracle, **changes["oracle"])
        if "order_class" in changes:
            changes["order_class"] = _order_class(changes["order_class"])
        try:
            updated = dataclasses.replace(self, **changes)
        except TypeError as e:
            raise ConfigError(f"unknown strategy field: {e}") from e
        updated.validate()
        return updated

    def validate(self) -> None:
        """Raise ConfigError on values the engine cannot run with."""
        problems = []
        if not self.symbol:
            problems.append("symbol is required")
        if self.spread <= 0:
            problems.append("spread must be > 0")
        if self.step_size < 0:
            problems.append("step_size must be >= 0")
        if self.price_steps < 1:
            problems.append("price_steps must be >= 1")
        if self.max_orders_per_side < 1:
            problems.append("max_orders_per_side must be >= 1")
        if self.order_size <= 0:
            problems.append("order_size must be > 0")
        if self.size_growth_factor < 0:
            problems.append("size_growth_factor must be >= 0")
        if self.refresh_interval <= 0:
            problems.append("refresh_interval must be > 0")
        if self.batch_size < 1:
            problems.append("batch_size must be >= 1")
        if self.batch_delay_ms < 0:
            problems.append("batch_delay_ms must be >= 0")
        if self.good_til_blocks < 1:
            problems.append("good_til_blocks must be >= 1")
        if self.good_til_seconds < 1:
            problems.append("good_til_seconds must be >= 1")
        if self.price_decimals < 0 or self.size_decimals < 0:
            problems.append("rounding decimals must be >= 0")
        if self.fallback_spread_pct < 0:
            problems.append("fallback_spread_pct must be >= 0")
        if self.max_position_size <= 0:
            problems.append("max_position_size must be > 0")
        if self.oracle.enabled and self.oracle.threshold_pct <= 0:
            problems.append("oracle.threshold_pct must be > 0")
        if problems:
            raise ConfigError(f"invalid strategy '{self.symbol}': " + "; ".join(problems))

    @property
    def levels(self) -> int:
        return min(self.price_steps, self.max_orders_per_side)

    def dump(self) -> dict:
        """Return a plain dict for logging."""
        data = dataclasses.asdict(self)
        data["order_class"] = self.order_class.value
        return data


def _order_class(raw: Any) -> OrderClass:
    if isinstance(raw, OrderClass):
        return raw
    try:
        return OrderClass(str(raw).upper())
    except ValueError as e:
        raise ConfigError(f"unknown order_class: {raw!r}") from e


def strategy_from_dict(data: Dict[str, Any], base: Optional[StrategyConfig] = None) -> StrategyConfig:
    """Build a StrategyConfig from a mapping, layering it over base (defaults if None)."""
    base = base or StrategyConfig()
    data = dict(data or {})
    known = {f.name for f in dataclasses.fields(StrategyConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown strategy fields: {sorted(unknown)}")
    return base.with_updates(**data)


def load_strategies(path: str | Path) -> Dict[str, StrategyConfig]:
    """Load every named strategy from a YAML file."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"strategy file not found: {p}")
    with p.open() as f:
        raw = yaml.safe_load(f) or {}
    entries = raw.get("strategies", {})
    if not isinstance(entries, dict):
        raise ConfigError(f"'strategies' must be a mapping in {p}")
    out: Dict[str, StrategyConfig] = {}
    for name, body in entries.items():
        out[name] = strategy_from_dict(body or {})
    log.info(f"[STRATEGY] loaded {len(out)} strategies from {p}")
    return out


def load_strategy(path: Optional[str | Path], name: str, symbol: Optional[str] = None) -> StrategyConfig:
    """
    Resolve a strategy by name: from the YAML file if given, else from PRESETS.
    symbol overrides whatever the entry declares.
    """
    if path:
        strategies = load_strategies(path)
        if name not in strategies:
            raise ConfigError(f"strategy '{name}' not in {path} (have: {sorted(strategies)})")
        cfg = strategies[name]
    elif name in PRESETS:
        cfg = PRESETS[name]
    else:
        raise ConfigError(f"unknown preset '{name}' (have: {sorted(PRESETS)})")
    if symbol:
        cfg = cfg.with_updates(symbol=symbol)
    return cfg


PRESETS: Dict[str, StrategyConfig] = {
    # Resting orders good for ~5 minutes, cancelled individually
    "long_term": StrategyConfig(
        symbol="BTC-USD",
        spread=0.2,
        step_size=0.1,
        price_steps=5,
        max_orders_per_side=5,
        order_size=0.001,
        refresh_interval=60.0,
        max_position_size=0.1,
        order_class=OrderClass.LONG_LIVED,
        good_til_seconds=300,
        batch_size=1,
        batch_delay_ms=200,
        price_decimals=0,
        size_decimals=4,
        risk=RiskLimits(max_position_size=0.1, max_drawdown_pct=5.0, stop_loss_pct=2.0),
    ),
    # Block-scoped orders, refreshed often, cancelled in one bulk call
    "short_term": StrategyConfig(
        symbol="ETH-USD",
        spread=0.1,
        step_size=0.05,
        price_steps=3,
        max_orders_per_side=3,
        order_size=0.01,
        refresh_interval=10.0,
        max_position_size=1.0,
        order_class=OrderClass.SHORT_LIVED,
        good_til_blocks=20,
        batch_size=3,
        batch_delay_ms=100,
        price_decimals=2,
        size_decimals=3,
        risk=RiskLimits(max_position_size=1.0, max_drawdown_pct=5.0, stop_loss_pct=2.0),
    ),
    "conservative": StrategyConfig(
        symbol="BTC-USD",
        spread=0.5,
        step_size=0.2,
        price_steps=3,
        max_orders_per_side=3,
        order_size=0.0005,
        refresh_interval=120.0,
        max_position_size=0.05,
        order_class=OrderClass.LONG_LIVED,
        good_til_seconds=600,
        price_decimals=0,
        size_decimals=4,
        risk=RiskLimits(max_position_size=0.05, max_drawdown_pct=3.0, stop_loss_pct=1.5),
    ),
    "aggressive": StrategyConfig(
        symbol="ETH-USD",
        spread=0.05,
        step_size=0.02,
        price_steps=8,
        max_orders_per_side=8,
        order_size=0.05,
        size_growth_factor=0.1,
        refresh_interval=15.0,
        max_position_size=5.0,
        order_class=OrderClass.SHORT_LIVED,
        good_til_blocks=15,
        batch_size=4,
        batch_delay_ms=50,
        price_decimals=2,
        size_decimals=3,
        risk=RiskLimits(max_position_size=5.0, max_drawdown_pct=15.0, stop_loss_pct=5.0),
        oracle=OracleConfig(enabled=True, provider="binance", threshold_pct=0.3),
    ),
}
