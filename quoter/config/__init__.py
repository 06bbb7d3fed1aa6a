"""
Configuration: process Settings from the environment, StrategyConfig from YAML/presets.
"""

from quoter.config.config import Settings, env_bool
from quoter.config.strategy_config import (
    StrategyConfig,
    RiskLimits,
    OracleConfig,
    PRESETS,
    load_strategies,
    load_strategy,
    strategy_from_dict,
)

__all__ = [
    "Settings",
    "env_bool",
    "StrategyConfig",
    "RiskLimits",
    "OracleConfig",
    "PRESETS",
    "load_strategies",
    "load_strategy",
    "strategy_from_dict",
]
