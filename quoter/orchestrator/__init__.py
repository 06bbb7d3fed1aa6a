"""
Orchestration: the per-symbol control loop.
"""

from quoter.orchestrator.bot_orchestrator import (
    BotState,
    BotStats,
    MarketMakerBot,
    OrchestratorConfig,
    TickAction,
    TickResult,
)

__all__ = [
    "BotState",
    "BotStats",
    "MarketMakerBot",
    "OrchestratorConfig",
    "TickAction",
    "TickResult",
]
