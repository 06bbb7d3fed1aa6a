"""
Quoting strategy: ladder construction and oracle divergence handling.
"""

from quoter.strategy.quoting_engine import Ladder, QuotingEngine, compute_ladder
from quoter.strategy.oracle_monitor import (
    DivergenceResult,
    DivergenceStatus,
    OracleDivergenceMonitor,
    QuoteMode,
    compare,
)

__all__ = [
    "Ladder",
    "QuotingEngine",
    "compute_ladder",
    "DivergenceResult",
    "DivergenceStatus",
    "OracleDivergenceMonitor",
    "QuoteMode",
    "compare",
]
