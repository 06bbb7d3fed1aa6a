"""
Execution layer: order placement, cancellation and reconciliation.
"""

from quoter.execution.order_manager import (
    OrderLifecycleManager,
    PlacementReport,
    SubmitResult,
    SyncResult,
    OrderStats,
    LifecycleCounters,
)

__all__ = [
    "OrderLifecycleManager",
    "PlacementReport",
    "SubmitResult",
    "SyncResult",
    "OrderStats",
    "LifecycleCounters",
]
