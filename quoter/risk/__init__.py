"""
Risk: pre-trade gate and cached account state.
"""

from quoter.risk.risk import DenyReason, RiskDecision, RiskGovernor
from quoter.risk.account import AccountTracker

__all__ = ["DenyReason", "RiskDecision", "RiskGovernor", "AccountTracker"]
