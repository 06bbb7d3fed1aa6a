"""
Error taxonomy for the quoting engine.

Expected absence (no price, no open orders) is modelled with Optional return
values; exceptions are reserved for faults. The control loop classifies any
exception that reaches a tick boundary with classify_error().
"""

from __future__ import annotations

from enum import Enum
from typing import Tuple

# Substrings that mean continuing to trade is unsafe
CRITICAL_ERROR_PATTERNS: Tuple[str, ...] = (
    "insufficient funds",
    "account suspended",
    "invalid signature",
    "network error",
)


class ErrorKind(Enum):
    TRANSIENT = "transient"
    CRITICAL = "critical"


class QuoterError(Exception):
    """Base class for all quoter errors."""


class ConfigError(QuoterError):
    """Strategy or settings failed validation."""


class ExchangeError(QuoterError):
    """An exchange call failed."""


class ExchangeRequestError(ExchangeError):
    """Transport-level failure talking to the exchange or indexer."""


class OrderRejectedError(ExchangeError):
    """The exchange refused a placement or cancellation."""


class CriticalExchangeError(ExchangeError):
    """An error that requires an emergency stop."""


class PriceUnavailableError(QuoterError):
    """Raised only where a caller cannot proceed without a price."""


def is_critical_message(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in CRITICAL_ERROR_PATTERNS)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, CriticalExchangeError):
        return ErrorKind.CRITICAL
    if is_critical_message(str(exc)):
        return ErrorKind.CRITICAL
    return ErrorKind.TRANSIENT
