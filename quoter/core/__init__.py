"""
Core domain types shared by every layer of the quoter.

- models: immutable market/order/position records
- errors: error taxonomy and classification for the control loop
- client_ids: per-instance client order id allocation
- rounding: price/size rounding and validity checks
"""

from quoter.core.models import (
    Side,
    OrderClass,
    OrderBook,
    BookLevel,
    MarketSnapshot,
    MarketStats,
    OracleReading,
    OrderIntent,
    TrackedOrder,
    OrderView,
    OrderReceipt,
    Position,
    PortfolioSummary,
)
from quoter.core.errors import (
    QuoterError,
    ConfigError,
    ExchangeError,
    ExchangeRequestError,
    OrderRejectedError,
    CriticalExchangeError,
    PriceUnavailableError,
    ErrorKind,
    classify_error,
)
from quoter.core.client_ids import ClientIdAllocator

__all__ = [
    "Side",
    "OrderClass",
    "OrderBook",
    "BookLevel",
    "MarketSnapshot",
    "MarketStats",
    "OracleReading",
    "OrderIntent",
    "TrackedOrder",
    "OrderView",
    "OrderReceipt",
    "Position",
    "PortfolioSummary",
    "QuoterError",
    "ConfigError",
    "ExchangeError",
    "ExchangeRequestError",
    "OrderRejectedError",
    "CriticalExchangeError",
    "PriceUnavailableError",
    "ErrorKind",
    "classify_error",
    "ClientIdAllocator",
]
