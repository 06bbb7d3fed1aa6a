"""
Price/size rounding helpers.
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP, getcontext

# Increase precision to avoid intermediate rounding drift
getcontext().prec = 18


def round_to(value: float, decimals: int) -> float:
    """Half-up rounding to a fixed number of decimals (Python's round() is banker's)."""
    if not math.isfinite(value):
        return value
    decimals = max(0, int(decimals))
    quant = Decimal(1).scaleb(-decimals)
    return float(Decimal(str(value)).quantize(quant, rounding=ROUND_HALF_UP))


def round_price(px: float, price_decimals: int) -> float:
    return round_to(px, price_decimals)


def round_size(sz: float, size_decimals: int) -> float:
    return round_to(sz, size_decimals)


def is_valid_price(px: float) -> bool:
    return isinstance(px, (int, float)) and math.isfinite(px) and px > 0


def is_valid_size(sz: float) -> bool:
    return isinstance(sz, (int, float)) and math.isfinite(sz) and sz > 0

