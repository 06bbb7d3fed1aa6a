"""
perp-quoter: two-sided ladder quoting engine for perpetual futures markets.
"""

__version__ = "0.3.0"
