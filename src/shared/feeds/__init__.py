# Price Feeds Package
"""Market price adapters."""

from .price_source import PriceFeed
from .simple_price_feed import PythPriceFeed

__all__ = [
    "PriceFeed",
    "PythPriceFeed",
]
