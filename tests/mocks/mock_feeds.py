"""
Mock Price Feeds
================
Deterministic price feeds for testing without HTTP calls.
"""

from decimal import Decimal
from typing import Dict, Optional

from src.shared.feeds.price_source import PriceFeed


class MockPriceFeed(PriceFeed):
    """
    Price feed with preset USD prices.

    Usage:
        feed = MockPriceFeed({"SOL": "100"})
        feed.set_price("SOL", "111")
        price = await feed.get_price("SOL")
    """

    def __init__(self, prices: Dict[str, object] = None):
        self._prices: Dict[str, Decimal] = {}
        self.call_count = 0
        self.set_prices(prices or {"SOL": "150", "ETH": "3000", "BTC": "60000", "USDC": "1", "USDT": "1"})

    def set_price(self, symbol: str, price) -> None:
        """Set a price; None removes it."""
        if price is None:
            self._prices.pop(symbol, None)
        else:
            self._prices[symbol] = Decimal(str(price))

    def set_prices(self, prices: Dict[str, object]) -> None:
        for symbol, price in prices.items():
            self.set_price(symbol, price)

    async def get_price(self, symbol: str) -> Optional[Decimal]:
        self.call_count += 1
        return self._prices.get(symbol)
