"""
Abstract Price Feed Interface
=============================
Defines the contract the tracker uses to read current market prices.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, Optional


class PriceFeed(ABC):
    """
    Current USD price per market symbol.

    Implementations return None when no price is available; callers
    treat that as "skip this cycle", never as zero.
    """

    @abstractmethod
    async def get_price(self, symbol: str) -> Optional[Decimal]:
        """Latest USD price for ``symbol`` (e.g. "SOL")."""

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        """Prices for several symbols; unavailable ones are omitted."""
        prices = {}
        for symbol in symbols:
            price = await self.get_price(symbol)
            if price is not None:
                prices[symbol] = price
        return prices
