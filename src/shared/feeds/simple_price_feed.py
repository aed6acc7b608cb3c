"""
Pyth Hermes Price Feed
======================
HTTP price adapter over Pyth Network's Hermes service.

One request fetches every symbol asked for, so a monitoring tick costs a
single round trip regardless of how many markets are watched.
"""

from decimal import Decimal
from typing import Dict, Iterable, Optional

import httpx

from config.settings import Settings
from src.shared.feeds.price_source import PriceFeed
from src.shared.system.logging import Logger


# Pyth price feed ids (USD quoted)
PYTH_FEED_IDS = {
    "SOL": "0xef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
    "ETH": "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    "BTC": "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    "USDC": "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    "USDT": "0x2b89b9dc8fdf9f34709a5b106b472f0f39bb6ca9ce04b0fd7f2e971688e2e53b",
}


def _normalize_id(feed_id: str) -> str:
    return feed_id.lower().removeprefix("0x")


def parse_price(price_info: dict) -> Optional[Decimal]:
    """Hermes encodes prices as an integer mantissa and a base-10 exponent."""
    try:
        mantissa = Decimal(str(price_info["price"]))
        expo = int(price_info["expo"])
    except (KeyError, TypeError, ValueError, ArithmeticError):
        return None
    price = mantissa.scaleb(expo)
    return price if price > 0 else None


class PythPriceFeed(PriceFeed):
    """Hermes HTTP adapter. Network errors are logged and yield no price."""

    def __init__(self, url: str = None, timeout: float = None, client: httpx.AsyncClient = None):
        self.url = url or Settings.PYTH_HTTP_URL
        self.timeout = timeout if timeout is not None else Settings.PRICE_FEED_TIMEOUT_SEC
        self._client = client

    async def _fetch(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        wanted = {
            _normalize_id(PYTH_FEED_IDS[s]): s
            for s in (sym.upper() for sym in symbols)
            if s in PYTH_FEED_IDS
        }
        if not wanted:
            return {}

        params = [("ids[]", "0x" + feed_id) for feed_id in wanted]
        try:
            if self._client is not None:
                response = await self._client.get(self.url, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            Logger.warning(f"[FEED] Hermes request failed: {e}")
            return {}

        prices = {}
        for entry in data or []:
            symbol = wanted.get(_normalize_id(str(entry.get("id", ""))))
            if symbol is None:
                continue
            price = parse_price(entry.get("price", {}))
            if price is not None:
                prices[symbol] = price
        return prices

    async def get_price(self, symbol: str) -> Optional[Decimal]:
        prices = await self._fetch([symbol])
        return prices.get(symbol.upper())

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        return await self._fetch(symbols)
