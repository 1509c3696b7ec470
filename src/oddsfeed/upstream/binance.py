from __future__ import annotations

from typing import Optional

from oddsfeed.upstream.http import JsonHttpClient
from oddsfeed.utils.errors import FetchError

BINANCE_DATA_API = "https://data-api.binance.vision"


class BinanceClient(JsonHttpClient):
    """Public Binance market data (no keys): spot ticker for the reference asset."""

    def __init__(self, base_url: str = BINANCE_DATA_API, *, timeout_s: float = 5.0, session=None):
        super().__init__(base_url, timeout_s=timeout_s, session=session)

    async def ticker_price(self, symbol: str = "BTCUSDT") -> Optional[float]:
        """GET /api/v3/ticker/price -> {"symbol": "BTCUSDT", "price": "67000.01"}"""
        data = await self.get_json("/api/v3/ticker/price", {"symbol": symbol.upper()})
        if not isinstance(data, dict) or "price" not in data:
            raise FetchError(f"unexpected ticker payload for {symbol}")
        try:
            px = float(data["price"])
        except (TypeError, ValueError) as e:
            raise FetchError(f"non-numeric ticker price for {symbol}: {data['price']!r}") from e
        return px if px > 0 else None
