from __future__ import annotations

from typing import Optional

import structlog

from oddsfeed.pricing.normalize import normalize
from oddsfeed.upstream.http import JsonHttpClient
from oddsfeed.utils.errors import FetchError
from oddsfeed.utils.time import to_epoch_seconds
from oddsfeed.utils.types import Point

log = structlog.get_logger("clob")

CLOB_API = "https://clob.polymarket.com"


class ClobClient(JsonHttpClient):
    """
    Polymarket CLOB REST collaborator: price history per token.

    GET /prices-history?market=<token id>&interval=1d
      -> {"history": [{"t": 1700000000, "p": 0.42}, ...]}

    Points come back in upstream order, which may be unsorted or contain
    duplicate timestamps. The store sorts that out on load.
    """
    def __init__(self, base_url: str = CLOB_API, *, timeout_s: float = 8.0, session=None):
        super().__init__(base_url, timeout_s=timeout_s, session=session)

    async def price_history(
        self,
        token_id: str,
        interval: str = "1d",
        *,
        fidelity: Optional[int] = None,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> list[Point]:
        token_id = (token_id or "").strip()
        if not token_id:
            raise FetchError("token id is required for price history")
        data = await self.get_json(
            "/prices-history",
            {
                "market": token_id,
                "interval": interval if start_ts is None else None,
                "fidelity": fidelity,
                "startTs": start_ts,
                "endTs": end_ts,
            },
        )
        return parse_history(data)

    async def latest_price(self, token_id: str) -> Optional[Point]:
        """Most recent history point (1h interval), or None when the market has none."""
        points = await self.price_history(token_id, "1h")
        return points[-1] if points else None


def parse_history(data) -> list[Point]:
    """
    {"history": [{"t", "p"}]} -> [Point]. Prices are run through the normalizer
    as last-trade values; entries without a usable timestamp are skipped.
    """
    if isinstance(data, dict) and data.get("error"):
        raise FetchError(f"history error: {data['error']}")
    rows = data.get("history") if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise FetchError("history payload missing 'history' list")
    out: list[Point] = []
    skipped = 0
    for row in rows:
        if not isinstance(row, dict):
            skipped += 1
            continue
        ts = to_epoch_seconds(row.get("t", row.get("timestamp")))
        px = row.get("p", row.get("price"))
        try:
            px = float(px) if px is not None else None
        except (TypeError, ValueError):
            px = None
        if ts is None:
            skipped += 1
            continue
        out.append(Point(ts, normalize(last_trade=px)))
    if skipped:
        log.debug("history_rows_skipped", skipped=skipped, kept=len(out))
    return out
