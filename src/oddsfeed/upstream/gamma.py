from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

import structlog

from oddsfeed.upstream.http import JsonHttpClient
from oddsfeed.utils.errors import FetchError, ResolveError

log = structlog.get_logger("gamma")

GAMMA_API = "https://gamma-api.polymarket.com"

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


@dataclass(slots=True)
class ResolvedMarket:
    token_id: str
    question: str = ""
    slug: str = ""
    condition_id: str = ""
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    last_trade: Optional[float] = None
    # other outcome tokens of the same market, then first tokens of sibling markets
    sibling_token_ids: list[str] = field(default_factory=list)


def slug_from_input(text: str) -> str:
    """
    Accept a bare slug or a polymarket.com URL and return the slug.
    https://polymarket.com/event/<slug>[/<market-slug>] -> the last slug segment
    """
    s = (text or "").strip()
    if not s:
        raise ResolveError("market slug is empty")
    if "/" in s:
        path = urlparse(s if "://" in s else f"https://{s}").path
        parts = [p for p in path.split("/") if p]
        for marker in ("event", "market"):
            if marker in parts:
                idx = parts.index(marker)
                tail = parts[idx + 1:]
                if tail:
                    s = tail[-1]
                    break
        else:
            s = parts[-1] if parts else ""
    if not _SLUG_RE.match(s):
        raise ResolveError(f"not a market slug: {text!r}")
    return s


def parse_token_ids(raw: Any) -> list[str]:
    """clobTokenIds arrives as a list, a JSON-encoded list, or a comma-separated string."""
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(x).strip() for x in raw if str(x).strip()]
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(x).strip() for x in parsed if str(x).strip()]
        return [p.strip() for p in raw.split(",") if p.strip()]
    return []


def _num(v: Any) -> Optional[float]:
    try:
        return float(v) if v is not None and v != "" else None
    except (TypeError, ValueError):
        return None


def market_from_payload(payload: Any, slug: str) -> ResolvedMarket:
    """
    Pick the market out of an event object, a market object, or a list of markets.
    The first market's first token (usually the YES outcome) becomes the instrument.
    """
    markets: list[dict]
    title = ""
    if isinstance(payload, dict) and ("clobTokenIds" in payload or "conditionId" in payload
                                      or "condition_id" in payload):
        markets = [payload]
    elif isinstance(payload, dict) and isinstance(payload.get("markets"), list) and payload["markets"]:
        markets = [m for m in payload["markets"] if isinstance(m, dict)]
        title = payload.get("title") or ""
    elif isinstance(payload, list) and payload:
        markets = [m for m in payload if isinstance(m, dict)]
    else:
        raise ResolveError(f"no market data found for slug {slug!r}")
    if not markets:
        raise ResolveError(f"no market data found for slug {slug!r}")

    first = markets[0]
    tokens = parse_token_ids(first.get("clobTokenIds"))
    if not tokens:
        raise ResolveError("market has no clobTokenIds; CLOB trading may not be enabled")

    siblings = tokens[1:]
    for m in markets[1:]:
        ids = parse_token_ids(m.get("clobTokenIds"))
        if ids:
            siblings.append(ids[0])

    return ResolvedMarket(
        token_id=tokens[0],
        question=first.get("question") or first.get("title") or title or "Unknown Market",
        slug=first.get("slug") or (payload.get("slug") if isinstance(payload, dict) else None) or slug,
        condition_id=first.get("conditionId") or first.get("condition_id") or "",
        best_bid=_num(first.get("bestBid")),
        best_ask=_num(first.get("bestAsk")),
        last_trade=_num(first.get("lastTradePrice")),
        sibling_token_ids=siblings,
    )


class GammaClient(JsonHttpClient):
    """
    Slug -> instrument key resolution against the Gamma API.
    Tries GET /events/slug/{slug} first, then GET /markets?slug={slug}.
    """
    def __init__(self, base_url: str = GAMMA_API, *, timeout_s: float = 8.0, session=None):
        super().__init__(base_url, timeout_s=timeout_s, session=session)

    async def resolve(self, slug_or_url: str) -> ResolvedMarket:
        slug = slug_from_input(slug_or_url)
        try:
            payload = await self.get_json(f"/events/slug/{slug}")
        except FetchError as e:
            log.info("gamma_event_lookup_failed", slug=slug, err=str(e))
            try:
                payload = await self.get_json("/markets", {"slug": slug})
            except FetchError as e2:
                raise ResolveError(f"failed to fetch market {slug!r}: {e2}") from e2
        market = market_from_payload(payload, slug)
        log.info("market_resolved", slug=market.slug, token_id=market.token_id,
                 siblings=len(market.sibling_token_ids))
        return market
