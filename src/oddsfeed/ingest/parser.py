from __future__ import annotations

import json
from typing import Any, Optional

from oddsfeed.utils.errors import MalformedMessage
from oddsfeed.utils.time import to_epoch_seconds, utc_now_epoch
from oddsfeed.utils.types import Observation

TRADE_EVENTS = ("last_trade_price", "trade")
SNAPSHOT_EVENTS = ("book",)


def decode_frame(raw: str | bytes) -> list[dict]:
    """
    Decode one websocket frame into a list of message dicts.

    The CLOB market channel sends either a single JSON object or a JSON array
    (initial book snapshots arrive batched). Keep-alive frames such as "PONG"
    are not JSON; they decode to an empty list rather than an error.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"undecodable frame: {e}") from e
    s = raw.strip()
    if not s or s[0] not in "[{":
        return []
    try:
        msg = json.loads(s)
    except ValueError as e:
        raise MalformedMessage(f"invalid json: {e}") from e
    if isinstance(msg, dict):
        return [msg]
    if isinstance(msg, list):
        return [m for m in msg if isinstance(m, dict)]
    raise MalformedMessage(f"unexpected frame type {type(msg).__name__}")


def _price(v: Any, field: str) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"non-numeric {field}: {v!r}") from e


def _key(m: dict) -> str:
    k = m.get("asset_id") or m.get("assetId") or m.get("token_id")
    if not k:
        raise MalformedMessage("missing asset_id")
    return str(k)


def _ts(m: dict, default: Optional[int]) -> int:
    ts = to_epoch_seconds(m.get("timestamp") or m.get("ts"))
    if ts is not None:
        return ts
    return default if default is not None else utc_now_epoch()


def _best_levels(levels: Any, *, best: str) -> Optional[float]:
    """Best price of a book side; levels arrive as [{"price","size"}] in no guaranteed order."""
    if not levels:
        return None
    prices = []
    for lvl in levels:
        p = _price(lvl.get("price") if isinstance(lvl, dict) else None, "level price")
        if p is not None:
            prices.append(p)
    if not prices:
        return None
    return max(prices) if best == "max" else min(prices)


def parse_market_msg(m: dict, *, now_s: Optional[int] = None) -> list[Observation]:
    """
    Turn one market-channel message into zero or more observations.

    Message kinds:
      - last_trade_price  -> trade (last_trade)
      - price_change      -> one quote per entry carrying best_bid/best_ask
      - best_bid_ask      -> quote
      - book              -> snapshot (best bid = highest bid, best ask = lowest ask)
    Unknown or bookkeeping kinds return []. Schema mismatches raise MalformedMessage.

    Message timestamps win over the wall clock; both end up as whole seconds.
    """
    T = m.get("event_type") or m.get("type")
    if T in TRADE_EVENTS:
        px = _price(m.get("price"), "price")
        if px is None:
            raise MalformedMessage("trade without price")
        return [Observation(key=_key(m), ts=_ts(m, now_s), last_trade=px, kind="trade")]

    if T == "price_change":
        ts = _ts(m, now_s)
        entries = m.get("price_changes")
        if entries is None:
            # legacy single-asset shape: {"asset_id", "changes": [...], "best_bid"?, ...}
            entries = [m] if ("best_bid" in m or "best_ask" in m) else []
        out: list[Observation] = []
        for e in entries:
            if not isinstance(e, dict):
                raise MalformedMessage("price_change entry is not an object")
            bid = _price(e.get("best_bid"), "best_bid")
            ask = _price(e.get("best_ask"), "best_ask")
            trade = _price(e.get("last_trade_price", m.get("last_trade_price")), "last_trade_price")
            if bid is None and ask is None and trade is None:
                continue
            out.append(Observation(
                key=_key(e if e.get("asset_id") else m), ts=ts,
                bid=bid, ask=ask, last_trade=trade, kind="quote",
            ))
        return out

    if T == "best_bid_ask":
        bid = _price(m.get("best_bid"), "best_bid")
        ask = _price(m.get("best_ask"), "best_ask")
        trade = _price(m.get("last_trade_price"), "last_trade_price")
        if bid is None and ask is None and trade is None:
            raise MalformedMessage("best_bid_ask without prices")
        return [Observation(key=_key(m), ts=_ts(m, now_s), bid=bid, ask=ask,
                            last_trade=trade, kind="quote")]

    if T in SNAPSHOT_EVENTS:
        bid = _best_levels(m.get("bids", m.get("buys")), best="max")
        ask = _best_levels(m.get("asks", m.get("sells")), best="min")
        trade = _price(m.get("last_trade_price"), "last_trade_price")
        if bid is None and ask is None and trade is None:
            return []
        return [Observation(key=_key(m), ts=_ts(m, now_s), bid=bid, ask=ask,
                            last_trade=trade, kind="snapshot")]

    # subscription acks, tick_size_change, anything newer than this parser
    return []
