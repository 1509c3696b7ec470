from __future__ import annotations

import math
from typing import Optional

from oddsfeed.utils.types import Observation, Point

# Spread (ask - bid) at or below which the book midpoint is trusted over the last trade.
MAX_TRUSTED_SPREAD = 0.10
# Price reported when an observation carries no bid/ask/trade at all.
NO_INFO_PRICE = 0.5
DECIMALS = 3

_EPS = 1e-9  # float slack on the spread comparison (0.30 - 0.20 != 0.10 exactly)


def _usable(x: Optional[float]) -> Optional[float]:
    if x is None:
        return None
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def round_price(x: float) -> float:
    return round(clamp01(x), DECIMALS)


def normalize(
    bid: Optional[float] = None,
    ask: Optional[float] = None,
    last_trade: Optional[float] = None,
) -> float:
    """
    Collapse a book/trade observation into one price in [0, 1].

    Rules, first match wins:
      1. bid and ask with spread <= 0.10  -> midpoint
      2. last trade present               -> last trade
      3. bid and ask (wide spread)        -> midpoint anyway
      4. nothing usable                   -> 0.5

    The result is clamped to [0, 1] and rounded to 3 decimals. Push, poll,
    history and snapshot paths all go through here.
    """
    b, a, t = _usable(bid), _usable(ask), _usable(last_trade)
    have_book = b is not None and a is not None

    if have_book and abs(a - b) <= MAX_TRUSTED_SPREAD + _EPS:
        raw = (a + b) / 2.0
    elif t is not None:
        raw = t
    elif have_book:
        raw = (a + b) / 2.0
    else:
        raw = NO_INFO_PRICE
    return round_price(raw)


def to_point(obs: Observation) -> Point:
    """Normalize an observation and stamp it with its whole-second timestamp."""
    return Point(ts=int(obs.ts), value=normalize(obs.bid, obs.ask, obs.last_trade))
