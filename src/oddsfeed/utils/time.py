from __future__ import annotations

import math
import time
from datetime import datetime
from typing import Any, Optional

# --- wall clock ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def utc_now_epoch() -> int:
    """Unix epoch seconds, floored to a whole second."""
    return int(time.time())

def floor_to_second(ts: float) -> int:
    """Floor timestamp (s) to integer epoch second."""
    return int(math.floor(ts))

# --- upstream timestamp coercion ---

def to_epoch_seconds(raw: Any) -> Optional[int]:
    """
    Best-effort conversion of an upstream timestamp to whole epoch seconds.

    Accepts epoch seconds, milliseconds or nanoseconds (as numbers or numeric
    strings) and ISO-8601 strings. Returns None when nothing usable is found.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        try:
            raw = float(s)
        except ValueError:
            try:
                return int(datetime.fromisoformat(s.replace("Z", "+00:00")).timestamp())
            except ValueError:
                return None
    if not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return None
    ts = float(raw)
    if ts > 1e17:      # ns → s
        ts = ts / 1e9
    elif ts > 1e14:    # µs → s
        ts = ts / 1e6
    elif ts > 1e11:    # ms → s
        ts = ts / 1e3
    if ts < 0:
        return None
    return floor_to_second(ts)
