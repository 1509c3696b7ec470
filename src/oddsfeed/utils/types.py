from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional

# ---- ingest-level primitives ----

ObservationKind = Literal["trade", "quote", "snapshot", "poll"]

@dataclass(slots=True)
class Observation:
    """
    One raw book/trade sample for an instrument, as produced by the transport
    layer. Never stored; the normalizer turns it into a Point.
    """
    key: str
    ts: int                          # whole epoch seconds
    bid: Optional[float] = None
    ask: Optional[float] = None
    last_trade: Optional[float] = None
    kind: ObservationKind = "quote"

@dataclass(frozen=True, slots=True)
class Point:
    """Canonical series sample: whole-second timestamp, price in [0, 1]."""
    ts: int
    value: float

    def as_chart(self) -> dict:
        # shape consumed by the charting collaborator
        return {"time": self.ts, "value": self.value}

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"

# ---- alerting domain ----

Direction = Literal["above", "below"]
