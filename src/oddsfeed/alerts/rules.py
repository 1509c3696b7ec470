from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Optional

from oddsfeed.utils.types import Direction

DIRECTIONS: tuple[Direction, ...] = ("above", "below")

@dataclass(slots=True)
class AlertRule:
    """
    One-shot threshold rule on the normalized price.
    - direction = "above" → fires when price >= threshold
                  "below" → fires when price <= threshold
    `active` flips to False the first time it fires and is never set back;
    watching the same level again takes a new rule.
    """
    direction: Direction
    threshold: float                    # 0..1
    label: Optional[str] = None
    active: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {self.direction!r}")
        self.threshold = float(self.threshold)
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")

    def hit(self, price: float) -> bool:
        if self.direction == "above":
            return price >= self.threshold
        return price <= self.threshold

@dataclass(frozen=True, slots=True)
class AlertFired:
    """Notification payload for a rule that just fired."""
    rule_id: str
    label: Optional[str]
    direction: Direction
    threshold: float
    price: float
    ts: float

    def as_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "label": self.label,
            "direction": self.direction,
            "threshold": self.threshold,
            "price": self.price,
            "ts": self.ts,
        }

def parse_rule_specs(spec: str) -> list[AlertRule]:
    """
    "below:0.55:dip,above:0.7" -> [AlertRule(below, 0.55, "dip"), AlertRule(above, 0.7)]
    Used for rules given through the ALERTS env var.
    """
    rules: list[AlertRule] = []
    for chunk in (spec or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = chunk.split(":", 2)
        if len(parts) < 2:
            raise ValueError(f"alert spec needs direction:threshold, got {chunk!r}")
        label = parts[2].strip() if len(parts) == 3 and parts[2].strip() else None
        rules.append(AlertRule(direction=parts[0].strip().lower(), threshold=float(parts[1]), label=label))
    return rules
