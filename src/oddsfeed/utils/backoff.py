from __future__ import annotations

import random
from typing import Iterator

def next_backoff(prev: float, cap: float) -> float:
    """Exponential backoff progression with cap (no jitter)."""
    return min(prev * 2.0, cap)

def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    ratio=0 returns v unchanged (used by tests for deterministic delays).
    """
    if ratio <= 0:
        return v
    lo = 1.0 - ratio
    hi = 1.0 + ratio
    return v * (lo + (hi - lo) * random.random())

def backoff_iter(initial: float = 3.0, cap: float = 30.0) -> Iterator[float]:
    """
    Deterministic (no jitter) iterator of reconnect delays:
    3, 6, 12, 24, 30, 30, ... (capped).
    """
    v = initial
    while True:
        yield v
        v = next_backoff(v, cap)


class Backoff:
    """
    Stateful reconnect delay: starts at `initial`, doubles per failure up to `cap`,
    and goes back to `initial` after reset() (i.e. after a successful open).
    """
    __slots__ = ("initial", "cap", "ratio", "_it", "attempts")

    def __init__(self, initial: float, cap: float, *, ratio: float = 0.2):
        self.initial = float(initial)
        self.cap = max(float(cap), self.initial)
        self.ratio = ratio
        self._it = backoff_iter(self.initial, self.cap)
        self.attempts = 0

    def next_delay(self) -> float:
        self.attempts += 1
        return jitter(next(self._it), ratio=self.ratio)

    def reset(self) -> None:
        self._it = backoff_iter(self.initial, self.cap)
        self.attempts = 0
