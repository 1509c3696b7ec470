from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

log = structlog.get_logger("walker")


@dataclass(slots=True)
class WalkerConfig:
    max_offset: float = 10.0       # predicted stays within ±max_offset of the actual
    step: float = 0.15             # per-tick perturbation bound
    catch_up_threshold: float = 5.0
    lo: float = 0.0
    hi: float = 100.0
    tick_interval_s: float = 1.0


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


class PredictionWalker:
    """
    Synthetic "model prediction" overlay: a bounded random walk around the live
    chance (0..100).

    State is a single offset from the last known actual, always within
    [-max_offset, +max_offset]:
      - first non-null actual: offset ~ U[-max_offset, max_offset]
      - tick(): offset += U[-step, step], re-clamped
      - actual jumps by more than catch_up_threshold: offset kept (re-clamped),
        prediction recomputed right away
      - actual None: offset 0, prediction None, ticking stops
    """
    def __init__(self, cfg: Optional[WalkerConfig] = None, rng: Optional[random.Random] = None):
        self.cfg = cfg or WalkerConfig()
        self._rng = rng or random.Random()
        self.offset: float = 0.0
        self.last_actual: Optional[float] = None
        self.predicted: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.last_actual is not None

    def _recompute(self) -> float:
        c = self.cfg
        self.offset = _clamp(self.offset, -c.max_offset, c.max_offset)
        self.predicted = _clamp(self.last_actual + self.offset, c.lo, c.hi)
        return self.predicted

    def update(self, actual: Optional[float]) -> Optional[float]:
        if actual is None:
            self.offset = 0.0
            self.last_actual = None
            self.predicted = None
            return None
        actual = float(actual)
        if self.last_actual is None:
            self.offset = self._rng.uniform(-self.cfg.max_offset, self.cfg.max_offset)
            self.last_actual = actual
            return self._recompute()
        jumped = abs(actual - self.last_actual) > self.cfg.catch_up_threshold
        self.last_actual = actual
        if jumped:
            return self._recompute()
        # small move: the next tick picks up the new actual
        return self.predicted

    def tick(self) -> Optional[float]:
        if self.last_actual is None:
            return None
        self.offset += self._rng.uniform(-self.cfg.step, self.cfg.step)
        return self._recompute()


class PredictionTicker:
    """Drives PredictionWalker.tick() on a fixed period while the walker is active."""
    def __init__(self, walker: PredictionWalker,
                 on_value: Optional[Callable[[Optional[float]], None]] = None):
        self.walker = walker
        self.on_value = on_value
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="prediction-ticker")

    async def stop(self):
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self):
        try:
            while not self._stop.is_set():
                await asyncio.sleep(self.walker.cfg.tick_interval_s)
                if not self.walker.active:
                    continue
                value = self.walker.tick()
                if self.on_value is not None:
                    try:
                        self.on_value(value)
                    except Exception as e:
                        log.warning("prediction_callback_failed", err=str(e))
        except asyncio.CancelledError:
            return
