from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Hashable, Iterable, Optional

import structlog

from oddsfeed.data.ring_buffer import RingSeries
from oddsfeed.utils.types import Point

log = structlog.get_logger("store")


@dataclass(frozen=True, slots=True)
class Retention:
    """
    How much of a series to keep.

    max_points:     hard count bound (also the ring capacity)
    window_seconds: optional time bound relative to the newest point,
                    e.g. 60 for a fast spot feed; None keeps count-only retention
    """
    max_points: int = 500
    window_seconds: Optional[int] = None


DEFAULT_RETENTION = Retention()


class _Series:
    __slots__ = ("ring", "retention", "lock", "generation", "fresh")

    def __init__(self, retention: Retention):
        self.ring = RingSeries(retention.max_points)
        self.retention = retention
        self.lock = threading.Lock()
        self.generation: Optional[Hashable] = None
        # True after reset(): the next history batch replaces the contents
        self.fresh = True

    def apply_retention(self) -> None:
        w = self.retention.window_seconds
        last = self.ring.last_epoch()
        if w is not None and last is not None:
            self.ring.drop_before(last - w)


def nudge_forward(points: Iterable[Point]) -> list[Point]:
    """
    Turn an arbitrary historical batch into a strictly ascending series.

    The batch is stably sorted by timestamp, so equal timestamps keep arrival
    order. Any timestamp that is not greater than its predecessor is then moved
    to predecessor + 1. Every input point survives; timestamps may drift forward
    by a few seconds. Visual continuity wins over timestamp fidelity here.
    """
    ordered = sorted(points, key=lambda p: p.ts)
    out: list[Point] = []
    prev: Optional[int] = None
    for p in ordered:
        ts = p.ts if prev is None or p.ts > prev else prev + 1
        out.append(p if ts == p.ts else Point(ts, p.value))
        prev = ts
    return out


class TimeSeriesStore:
    """
    Per-instrument, append-only price series.

    Invariants per key:
      - timestamps strictly increase; a stale or duplicate append is rejected
        (returns False, nothing changes)
      - the series never exceeds its Retention bounds; truncation drops the
        oldest points and never reorders
    Every operation on a key holds that key's lock, so the check-then-write in
    append() is atomic for concurrent producers and readers get copies.
    Only the feed's dispatcher is meant to write to subscribed keys.
    """

    def __init__(self, default_retention: Retention = DEFAULT_RETENTION):
        self.default_retention = default_retention
        self._series: dict[str, _Series] = {}
        self._registry_lock = threading.Lock()

    # ---------------------------- lifecycle ---------------------------- #

    def _get(self, key: str) -> Optional[_Series]:
        return self._series.get(key)

    def _get_or_create(self, key: str) -> _Series:
        s = self._series.get(key)
        if s is None:
            with self._registry_lock:
                s = self._series.get(key)
                if s is None:
                    s = _Series(self.default_retention)
                    self._series[key] = s
        return s

    def reset(self, key: str, retention: Optional[Retention] = None) -> None:
        """Create or empty the series for key (new subscription / market switch)."""
        with self._registry_lock:
            s = self._series.get(key)
            if s is None or (retention is not None and retention != s.retention):
                self._series[key] = _Series(retention or (s.retention if s else self.default_retention))
                return
        with s.lock:
            s.ring.clear()
            s.generation = None
            s.fresh = True

    def evict(self, key: str) -> None:
        """Drop the series entirely (key unsubscribed)."""
        with self._registry_lock:
            self._series.pop(key, None)

    # ---------------------------- writes ---------------------------- #

    def append(self, key: str, point: Point) -> bool:
        s = self._get_or_create(key)
        with s.lock:
            last = s.ring.last_epoch()
            if last is not None and point.ts <= last:
                return False
            s.ring.append(point)
            s.fresh = False
            s.apply_retention()
            return True

    def load_history(
        self,
        key: str,
        points: Iterable[Point],
        generation: Optional[Hashable] = None,
    ) -> bool:
        """
        Apply a historical batch. Returns True when it replaced the series.

        Replacement (reseed) happens when the series is empty or freshly reset,
        when `generation` differs from the one stored with the series, or, if no
        generation is given, when the batch is less than half as long as the
        current series (a shorter history showing up under the same key usually
        means another instrument's history was loaded). Otherwise the batch is
        appended point by point and stale points are rejected as usual.
        """
        batch = list(points)
        s = self._get_or_create(key)
        with s.lock:
            current = s.ring.size
            if generation is not None:
                reseed = s.fresh or current == 0 or generation != s.generation
            else:
                reseed = s.fresh or current == 0 or len(batch) < current / 2
            if reseed:
                s.ring.clear()
                for p in nudge_forward(batch)[-s.retention.max_points:]:
                    s.ring.append(p)
                s.fresh = False
                s.apply_retention()
                if generation is not None:
                    s.generation = generation
                log.debug("series_reseeded", key=key, points=s.ring.size, generation=generation)
                return True

            accepted = 0
            for p in batch:
                last = s.ring.last_epoch()
                if last is not None and p.ts <= last:
                    continue
                s.ring.append(p)
                accepted += 1
            s.apply_retention()
            log.debug("series_extended", key=key, offered=len(batch), accepted=accepted)
            return False

    # ---------------------------- reads ---------------------------- #

    def latest(self, key: str) -> Optional[Point]:
        s = self._get(key)
        if s is None:
            return None
        with s.lock:
            return s.ring.last()

    def snapshot(self, key: str) -> list[Point]:
        s = self._get(key)
        if s is None:
            return []
        with s.lock:
            return s.ring.to_points()

    def size(self, key: str) -> int:
        s = self._get(key)
        return 0 if s is None else s.ring.size

    def keys(self) -> list[str]:
        return list(self._series)

    def __contains__(self, key: object) -> bool:
        return key in self._series

    def __len__(self) -> int:
        return len(self._series)
