from __future__ import annotations

import numpy as np

from oddsfeed.utils.types import Point

class RingView:
    """
    Zero-copy view of the last N points.
    - If the buffer hasn't wrapped, slices is [(epoch, value)].
    - If it has wrapped, slices is [seg1, seg2] in time order.
    """
    __slots__ = ("slices", "length")
    def __init__(self, slices: list[tuple[np.ndarray, np.ndarray]] | None, length: int):
        self.slices = slices or []
        self.length = length

    def points(self) -> list[Point]:
        out: list[Point] = []
        for ep, val in self.slices:
            out.extend(Point(int(e), float(v)) for e, v in zip(ep.tolist(), val.tolist()))
        return out

class RingSeries:
    """
    Fixed-size circular buffer of (epoch second, price) samples for one instrument.
    Arrays:
      epoch[int64], value[float64]
    Ordering is the caller's job; the ring only keeps insertion order and
    overwrites the oldest sample when full.
    """
    __slots__ = ("capacity", "size", "head", "epoch", "value")
    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self.size = 0
        self.head = 0  # next write index
        self.epoch = np.empty(self.capacity, dtype=np.int64)
        self.value = np.empty(self.capacity, dtype=np.float64)

    def append(self, p: Point) -> None:
        i = self.head
        self.epoch[i] = p.ts
        self.value[i] = p.value
        self.head = (i + 1) % self.capacity
        if self.size < self.capacity:
            self.size += 1

    def clear(self) -> None:
        self.size = 0
        self.head = 0

    def last_epoch(self) -> int | None:
        if self.size == 0:
            return None
        idx = (self.head - 1) % self.capacity
        return int(self.epoch[idx])

    def last(self) -> Point | None:
        if self.size == 0:
            return None
        idx = (self.head - 1) % self.capacity
        return Point(int(self.epoch[idx]), float(self.value[idx]))

    def drop_before(self, cutoff_epoch: int) -> int:
        """Forget samples older than cutoff_epoch; assumes ascending epochs."""
        dropped = 0
        while self.size:
            if self.epoch[(self.head - self.size) % self.capacity] >= cutoff_epoch:
                break
            self.size -= 1
            dropped += 1
        return dropped

    def view_last(self, n: int) -> RingView:
        """
        Return up to last n samples as zero-copy slices in time order.
        Use RingView.slices which is a list of (epoch_slice, value_slice) tuples.
        """
        if self.size == 0:
            return RingView([], 0)
        n = int(n)
        if n <= 0:
            return RingView([], 0)
        n = min(n, self.size)

        end = self.head  # exclusive
        start = (end - n) % self.capacity

        if start < end:
            # contiguous
            sl = slice(start, end)
            return RingView([(self.epoch[sl], self.value[sl])], n)
        # wrapped: [start..cap) + [0..end)
        sl1 = slice(start, self.capacity)
        sl2 = slice(0, end)
        return RingView(
            [
                (self.epoch[sl1], self.value[sl1]),
                (self.epoch[sl2], self.value[sl2]),
            ],
            n,
        )

    def to_points(self) -> list[Point]:
        return self.view_last(self.size).points()
