from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from oddsfeed.alerts.rules import AlertFired

log = structlog.get_logger("notify_queue")


@dataclass(slots=True)
class BacklogStats:
    accepted: int = 0
    evicted: int = 0
    delivered: int = 0


class NotifyQueue:
    """
    Backlog of fired alerts between the AlertEngine (sync callbacks on the
    dispatch path) and slow async senders such as TelegramNotifier.

    offer() never blocks. With the backlog full, the oldest pending alert is
    evicted to make room: the newest crossing is the one the user acts on.
    The queue is callable, so it registers directly with on_alert().
    """
    def __init__(self, maxsize: int = 2000):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._pending: asyncio.Queue[AlertFired] = asyncio.Queue(maxsize=maxsize)
        self.stats = BacklogStats()

    def __call__(self, evt: AlertFired) -> None:
        self.offer(evt)

    def __len__(self) -> int:
        return self._pending.qsize()

    def offer(self, evt: AlertFired) -> Optional[AlertFired]:
        """Queue evt; returns the alert evicted to make room, if any."""
        evicted = None
        if self._pending.full():
            evicted = self._pending.get_nowait()
            self.stats.evicted += 1
            log.info("notify_backlog_evicted", rule_id=evicted.rule_id, label=evicted.label)
        self._pending.put_nowait(evt)
        self.stats.accepted += 1
        return evicted

    async def next_alert(self) -> AlertFired:
        evt = await self._pending.get()
        self.stats.delivered += 1
        return evt
