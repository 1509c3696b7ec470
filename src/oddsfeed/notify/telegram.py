from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp
import structlog

from oddsfeed.alerts.formatting import format_alert_pretty
from oddsfeed.alerts.rules import AlertFired
from oddsfeed.notify.queue import NotifyQueue
from oddsfeed.utils.backoff import jitter

log = structlog.get_logger("telegram")

@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    chat_id: str                # personal chat id or group id
    api_base: str = "https://api.telegram.org"
    timeout_s: float = 8.0
    min_interval_s: float = 1.0  # one message per second per chat keeps us clear of 429s
    max_retries: int = 5
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0

class TelegramNotifier:
    """
    Background worker that drains a NotifyQueue of fired alerts and sends each
    one to a Telegram chat, spaced by min_interval_s, retrying 429/5xx and
    network errors with backoff.
    """
    def __init__(self, cfg: TelegramConfig, alerts_queue: NotifyQueue,
                 format_fn: Optional[Callable[[AlertFired], str]] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self.q = alerts_queue
        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._format_fn = format_fn or format_alert_pretty
        self._last_send = 0.0
        self.sent = 0
        self.failed = 0

    async def start(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        self._task = asyncio.create_task(self._loop(), name="telegram-notifier")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _loop(self):
        try:
            while True:
                evt = await self.q.next_alert()
                await self._pace()
                if await self.send_text(self._format_fn(evt)):
                    self.sent += 1
                else:
                    self.failed += 1
        except asyncio.CancelledError:
            return

    async def _pace(self):
        loop = asyncio.get_running_loop()
        wait = self._last_send + self.cfg.min_interval_s - loop.time()
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_send = loop.time()

    async def send_text(self, text: str) -> bool:
        assert self._session is not None
        url = f"{self.cfg.api_base}/bot{self.cfg.bot_token}/sendMessage"
        payload = {"chat_id": self.cfg.chat_id, "text": text}

        backoff = self.cfg.initial_backoff_s
        for attempt in range(1, self.cfg.max_retries + 1):
            try:
                async with self._session.post(url, data=payload) as resp:
                    if resp.status == 200:
                        return True
                    log.warning("telegram_send_failed", status=resp.status, attempt=attempt)
                    if resp.status == 429:
                        retry_after = await _retry_after(resp)
                        if retry_after:
                            await asyncio.sleep(retry_after)
                            continue
                    if resp.status != 429 and not 500 <= resp.status < 600:
                        # other 4xx: don't retry
                        return False
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("telegram_network_error", err=str(e), attempt=attempt)
            await asyncio.sleep(jitter(backoff))
            backoff = min(backoff * 2.0, self.cfg.max_backoff_s)
        log.error("telegram_give_up_after_retries")
        return False

async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    """Telegram puts the wait in parameters.retry_after (seconds)."""
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        return None
    ra = (data or {}).get("parameters", {}).get("retry_after")
    return float(ra) if ra else None
