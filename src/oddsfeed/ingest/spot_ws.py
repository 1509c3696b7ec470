from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

import structlog
from websockets.asyncio.client import connect as ws_connect

from oddsfeed.data.ring_buffer import RingSeries
from oddsfeed.upstream.binance import BinanceClient
from oddsfeed.utils.backoff import Backoff
from oddsfeed.utils.errors import FetchError
from oddsfeed.utils.time import to_epoch_seconds, utc_now_epoch
from oddsfeed.utils.types import Point


@dataclass(slots=True)
class SpotWSConfig:
    stream_url: str = "wss://ws-live-data.polymarket.com"
    symbol: str = "btcusdt"
    reconnect_delay_s: float = 3.0
    max_backoff_s: float = 30.0
    backoff_jitter: float = 0.0
    # REST fallback while the socket is down
    poll_interval_s: float = 1.0
    # chart window: the last minute of spot prices
    window_seconds: int = 60
    max_points: int = 600
    open_timeout_s: float = 10.0
    ping_interval_s: float = 20.0


def parse_crypto_price(raw, symbol: str) -> Optional[tuple[float, Optional[int]]]:
    """
    RTDS crypto_prices update -> (value, ts seconds) for `symbol`, else None.

    {"topic": "crypto_prices", "type": "update",
     "payload": {"symbol": "btcusdt", "value": 67000.1, "timestamp": 1700000000000}}
    Empty and non-JSON frames (keep-alives) return None.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("topic") != "crypto_prices" or data.get("type") != "update":
        return None
    payload = data.get("payload")
    if not isinstance(payload, dict) or str(payload.get("symbol", "")).lower() != symbol.lower():
        return None
    value = payload.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    return float(value), to_epoch_seconds(payload.get("timestamp"))


class SpotPriceWS:
    """
    Current spot price of the asset an instrument settles against (e.g. BTC for
    an "up or down" market). Push via the RTDS crypto_prices topic; while the
    socket is down the Binance REST ticker is polled instead. Keeps the last
    `window_seconds` of prices for a chart; no longer-term history.
    """
    def __init__(self, cfg: Optional[SpotWSConfig] = None, rest: Optional[BinanceClient] = None):
        self.cfg = cfg or SpotWSConfig()
        self.rest = rest
        self._log = structlog.get_logger("spot_ws")
        self._backoff = Backoff(self.cfg.reconnect_delay_s, self.cfg.max_backoff_s, ratio=self.cfg.backoff_jitter)
        self._ring = RingSeries(self.cfg.max_points)
        self._stop = asyncio.Event()
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self.connected = False
        self.current: Optional[float] = None

    def history(self) -> list[Point]:
        return self._ring.to_points()

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="spot-ws")
        if self.rest is not None:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="spot-poll")

    async def stop(self) -> None:
        self._stop.set()
        if self._ws is not None:
            try:
                await self._ws.close()
            except OSError as e:
                self._log.debug("spot_ws_close_error", err=str(e))
        for t in (self._task, self._poll_task):
            if t:
                t.cancel()
                try:
                    await t
                except asyncio.CancelledError:
                    pass
        self._task = self._poll_task = None

    def record(self, value: float, ts: Optional[int] = None) -> bool:
        """Same-second updates refresh `current` but add no chart point."""
        ts = ts if ts is not None else utc_now_epoch()
        self.current = value
        last = self._ring.last_epoch()
        if last is not None and ts <= last:
            return False
        self._ring.append(Point(ts, value))
        self._ring.drop_before(ts - self.cfg.window_seconds)
        return True

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                break
            except Exception as e:
                if self._stop.is_set():
                    break
                self._log.warning("spot_ws_error", err=str(e))
            finally:
                self.connected = False
                self._ws = None
            if self._stop.is_set():
                break
            delay = self._backoff.next_delay()
            self._log.info("spot_ws_reconnect_scheduled", delay_s=round(delay, 3))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self._log.info("spot_ws_loop_exit")

    async def _connect_and_stream(self) -> None:
        async with ws_connect(
            self.cfg.stream_url,
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
        ) as ws:
            self._ws = ws
            self.connected = True
            self._backoff.reset()
            # subscribe to the whole topic and filter the symbol client-side
            await ws.send(json.dumps({
                "action": "subscribe",
                "subscriptions": [{"topic": "crypto_prices", "type": "update"}],
            }))
            self._log.info("spot_ws_subscribed", symbol=self.cfg.symbol)
            async for raw in ws:
                parsed = parse_crypto_price(raw, self.cfg.symbol)
                if parsed is not None:
                    self.record(*parsed)

    async def _poll_loop(self) -> None:
        try:
            while not self._stop.is_set():
                if not self.connected:
                    await self.poll_once()
                await asyncio.sleep(self.cfg.poll_interval_s)
        except asyncio.CancelledError:
            return

    async def poll_once(self) -> Optional[float]:
        if self.rest is None:
            return None
        symbol = self.cfg.symbol.upper()
        try:
            px = await self.rest.ticker_price(symbol)
        except FetchError as e:
            self._log.debug("spot_poll_failed", err=str(e))
            return None
        if px is not None and not self.connected and not self._stop.is_set():
            self.record(px)
        return px
