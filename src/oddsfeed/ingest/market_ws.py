from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from oddsfeed.data.store import TimeSeriesStore
from oddsfeed.ingest import parser
from oddsfeed.pricing.normalize import normalize, to_point
from oddsfeed.utils.backoff import Backoff
from oddsfeed.utils.errors import ConfigurationError, FetchError, MalformedMessage, TransportError
from oddsfeed.utils.time import utc_now_epoch, utc_now_s
from oddsfeed.utils.types import ConnectionState, Observation, Point

PointListener = Callable[[str, Point], None]


class HistorySource(Protocol):
    async def price_history(self, token_id: str, interval: str = "1d") -> list[Point]: ...
    async def latest_price(self, token_id: str) -> Optional[Point]: ...


@dataclass(slots=True)
class MarketWSConfig:
    stream_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    # reconnect behavior: first retry after reconnect_delay_s, doubling up to max_backoff_s
    reconnect_delay_s: float = 3.0
    max_backoff_s: float = 30.0
    backoff_jitter: float = 0.2
    # fallback pull while no push connection is up
    poll_interval_s: float = 30.0
    # history seeding on new subscriptions
    seed_history: bool = True
    history_interval: str = "1d"
    # book snapshots only seed a series that has no points yet
    seed_from_book: bool = True
    # the server expects a text "PING" roughly every 10s; also our staleness check period
    keepalive_s: float = 10.0
    expect_heartbeat_s: float = 60.0
    # timeouts
    open_timeout_s: float = 10.0
    close_timeout_s: float = 2.0
    ping_interval_s: float = 20.0
    # queue limits
    inbox_maxsize: int = 10_000


@dataclass(slots=True)
class FeedStats:
    messages: int = 0
    malformed: int = 0
    appended: int = 0
    stale_dropped: int = 0
    unsubscribed_dropped: int = 0
    inbox_dropped: int = 0
    polls: int = 0
    poll_failures: int = 0
    connects: int = 0
    reconnects_scheduled: int = 0


class MarketWS:
    """
    Feed subscription manager for the Polymarket CLOB market channel.

    Owns zero-or-one push connection and multiplexes every subscribed
    instrument key over it. Inbound frames are parsed into observations, queued,
    and applied by a single dispatch task: normalize -> store.append -> notify
    point listeners. A stale or duplicate point is dropped without error.

    Lifecycle:
      DISCONNECTED --subscribe--> CONNECTING --open--> SUBSCRIBED
      SUBSCRIBED --unexpected close--> DISCONNECTED + scheduled reconnect
      SUBSCRIBED --unsubscribe all / dispose()--> CLOSING --> DISCONNECTED
      Key-set changes while SUBSCRIBED re-send the subscription, no reconnect.

    Notes:
      - While no push connection is up, a poll task pulls the latest history
        point per key every poll_interval_s and feeds it through the same path.
      - Newly subscribed keys get their series reset and, with a history
        source, seeded from the 1d price history.
      - Reconnect and poll timers are tasks owned by this instance; dispose()
        cancels them and marks the close intentional before closing the socket.

    Usage:
        ws = MarketWS(MarketWSConfig(), store, history=ClobClient())
        ws.add_listener(lambda key, point: ...)
        await ws.subscribe(["<token id>"])
        ...
        await ws.dispose()
    """

    def __init__(
        self,
        cfg: MarketWSConfig,
        store: TimeSeriesStore,
        history: Optional[HistorySource] = None,
    ):
        self.cfg = cfg
        self.store = store
        self.history = history

        self._log = structlog.get_logger("market_ws")
        self._keys: set[str] = set()
        # subscription generation per key; history loads tagged with it replace the series
        self._generations: dict[str, int] = {}
        self._subscription_seq = itertools.count(1)
        self._listeners: list[PointListener] = []
        self._inbox: asyncio.Queue[Observation] = asyncio.Queue(maxsize=cfg.inbox_maxsize)
        self._backoff = Backoff(cfg.reconnect_delay_s, cfg.max_backoff_s, ratio=cfg.backoff_jitter)

        self.state: ConnectionState = ConnectionState.DISCONNECTED
        self.stats = FeedStats()
        self._ws = None
        self._last_msg_ts: float = 0.0
        self._intentional_close = False
        self._disposed = False

        self._conn_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._seed_tasks: set[asyncio.Task] = set()

    # ---------------------------- public API ---------------------------- #

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(self._keys)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def add_listener(self, fn: PointListener) -> None:
        self._listeners.append(fn)

    async def subscribe(self, keys: Iterable[str]) -> None:
        if self._disposed:
            raise RuntimeError("MarketWS is disposed")
        wanted = [k.strip() for k in keys if k and k.strip()]
        if not wanted and not self._keys:
            raise ConfigurationError("no instrument key to subscribe")
        new = [k for k in dict.fromkeys(wanted) if k not in self._keys]
        if not new:
            return

        self._keys.update(new)
        for k in new:
            self._generations[k] = next(self._subscription_seq)
            self.store.reset(k)
            if self.history is not None and self.cfg.seed_history:
                self._spawn_seed(k)
        self._ensure_background()
        self._log.info("keys_subscribed", added=new, total=len(self._keys))

        if self.state is ConnectionState.SUBSCRIBED:
            await self._resend_subscription()
        elif self.state is ConnectionState.DISCONNECTED and not self.reconnect_pending:
            self._intentional_close = False
            self._open()
        # CONNECTING: the open handshake sends the full key set.
        # CLOSING: the connection task reopens on exit since keys are non-empty.

    async def unsubscribe(self, keys: Iterable[str]) -> None:
        # The intended set changes before any await so queued messages for
        # removed keys are dropped by the dispatcher.
        removed = [k for k in keys if k in self._keys]
        if not removed:
            return
        self._keys.difference_update(removed)
        for k in removed:
            self._generations.pop(k, None)
            self.store.evict(k)
        self._log.info("keys_unsubscribed", removed=removed, total=len(self._keys))

        if not self._keys:
            await self._close_intentionally()
        elif self.state is ConnectionState.SUBSCRIBED:
            await self._resend_subscription()

    async def dispose(self) -> None:
        """Tear down: no reconnect, no late poll results, all tasks cancelled."""
        if self._disposed:
            return
        self._disposed = True
        self._intentional_close = True
        self._cancel_reconnect()
        await self._close_intentionally()
        tasks = [t for t in (self._poll_task, self._dispatch_task, *self._seed_tasks) if t]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._seed_tasks.clear()
        self._log.info("market_ws_disposed", stats=self.stats)

    # --------------------------- connection ------------------------- #

    def _open(self) -> None:
        if self._conn_task is not None and not self._conn_task.done():
            # zero-or-one connection: the live task picks up the current key set
            return
        self.state = ConnectionState.CONNECTING
        self._conn_task = asyncio.create_task(self._connection_main(), name="market-ws-conn")

    async def _connection_main(self) -> None:
        try:
            await self._connect_and_stream()
        except asyncio.CancelledError:
            # cancelled by _close_intentionally() while still connecting
            self._log.info("ws_connection_cancelled")
        except TransportError as e:
            self._log.warning("ws_closed_unexpectedly", err=str(e))
        except Exception as e:
            if self._intentional_close:
                self._log.info("ws_closed", reason=str(e))
            else:
                self._log.warning("ws_transport_error", err=str(e), err_type=type(e).__name__)
        self._handle_close()

    async def _connect_and_stream(self) -> None:
        url = self.cfg.stream_url
        self._log.info("ws_connecting", url=url, keys=len(self._keys))
        async with ws_connect(
            url,
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
            ping_timeout=None,
            close_timeout=self.cfg.close_timeout_s,
        ) as ws:
            self._ws = ws
            self.stats.connects += 1
            if self._intentional_close or not self._keys:
                return
            await self._send_subscription(ws)
            self.state = ConnectionState.SUBSCRIBED
            self._backoff.reset()
            self._last_msg_ts = utc_now_s()
            self._log.info("ws_subscribed", keys=sorted(self._keys))
            await self._stream_loop(ws)

    async def _stream_loop(self, ws) -> None:
        while not self._disposed:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.cfg.keepalive_s)
            except asyncio.TimeoutError:
                await ws.send("PING")
                age = utc_now_s() - self._last_msg_ts
                if age > self.cfg.expect_heartbeat_s:
                    self._log.warning("ws_stale_no_messages", age_s=round(age, 3))
                continue
            except ConnectionClosed as e:
                if self._intentional_close:
                    return
                raise TransportError(f"connection closed: {e}") from e
            self._last_msg_ts = utc_now_s()
            self.stats.messages += 1
            self._handle_frame(raw)

    def _handle_close(self) -> None:
        self._ws = None
        self._conn_task = None
        if self._intentional_close or self._disposed or not self._keys:
            self.state = ConnectionState.DISCONNECTED
            if not self._disposed and self._keys:
                # re-subscribed while the previous connection was closing
                self._intentional_close = False
                self._open()
            return
        self.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    async def _close_intentionally(self) -> None:
        self._intentional_close = True
        self._cancel_reconnect()
        task = self._conn_task
        if task is None or task.done():
            self.state = ConnectionState.DISCONNECTED
            return
        self.state = ConnectionState.CLOSING
        ws = self._ws
        if ws is None:
            # still connecting; nothing to close gracefully
            task.cancel()
        else:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                self._log.debug("ws_close_error", err=str(e))
        done, _ = await asyncio.wait({task}, timeout=self.cfg.close_timeout_s)
        if not done:
            task.cancel()
            await asyncio.wait({task})
        # _handle_close owns the state once the task ran; it may already have
        # reopened for keys subscribed while we were closing
        if self._conn_task is task:
            self._conn_task = None
            self._ws = None
            self.state = ConnectionState.DISCONNECTED
            if self._keys and not self._disposed:
                # cancelled before it ever ran, so _handle_close never saw the new keys
                self._intentional_close = False
                self._open()

    # ---------------------------- reconnect ---------------------------- #

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        delay = self._backoff.next_delay()
        self.stats.reconnects_scheduled += 1
        self._log.warning("ws_reconnect_scheduled", delay_s=round(delay, 3), attempt=self._backoff.attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="market-ws-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._reconnect_task = None
        if self._disposed or self._intentional_close or not self._keys:
            return
        if self.state is ConnectionState.DISCONNECTED:
            self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    # --------------------------- subscription --------------------------- #

    async def _send_subscription(self, ws) -> None:
        msg = {"type": "market", "assets_ids": sorted(self._keys)}
        await ws.send(json.dumps(msg))

    async def _resend_subscription(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await self._send_subscription(ws)
            self._log.info("ws_resubscribed", keys=sorted(self._keys))
        except (ConnectionClosed, OSError) as e:
            # the stream loop sees the same close and takes the reconnect path
            self._log.warning("ws_resubscribe_failed", err=str(e))

    # ------------------------- inbound handling ------------------------- #

    def _handle_frame(self, raw) -> None:
        try:
            msgs = parser.decode_frame(raw)
        except MalformedMessage as e:
            self.stats.malformed += 1
            self._log.warning("ws_frame_malformed", err=str(e), snippet=str(raw)[:200])
            return
        now = utc_now_epoch()
        for m in msgs:
            try:
                observations = parser.parse_market_msg(m, now_s=now)
            except MalformedMessage as e:
                self.stats.malformed += 1
                self._log.warning("ws_message_malformed", err=str(e), snippet=str(m)[:200])
                continue
            for obs in observations:
                if obs.key in self._keys:
                    self._enqueue(obs)
                else:
                    self.stats.unsubscribed_dropped += 1

    def _enqueue(self, obs: Observation) -> None:
        try:
            self._inbox.put_nowait(obs)
        except asyncio.QueueFull:
            # the next event for this key carries a fresher price anyway
            self.stats.inbox_dropped += 1
            self._log.info("inbox_full_drop", key=obs.key, kind=obs.kind)

    async def _dispatch_loop(self) -> None:
        try:
            while True:
                obs = await self._inbox.get()
                self.apply(obs)
        except asyncio.CancelledError:
            return

    def apply(self, obs: Observation) -> bool:
        """Normalize one observation and append it. False when it was dropped."""
        if self._disposed or obs.key not in self._keys:
            self.stats.unsubscribed_dropped += 1
            return False
        if obs.kind == "snapshot":
            if not self.cfg.seed_from_book or self.store.latest(obs.key) is not None:
                return False
        point = to_point(obs)
        if not self.store.append(obs.key, point):
            self.stats.stale_dropped += 1
            return False
        self.stats.appended += 1
        self._notify(obs.key, point)
        return True

    def _notify(self, key: str, point: Point) -> None:
        for fn in self._listeners:
            try:
                fn(key, point)
            except Exception as e:
                self._log.warning("point_listener_failed", key=key, err=str(e))

    # ------------------------- pull paths ------------------------- #

    def _ensure_background(self) -> None:
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name="market-ws-dispatch")
        if self.history is not None and (self._poll_task is None or self._poll_task.done()):
            self._poll_task = asyncio.create_task(self._poll_loop(), name="market-ws-poll")

    async def _poll_loop(self) -> None:
        try:
            while not self._disposed:
                await asyncio.sleep(self.cfg.poll_interval_s)
                await self.poll_once()
        except asyncio.CancelledError:
            return

    async def poll_once(self) -> int:
        """
        One fallback tick: fetch the latest point per subscribed key and queue it.
        Does nothing while the push connection is subscribed. Returns how many
        observations were queued.
        """
        if self.history is None or self._disposed or self.state is ConnectionState.SUBSCRIBED:
            return 0
        queued = 0
        for key in sorted(self._keys):
            self.stats.polls += 1
            try:
                point = await self.history.latest_price(key)
            except FetchError as e:
                self.stats.poll_failures += 1
                self._log.warning("poll_fetch_failed", key=key, err=str(e))
                continue
            if self._disposed or key not in self._keys:
                self._log.debug("poll_result_discarded", key=key)
                continue
            if point is None:
                continue
            self._enqueue(Observation(key=key, ts=point.ts, last_trade=point.value, kind="poll"))
            queued += 1
        return queued

    def _spawn_seed(self, key: str) -> None:
        t = asyncio.create_task(self.seed_history(key), name=f"market-ws-seed-{key[:12]}")
        self._seed_tasks.add(t)
        t.add_done_callback(self._seed_tasks.discard)

    async def seed_history(self, key: str) -> bool:
        """
        Load the key's history into the store. Live points that arrived while the
        fetch was in flight are kept on top of the loaded history.
        """
        if self.history is None:
            return False
        try:
            points = await self.history.price_history(key, self.cfg.history_interval)
        except FetchError as e:
            self._log.warning("history_seed_failed", key=key, err=str(e))
            return False
        if self._disposed or key not in self._keys:
            self._log.debug("history_seed_discarded", key=key)
            return False
        if not points:
            if self.store.latest(key) is not None:
                self._log.info("history_empty", key=key)
                return False
            # no history and nothing live yet: start from the no-information price
            # so the chart has a value; listeners are not told about a placeholder
            placeholder = Point(utc_now_epoch(), normalize())
            self.store.load_history(key, [placeholder], generation=self._generations.get(key))
            self._log.info("history_empty_seeded_default", key=key, value=placeholder.value)
            return True
        last_hist = max(p.ts for p in points)
        live = [p for p in self.store.snapshot(key) if p.ts > last_hist]
        self.store.load_history(key, points + live, generation=self._generations.get(key))
        self._log.info("history_seeded", key=key, points=len(points), live_kept=len(live))
        latest = self.store.latest(key)
        if latest is not None:
            self._notify(key, latest)
        return True

    # --------------------------- helpers -------------------------------- #

    def healthy(self) -> bool:
        if self.state is not ConnectionState.SUBSCRIBED:
            return False
        return (utc_now_s() - self._last_msg_ts) <= self.cfg.expect_heartbeat_s

    def last_message_age_s(self) -> float:
        return max(0.0, utc_now_s() - self._last_msg_ts) if self._last_msg_ts else float("inf")
