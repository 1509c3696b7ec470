from __future__ import annotations

from typing import Iterable, Optional

import structlog

from oddsfeed.alerts.engine import AlertCallback, AlertEngine
from oddsfeed.alerts.rules import AlertRule
from oddsfeed.data.store import Retention, TimeSeriesStore
from oddsfeed.ingest.market_ws import HistorySource, MarketWS, MarketWSConfig
from oddsfeed.signal.walker import PredictionTicker, PredictionWalker
from oddsfeed.upstream.gamma import GammaClient, ResolvedMarket
from oddsfeed.utils.errors import ConfigurationError, ResolveError
from oddsfeed.utils.time import utc_now_epoch
from oddsfeed.utils.types import Direction, Observation, Point

log = structlog.get_logger("feed")


class PriceFeed:
    """
    What the rest of the application talks to.

    Wires MarketWS -> TimeSeriesStore -> {AlertEngine, PredictionWalker}. One
    subscribed key is the primary instrument: its new latest points drive alert
    evaluation and the prediction overlay. Other keys are tracked and charted
    only.

    Failures never raise out of here during normal operation: resolution and
    configuration problems land in `error`, transport and fetch problems are
    retried by MarketWS and leave the last known data in place.
    """

    def __init__(
        self,
        ws_cfg: Optional[MarketWSConfig] = None,
        *,
        store: Optional[TimeSeriesStore] = None,
        history: Optional[HistorySource] = None,
        resolver: Optional[GammaClient] = None,
        walker: Optional[PredictionWalker] = None,
        retention: Optional[Retention] = None,
    ):
        self.store = store or TimeSeriesStore(retention or Retention())
        self.ws = MarketWS(ws_cfg or MarketWSConfig(), self.store, history=history)
        self.engine = AlertEngine()
        self.walker = walker or PredictionWalker()
        self.ticker = PredictionTicker(self.walker)
        self.resolver = resolver

        self.primary_key: Optional[str] = None
        self.market: Optional[ResolvedMarket] = None
        self.error: Optional[str] = None
        self.loading = False
        self._started = False

        self.ws.add_listener(self._on_point)

    # ---------------------------- lifecycle ---------------------------- #

    async def start(self, keys: Iterable[str] = ()) -> None:
        if not self._started:
            await self.ticker.start()
            self._started = True
        keys = list(keys)
        if keys:
            await self.subscribe(keys)

    async def dispose(self) -> None:
        await self.ticker.stop()
        await self.ws.dispose()
        self.walker.update(None)
        self._started = False

    # ---------------------------- subscriptions ---------------------------- #

    async def subscribe(self, keys: Iterable[str]) -> None:
        keys = [k for k in keys if k and k.strip()]
        try:
            await self.ws.subscribe(keys)
        except ConfigurationError as e:
            self.error = str(e)
            log.error("feed_configuration_error", err=self.error)
            return
        if self.primary_key is None and keys:
            self.primary_key = keys[0].strip()

    async def unsubscribe(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        await self.ws.unsubscribe(keys)
        if self.primary_key in keys:
            remaining = sorted(self.ws.keys)
            self.primary_key = remaining[0] if remaining else None
            self.walker.update(None)
            latest = self.latest_point()
            if latest is not None:
                self.walker.update(latest.value * 100.0)

    async def open_market(self, slug_or_url: str) -> Optional[ResolvedMarket]:
        """
        Resolve a slug/URL and make its first outcome token the primary
        instrument (a market switch: the previous primary is unsubscribed).
        On failure `error` carries the reason and nothing is subscribed.
        """
        if self.resolver is None:
            self.error = "no market resolver configured"
            return None
        self.loading, self.error = True, None
        try:
            market = await self.resolver.resolve(slug_or_url)
        except ResolveError as e:
            self.error = str(e)
            log.warning("market_open_failed", slug=slug_or_url, err=self.error)
            return None
        finally:
            self.loading = False

        previous = self.primary_key
        if previous and previous != market.token_id:
            self.primary_key = None
            await self.unsubscribe([previous])
        self.market = market
        self.primary_key = market.token_id
        await self.subscribe([market.token_id])
        if self.error is None and any(v is not None for v in (market.best_bid, market.best_ask, market.last_trade)):
            # quote from the resolver seeds the series until the stream delivers
            self.ws.apply(Observation(
                key=market.token_id, ts=utc_now_epoch(), bid=market.best_bid,
                ask=market.best_ask, last_trade=market.last_trade, kind="snapshot",
            ))
        return market

    # ---------------------------- outbound surface ---------------------------- #

    def latest_point(self, key: Optional[str] = None) -> Optional[Point]:
        key = key or self.primary_key
        return self.store.latest(key) if key else None

    def history(self, key: Optional[str] = None) -> list[Point]:
        key = key or self.primary_key
        return self.store.snapshot(key) if key else []

    def predicted_value(self) -> Optional[float]:
        return self.walker.predicted

    def on_alert(self, callback: AlertCallback) -> None:
        self.engine.on_alert(callback)

    def add_alert(self, direction: Direction, threshold: float, label: Optional[str] = None) -> AlertRule:
        return self.engine.add_rule(direction, threshold, label)

    def remove_alert(self, rule_id: str) -> bool:
        return self.engine.remove_rule(rule_id)

    def alerts(self) -> list[AlertRule]:
        return self.engine.rules()

    # ---------------------------- internals ---------------------------- #

    def _on_point(self, key: str, point: Point) -> None:
        if key != self.primary_key:
            return
        self.engine.evaluate(point.value, ts=point.ts)
        self.walker.update(point.value * 100.0)
