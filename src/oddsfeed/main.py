# src/oddsfeed/main.py
import asyncio
import os
import signal

import structlog

from oddsfeed.alerts.formatting import fmt_price, format_alert_pretty
from oddsfeed.alerts.notifiers import ConsoleNotifier
from oddsfeed.config import Settings
from oddsfeed.data.store import Retention
from oddsfeed.feed import PriceFeed
from oddsfeed.ingest.spot_ws import SpotPriceWS
from oddsfeed.notify.queue import NotifyQueue
from oddsfeed.notify.telegram import TelegramNotifier
from oddsfeed.upstream.binance import BinanceClient
from oddsfeed.upstream.clob import ClobClient
from oddsfeed.upstream.gamma import GammaClient
from oddsfeed.utils.errors import ConfigurationError
from oddsfeed.utils.logs import configure_logging

log = structlog.get_logger()


# ---------------------------
# Optional: live status printer
# ---------------------------

async def status_printer(feed: PriceFeed, spot: SpotPriceWS | None, every_s: float):
    """Print the primary instrument's latest value and the prediction. Toggle with PRINT_POINTS=1."""
    while True:
        await asyncio.sleep(every_s)
        p = feed.latest_point()
        if p is None:
            continue
        parts = [f"{feed.primary_key[:12]}… t={p.ts}", f"price={fmt_price(p.value)}"]
        pred = feed.predicted_value()
        if pred is not None:
            parts.append(f"model={pred:.1f}%")
        if spot is not None and spot.current is not None:
            parts.append(f"spot={spot.current:.2f}")
        parts.append(f"ws={feed.ws.state.value}")
        age = feed.ws.last_message_age_s()
        if age != float("inf"):
            parts.append(f"last_msg={age:.0f}s")
        print(" ".join(parts), flush=True)


# ---------------------------
# Main
# ---------------------------

async def main():
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging()
        log.error("configuration_error", err=str(e))
        return 2
    configure_logging(settings.log_level)

    if not settings.market_slug and not settings.token_ids:
        log.error("configuration_error", err="set MARKET_SLUG or TOKEN_IDS")
        return 2

    clob = ClobClient(settings.clob_api_url)
    gamma = GammaClient(settings.gamma_api_url)
    feed = PriceFeed(
        settings.market_ws,
        history=clob,
        resolver=gamma,
        retention=Retention(max_points=settings.series_max_points),
    )

    # ----- Notifications -----
    feed.on_alert(ConsoleNotifier(format_fn=format_alert_pretty))
    tg_notifier = None
    if settings.telegram is not None:
        notify_q = NotifyQueue(maxsize=2000)
        feed.on_alert(notify_q)  # never blocks the dispatch path
        tg_notifier = TelegramNotifier(settings.telegram, notify_q)
        await tg_notifier.start()
        log.info("telegram_enabled")
    for rule in settings.alerts:
        feed.engine.add(rule)

    # ----- Spot reference (optional) -----
    spot = None
    binance = None
    if settings.enable_spot:
        binance = BinanceClient()
        spot = SpotPriceWS(settings.spot, rest=binance)
        await spot.start()

    # ----- Feed -----
    await feed.start()
    if settings.market_slug:
        market = await feed.open_market(settings.market_slug)
        if market is None:
            log.error("market_unavailable", err=feed.error)
        else:
            log.info("market_opened", question=market.question, token_id=market.token_id)
    if settings.token_ids:
        await feed.subscribe(settings.token_ids)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    tasks = []
    if os.getenv("PRINT_POINTS", "0").lower() in ("1", "true", "yes"):
        tasks.append(asyncio.create_task(status_printer(feed, spot, 5.0), name="status-printer"))

    try:
        if feed.error is None or feed.ws.keys:
            await stop.wait()
    finally:
        # graceful shutdown to avoid unclosed sessions
        for t in tasks:
            t.cancel()
        await feed.dispose()
        if spot is not None:
            await spot.stop()
        if tg_notifier is not None:
            await tg_notifier.stop()
        for client in (clob, gamma, binance):
            if client is not None:
                await client.close()
    return 0 if feed.error is None else 1


def run():
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
