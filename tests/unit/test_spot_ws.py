import json

import pytest

from oddsfeed.ingest.spot_ws import SpotPriceWS, SpotWSConfig, parse_crypto_price
from oddsfeed.utils.errors import FetchError
from oddsfeed.utils.types import Point
from tests.helpers.fake_ws import FakeConnect, FakeWS, wait_until


def _update(symbol, value, ts_ms):
    return {"topic": "crypto_prices", "type": "update",
            "payload": {"symbol": symbol, "value": value, "timestamp": ts_ms}}


class FakeTicker:
    def __init__(self, price=None, fail=False):
        self.price = price
        self.fail = fail
        self.calls = 0

    async def ticker_price(self, symbol="BTCUSDT"):
        self.calls += 1
        if self.fail:
            raise FetchError("down", status=502)
        return self.price


@pytest.fixture
def fake_connect(monkeypatch):
    import oddsfeed.ingest.spot_ws as spot_ws
    conn = FakeConnect()
    monkeypatch.setattr(spot_ws, "ws_connect", conn)
    return conn


def test_parse_crypto_price():
    raw = json.dumps(_update("btcusdt", 67000.1, 1700000000123))
    assert parse_crypto_price(raw, "btcusdt") == (67000.1, 1700000000)
    assert parse_crypto_price(raw, "ethusdt") is None
    assert parse_crypto_price("", "btcusdt") is None
    assert parse_crypto_price("PONG", "btcusdt") is None
    assert parse_crypto_price(json.dumps(_update("btcusdt", 0, 1)), "btcusdt") is None
    assert parse_crypto_price(json.dumps({"topic": "other", "type": "update"}), "btcusdt") is None

def test_record_keeps_one_minute_window():
    spot = SpotPriceWS(SpotWSConfig(window_seconds=60))
    assert spot.record(100.0, 1000)
    assert spot.record(101.0, 1030)
    assert not spot.record(102.0, 1030)     # same second: current only
    assert spot.current == 102.0
    assert spot.record(103.0, 1070)
    assert spot.history() == [Point(1030, 101.0), Point(1070, 103.0)]

@pytest.mark.asyncio
async def test_stream_subscribes_and_records(fake_connect):
    ws = FakeWS(scripted=[_update("btcusdt", 67000.0, 1700000000000), _update("ethusdt", 3500.0, 1700000000000)])
    fake_connect.sockets.append(ws)
    spot = SpotPriceWS(SpotWSConfig(stream_url="wss://example.test", reconnect_delay_s=0.05))

    await spot.start()
    await wait_until(lambda: spot.current is not None)
    assert spot.connected
    assert spot.current == 67000.0
    assert ws.sent_json()[0]["subscriptions"] == [{"topic": "crypto_prices", "type": "update"}]

    await spot.stop()
    assert ws.closed
    assert not spot.connected

@pytest.mark.asyncio
async def test_stream_reconnects_after_drop(fake_connect):
    ws1 = FakeWS()
    ws2 = FakeWS(scripted=[_update("btcusdt", 68000.0, 1700000001000)])
    fake_connect.sockets.extend([ws1, ws2])
    spot = SpotPriceWS(SpotWSConfig(stream_url="wss://example.test", reconnect_delay_s=0.05))

    await spot.start()
    await wait_until(lambda: spot.connected)
    ws1.drop()
    await wait_until(lambda: spot.current == 68000.0)
    assert len(fake_connect.calls) == 2
    await spot.stop()

@pytest.mark.asyncio
async def test_rest_poll_only_while_disconnected():
    rest = FakeTicker(price=66000.0)
    spot = SpotPriceWS(SpotWSConfig(), rest=rest)
    assert await spot.poll_once() == 66000.0
    assert spot.current == 66000.0

    spot.connected = True
    spot.current = None
    await spot.poll_once()
    assert spot.current is None

@pytest.mark.asyncio
async def test_rest_poll_failure_is_quiet():
    spot = SpotPriceWS(SpotWSConfig(), rest=FakeTicker(fail=True))
    assert await spot.poll_once() is None
    assert spot.current is None
