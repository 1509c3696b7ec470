import pytest

from oddsfeed.upstream.binance import BinanceClient
from oddsfeed.upstream.clob import ClobClient, parse_history
from oddsfeed.upstream.gamma import GammaClient, market_from_payload, parse_token_ids, slug_from_input
from oddsfeed.utils.errors import FetchError, ResolveError
from oddsfeed.utils.types import Point

# ---- CLOB price history ----

def test_parse_history_keeps_upstream_order_and_normalizes():
    data = {"history": [{"t": 1700000060, "p": 0.4213}, {"t": 1700000000, "p": 0.5}, {"t": None, "p": 0.3}]}
    assert parse_history(data) == [Point(1700000060, 0.421), Point(1700000000, 0.5)]

def test_parse_history_accepts_ms_timestamps_and_bare_lists():
    assert parse_history([{"t": 1700000000000, "p": "0.25"}]) == [Point(1700000000, 0.25)]

def test_parse_history_errors():
    with pytest.raises(FetchError):
        parse_history({"error": "invalid market"})
    with pytest.raises(FetchError):
        parse_history({"nothing": []})

@pytest.mark.asyncio
async def test_price_history_request(monkeypatch):
    client = ClobClient("https://clob.example")
    calls = []

    async def fake_get_json(path, params=None):
        calls.append((path, params))
        return {"history": [{"t": 1, "p": 0.1}, {"t": 2, "p": 0.2}]}

    monkeypatch.setattr(client, "get_json", fake_get_json)
    assert await client.latest_price("tok") == Point(2, 0.2)
    path, params = calls[0]
    assert path == "/prices-history"
    assert params["market"] == "tok" and params["interval"] == "1h"

    with pytest.raises(FetchError):
        await client.price_history("  ")

# ---- Gamma market resolution ----

@pytest.mark.parametrize("text, slug", [
    ("will-btc-hit-100k", "will-btc-hit-100k"),
    ("https://polymarket.com/event/fed-decision-in-march", "fed-decision-in-march"),
    ("https://polymarket.com/event/fed-decision/fed-cuts-25bps?tid=1", "fed-cuts-25bps"),
    ("polymarket.com/market/btc-up-or-down", "btc-up-or-down"),
    ("https-everywhere-2024", "https-everywhere-2024"),
])
def test_slug_from_input(text, slug):
    assert slug_from_input(text) == slug

@pytest.mark.parametrize("text", ["", "   ", "not a slug!", "https://polymarket.com/"])
def test_slug_from_input_rejects(text):
    with pytest.raises(ResolveError):
        slug_from_input(text)

def test_parse_token_ids_shapes():
    assert parse_token_ids('["1", "2"]') == ["1", "2"]
    assert parse_token_ids(["1", 2]) == ["1", "2"]
    assert parse_token_ids("1, 2") == ["1", "2"]
    assert parse_token_ids(None) == []

def test_market_from_event_payload():
    event = {
        "slug": "fed-decision",
        "title": "Fed decision",
        "markets": [
            {"question": "Cut 25bps?", "slug": "cut-25", "conditionId": "0xc1",
             "clobTokenIds": '["111", "112"]', "bestBid": "0.41", "bestAsk": 0.43, "lastTradePrice": 0.42},
            {"question": "No change?", "clobTokenIds": '["221", "222"]'},
        ],
    }
    m = market_from_payload(event, "fed-decision")
    assert m.token_id == "111"
    assert m.question == "Cut 25bps?"
    assert m.slug == "cut-25"
    assert m.condition_id == "0xc1"
    assert (m.best_bid, m.best_ask, m.last_trade) == (0.41, 0.43, 0.42)
    assert m.sibling_token_ids == ["112", "221"]

def test_market_without_tokens_is_rejected():
    with pytest.raises(ResolveError):
        market_from_payload({"conditionId": "0x1", "clobTokenIds": None}, "s")
    with pytest.raises(ResolveError):
        market_from_payload([], "s")

@pytest.mark.asyncio
async def test_resolve_falls_back_to_markets_endpoint(monkeypatch):
    client = GammaClient("https://gamma.example")
    paths = []

    async def fake_get_json(path, params=None):
        paths.append((path, params))
        if path.startswith("/events/"):
            raise FetchError("not found", status=404)
        return [{"question": "Q?", "slug": "s", "clobTokenIds": ["9"]}]

    monkeypatch.setattr(client, "get_json", fake_get_json)
    m = await client.resolve("https://polymarket.com/event/s")
    assert m.token_id == "9"
    assert paths == [("/events/slug/s", None), ("/markets", {"slug": "s"})]

@pytest.mark.asyncio
async def test_resolve_failure_is_resolve_error(monkeypatch):
    client = GammaClient("https://gamma.example")

    async def fake_get_json(path, params=None):
        raise FetchError("down", status=503)

    monkeypatch.setattr(client, "get_json", fake_get_json)
    with pytest.raises(ResolveError):
        await client.resolve("some-slug")

# ---- Binance ticker ----

@pytest.mark.asyncio
async def test_binance_ticker(monkeypatch):
    client = BinanceClient()

    async def fake_get_json(path, params=None):
        assert params == {"symbol": "BTCUSDT"}
        return {"symbol": "BTCUSDT", "price": "67000.50"}

    monkeypatch.setattr(client, "get_json", fake_get_json)
    assert await client.ticker_price("btcusdt") == pytest.approx(67000.5)

    async def bad(path, params=None):
        return {"symbol": "BTCUSDT"}

    monkeypatch.setattr(client, "get_json", bad)
    with pytest.raises(FetchError):
        await client.ticker_price()
