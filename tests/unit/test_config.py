import pytest

from oddsfeed.config import Settings
from oddsfeed.upstream.clob import CLOB_API
from oddsfeed.utils.errors import ConfigurationError

ENV_VARS = (
    "MARKET_SLUG", "TOKEN_IDS", "CLOB_WS_URL", "POLL_INTERVAL_S", "RECONNECT_DELAY_S",
    "SEED_FROM_BOOK", "SPOT_SYMBOL", "ALERTS", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID",
    "CLOB_API_URL", "GAMMA_API_URL", "SERIES_MAX_POINTS", "ENABLE_SPOT", "LOG_LEVEL",
)

@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

def test_defaults(clean_env):
    s = Settings.from_env(dotenv=False)
    assert s.market_slug is None
    assert s.token_ids == []
    assert s.clob_api_url == CLOB_API
    assert s.market_ws.poll_interval_s == 30.0
    assert s.market_ws.reconnect_delay_s == 3.0
    assert s.market_ws.seed_from_book is True
    assert s.telegram is None
    assert s.alerts == []
    assert s.enable_spot is False

def test_values_from_env(clean_env):
    clean_env.setenv("TOKEN_IDS", "111, 222,")
    clean_env.setenv("POLL_INTERVAL_S", "5")
    clean_env.setenv("SEED_FROM_BOOK", "no")
    clean_env.setenv("ALERTS", "below:0.55:dip")
    clean_env.setenv("TELEGRAM_BOT_TOKEN", "t")
    clean_env.setenv("TELEGRAM_CHAT_ID", "42")
    clean_env.setenv("SPOT_SYMBOL", "ETHUSDT")
    clean_env.setenv("SERIES_MAX_POINTS", "200")

    s = Settings.from_env(dotenv=False)
    assert s.token_ids == ["111", "222"]
    assert s.market_ws.poll_interval_s == 5.0
    assert s.market_ws.seed_from_book is False
    assert [(r.direction, r.threshold, r.label) for r in s.alerts] == [("below", 0.55, "dip")]
    assert s.telegram is not None and s.telegram.chat_id == "42"
    assert s.spot.symbol == "ethusdt"
    assert s.series_max_points == 200

@pytest.mark.parametrize("name, value", [
    ("POLL_INTERVAL_S", "soon"),
    ("ALERTS", "sideways:0.5"),
    ("SERIES_MAX_POINTS", "0"),
    ("SERIES_MAX_POINTS", "-5"),
    ("SERIES_MAX_POINTS", "nan"),
    ("SERIES_MAX_POINTS", "inf"),
])
def test_bad_values_raise(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ConfigurationError):
        Settings.from_env(dotenv=False)
