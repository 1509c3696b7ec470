from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from oddsfeed.alerts.rules import AlertRule, parse_rule_specs
from oddsfeed.ingest.market_ws import MarketWSConfig
from oddsfeed.ingest.spot_ws import SpotWSConfig
from oddsfeed.notify.telegram import TelegramConfig
from oddsfeed.upstream.clob import CLOB_API
from oddsfeed.upstream.gamma import GAMMA_API
from oddsfeed.utils.errors import ConfigurationError


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {v!r}") from e


def _env_count(name: str, default: int) -> int:
    v = _env_float(name, default)
    if not v >= 1 or v == float("inf"):
        raise ConfigurationError(f"{name} must be a whole number >= 1, got {os.getenv(name)!r}")
    return int(v)


def _env_list(name: str) -> list[str]:
    return [s.strip() for s in os.getenv(name, "").split(",") if s.strip()]


@dataclass(slots=True)
class Settings:
    market_slug: Optional[str] = None
    token_ids: list[str] = field(default_factory=list)
    clob_api_url: str = CLOB_API
    gamma_api_url: str = GAMMA_API
    market_ws: MarketWSConfig = field(default_factory=MarketWSConfig)
    series_max_points: int = 500
    enable_spot: bool = False
    spot: SpotWSConfig = field(default_factory=SpotWSConfig)
    alerts: list[AlertRule] = field(default_factory=list)
    telegram: Optional[TelegramConfig] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Build settings from environment variables (a .env file is loaded first
        unless dotenv=False). Raises ConfigurationError on unusable values.
        """
        if dotenv:
            load_dotenv()
        ws = MarketWSConfig()
        if os.getenv("CLOB_WS_URL"):
            ws.stream_url = os.environ["CLOB_WS_URL"]
        ws.poll_interval_s = _env_float("POLL_INTERVAL_S", ws.poll_interval_s)
        ws.reconnect_delay_s = _env_float("RECONNECT_DELAY_S", ws.reconnect_delay_s)
        ws.seed_from_book = _env_bool("SEED_FROM_BOOK", ws.seed_from_book)

        spot = SpotWSConfig()
        spot.symbol = os.getenv("SPOT_SYMBOL", spot.symbol).lower()

        try:
            alerts = parse_rule_specs(os.getenv("ALERTS", ""))
        except ValueError as e:
            raise ConfigurationError(f"ALERTS: {e}") from e

        tg = None
        token, chat = os.getenv("TELEGRAM_BOT_TOKEN"), os.getenv("TELEGRAM_CHAT_ID")
        if token and chat:
            tg = TelegramConfig(bot_token=token, chat_id=chat)

        return cls(
            market_slug=os.getenv("MARKET_SLUG") or None,
            token_ids=_env_list("TOKEN_IDS"),
            clob_api_url=os.getenv("CLOB_API_URL", CLOB_API),
            gamma_api_url=os.getenv("GAMMA_API_URL", GAMMA_API),
            market_ws=ws,
            series_max_points=_env_count("SERIES_MAX_POINTS", 500),
            enable_spot=_env_bool("ENABLE_SPOT", False),
            spot=spot,
            alerts=alerts,
            telegram=tg,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
