from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo

from oddsfeed.alerts.rules import AlertFired

def fmt_price(x: float) -> str:
    """Prices are shown with 3 decimals, the resolution of the series."""
    return f"{round(x * 1000) / 1000:.3f}"

def format_alert(evt: AlertFired) -> str:
    """🔔 dip below 0.550 (now 0.540)"""
    return f"🔔 {evt.label or 'Price'} {evt.direction} {fmt_price(evt.threshold)} (now {fmt_price(evt.price)})"

def format_alert_pretty(evt: AlertFired, tz_name: str = "America/New_York") -> str:
    tz = ZoneInfo(tz_name)
    when = datetime.fromtimestamp(evt.ts, tz).strftime("%H:%M:%S %Z")
    arrow = "↑" if evt.direction == "above" else "↓"
    return f"[{when}] {arrow} {format_alert(evt)}"
