# src/oddsfeed/alerts/notifiers.py
from __future__ import annotations
import structlog
from typing import Callable, Optional

from oddsfeed.alerts.formatting import format_alert
from oddsfeed.alerts.rules import AlertFired

log = structlog.get_logger("notifier")

class ConsoleNotifier:
    """Prints fired alerts to stdout; usable directly as an AlertEngine callback."""
    def __init__(self, format_fn: Optional[Callable[[AlertFired], str]] = None):
        self._format_fn = format_fn or format_alert

    def __call__(self, evt: AlertFired) -> None:
        self.send(evt)

    def send(self, evt: AlertFired) -> None:
        try:
            text = self._format_fn(evt)
        except (KeyError, ValueError, TypeError) as e:
            log.warning("console_format_failed", err=str(e))
            text = format_alert(evt)
        print(text, flush=True)
