from __future__ import annotations

import threading
from typing import Callable, Optional

import structlog

from oddsfeed.alerts.rules import AlertFired, AlertRule
from oddsfeed.utils.time import utc_now_s
from oddsfeed.utils.types import Direction

AlertCallback = Callable[[AlertFired], None]


class AlertEngine:
    """
    Evaluates one-shot threshold rules against the latest normalized price.

    evaluate(price) is meant to be called once per newly appended latest point,
    not on a timer. Each active rule that is hit is deactivated and produces one
    AlertFired, delivered to every registered callback.

    Rule state lives behind one lock: add/remove and evaluate may be called
    from different tasks or threads, and evaluate always works on a consistent
    view of the rules.
    """
    def __init__(self):
        self._rules: dict[str, AlertRule] = {}
        self._lock = threading.Lock()
        self._callbacks: list[AlertCallback] = []
        self._log = structlog.get_logger("alerts")

    # --- rule management ---

    def add_rule(self, direction: Direction, threshold: float, label: Optional[str] = None) -> AlertRule:
        rule = AlertRule(direction=direction, threshold=threshold, label=label)
        return self.add(rule)

    def add(self, rule: AlertRule) -> AlertRule:
        with self._lock:
            self._rules[rule.id] = rule
        self._log.info("alert_created", rule_id=rule.id, direction=rule.direction,
                       threshold=rule.threshold, label=rule.label)
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
        if removed:
            self._log.info("alert_removed", rule_id=rule_id)
        return removed

    def rules(self) -> list[AlertRule]:
        """Copies, so callers can't flip `active` behind the engine's back."""
        with self._lock:
            return [
                AlertRule(direction=r.direction, threshold=r.threshold, label=r.label,
                          active=r.active, id=r.id)
                for r in self._rules.values()
            ]

    def on_alert(self, callback: AlertCallback) -> None:
        self._callbacks.append(callback)

    # --- core evaluation ---

    def evaluate(self, price: float, ts: Optional[float] = None) -> list[AlertFired]:
        price = float(price)
        now = utc_now_s() if ts is None else float(ts)
        fired: list[AlertFired] = []
        with self._lock:
            for r in self._rules.values():
                if not r.active or not r.hit(price):
                    continue
                r.active = False
                fired.append(AlertFired(
                    rule_id=r.id, label=r.label, direction=r.direction,
                    threshold=r.threshold, price=price, ts=now,
                ))
        # callbacks run outside the lock so they may add/remove rules
        for evt in fired:
            self._log.info("alert_fired", **evt.as_dict())
            self._emit(evt)
        return fired

    def _emit(self, evt: AlertFired) -> None:
        for cb in self._callbacks:
            try:
                cb(evt)
            except Exception as e:
                self._log.warning("alert_callback_failed", rule_id=evt.rule_id, err=str(e))
