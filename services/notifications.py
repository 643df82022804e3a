# services/notifications.py
"""
Side channels for the payment core: customer notifications and an in-process
event bus. Both are fire-and-forget; a failing handler is logged and never
reaches the payment flow.
"""

from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Callable, Protocol

log = logging.getLogger(__name__)


class Notifier(Protocol):
    def payment_succeeded(self, payment: dict) -> None: ...
    def payment_failed(self, payment: dict) -> None: ...
    def refund_completed(self, payment: dict) -> None: ...


class LoggingNotifier:
    """Default notifier: writes one log line per notice and keeps the last few in memory."""

    def __init__(self, keep: int = 100):
        self.keep = keep
        self.sent: list[dict] = []

    def _send(self, kind: str, payment: dict) -> None:
        record = {
            "kind": kind,
            "user_id": payment.get("user_id"),
            "payment_id": payment.get("payment_id"),
            "order_id": payment.get("order_id"),
            "amount": str(payment.get("refund_amount") or payment.get("amount")),
            "currency": payment.get("currency"),
        }
        self.sent.append(record)
        del self.sent[:-self.keep]
        log.info("notify %s user=%s payment=%s amount=%s %s", kind, record["user_id"],
                 record["payment_id"], record["amount"], record["currency"])

    def payment_succeeded(self, payment: dict) -> None:
        self._send("payment_succeeded", payment)

    def payment_failed(self, payment: dict) -> None:
        self._send("payment_failed", payment)

    def refund_completed(self, payment: dict) -> None:
        self._send("refund_completed", payment)


Handler = Callable[[str, dict[str, Any]], None]


class EventBus:
    """Synchronous in-process pub/sub; handlers run in subscription order."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._handlers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event_name, ())) + list(self._handlers.get("*", ())):
            try:
                handler(event_name, payload)
            except Exception:
                log.exception("event handler failed for %s", event_name)


def safe_notify(notifier: Notifier | None, kind: str, payment: dict) -> None:
    if notifier is None:
        return
    try:
        getattr(notifier, kind)(payment)
    except Exception:
        log.exception("notification %s failed for payment %s", kind, payment.get("payment_id"))


def safe_publish(events: EventBus | None, event_name: str, payload: dict[str, Any]) -> None:
    if events is None:
        return
    try:
        events.publish(event_name, payload)
    except Exception:
        log.exception("publishing %s failed", event_name)
