# tests/utils.py
import json
from decimal import Decimal

import requests

from models.orders_store import create_order
from services.payments.base import ChargeResult, RefundResult, WebhookEvent
from services.payments.errors import InvalidSignature


def login_user(client, username, password):
    return client.post("/login",
                       data={"username": username, "password": password},
                       follow_redirects=False)


def make_order(user_id="alice", total="49.99", currency="USD"):
    return create_order(user_id, Decimal(total), currency)


class FakeAdapter:
    """
    Scripted gateway: hand it the next charge outcome (a ChargeResult or an exception).
    on_refund(call) runs while a refund is "at the gateway", before it returns.
    """

    def __init__(self, name="fake", charge_outcome=None, refund_outcome=None, on_refund=None):
        self.name = name
        self.charge_outcome = charge_outcome or ChargeResult(True, "tx_1", "ch_1", {"id": "tx_1"})
        self.refund_outcome = refund_outcome or RefundResult("re_1", "succeeded", {"id": "re_1"})
        self.on_refund = on_refund
        self.charges = []
        self.refunds = []
        self.events = {}

    def validate_details(self, payment_details):
        return None

    def charge(self, amount, currency, payment_details, order_ref, payment_id):
        self.charges.append({"amount": amount, "currency": currency,
                             "order_ref": order_ref, "payment_id": payment_id})
        if isinstance(self.charge_outcome, Exception):
            raise self.charge_outcome
        return self.charge_outcome

    def refund(self, transaction_id, amount, reason, charge_id=None, currency="USD",
               payment_id=None):
        call = {"transaction_id": transaction_id, "amount": amount, "reason": reason,
                "charge_id": charge_id, "payment_id": payment_id}
        self.refunds.append(call)
        if self.on_refund is not None:
            self.on_refund(call)
        if isinstance(self.refund_outcome, Exception):
            raise self.refund_outcome
        return self.refund_outcome

    def verify_webhook(self, raw_body, headers):
        # body is JSON {"id", "type", "tx"}; header X-Fake-Ok must be "1"
        if headers.get("X-Fake-Ok") != "1":
            raise InvalidSignature("Invalid signature")
        doc = json.loads(raw_body)
        return WebhookEvent(provider=self.name, external_event_id=doc.get("id"),
                            event_type=doc.get("type", ""), transaction_id=doc.get("tx"),
                            charge_id=doc.get("charge"), correlation_id=doc.get("ref"),
                            reason=doc.get("reason"), raw=doc)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Stands in for requests.Session: queued responses, recorded calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, kw):
        self.calls.append({"method": method, "url": url, **kw})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kw):
        return self._next("POST", url, kw)

    def request(self, method, url, **kw):
        return self._next(method, url, kw)


TIMEOUT = requests.Timeout("read timed out")
