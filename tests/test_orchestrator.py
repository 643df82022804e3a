from decimal import Decimal

import pytest

from models import orders_store, payments_store
from models.schema import PaymentMethod
from services.notifications import EventBus, LoggingNotifier
from services.payments.base import ChargeResult
from services.payments.errors import (
    GatewayError, GatewayTimeout, OrderAlreadyPaid, OrderNotFound, ValidationError,
)
from services.payments.orchestrator import TIMEOUT_REASON, PaymentOrchestrator
from tests.utils import FakeAdapter, make_order


def _orchestrator(adapter, notifier=None, events=None):
    return PaymentOrchestrator(
        {PaymentMethod.CREDIT_CARD: adapter, PaymentMethod.STRIPE: adapter},
        notifier or LoggingNotifier(), events or EventBus())


CARD = {"cardNumber": "4242424242424242", "expiryMonth": "12", "expiryYear": "2030",
        "cvv": "123"}


@pytest.mark.db
def test_successful_card_payment_completes_and_pays_order():
    order = make_order(total="49.99")
    adapter = FakeAdapter(charge_outcome=ChargeResult(True, "tx_1", "ch_1", {"id": "tx_1"}))
    notifier = LoggingNotifier()
    seen = []
    events = EventBus()
    events.subscribe("payment.processed", lambda name, payload: seen.append(payload))

    p = _orchestrator(adapter, notifier, events).process_payment(
        "alice", order["id"], "credit_card", CARD)

    assert p["status"] == "COMPLETED"
    assert p["transaction_id"] == "tx_1"
    assert p["gateway_charge_id"] == "ch_1"
    assert p["amount"] == Decimal("49.99")
    assert p["processed_at"] is not None
    assert adapter.charges[0]["amount"] == Decimal("49.99")
    assert adapter.charges[0]["order_ref"] == order["order_number"]

    o = orders_store.get_order(order["id"])
    assert o["payment_status"] == "PAID"
    assert o["payment_id"] == p["payment_id"]
    assert payments_store.count_payments_for_order(order["id"]) == 1

    assert [n["kind"] for n in notifier.sent] == ["payment_succeeded"]
    assert seen and seen[0]["status"] == "COMPLETED"


@pytest.mark.db
def test_declined_card_is_a_failed_payment_not_an_error():
    order = make_order()
    adapter = FakeAdapter(charge_outcome=ChargeResult(False, "pi_declined", error="card_declined"))
    notifier = LoggingNotifier()

    p = _orchestrator(adapter, notifier).process_payment("alice", order["id"], "CREDIT_CARD", CARD)

    assert p["status"] == "FAILED"
    assert p["failure_reason"] == "card_declined"
    assert p["transaction_id"] == "pi_declined"
    assert p["needs_reconciliation"] is False
    assert orders_store.get_order(order["id"])["payment_status"] == "UNPAID"
    assert [n["kind"] for n in notifier.sent] == ["payment_failed"]


@pytest.mark.db
def test_gateway_timeout_fails_and_flags_for_reconciliation():
    order = make_order()
    adapter = FakeAdapter(charge_outcome=GatewayTimeout("read timed out"))

    p = _orchestrator(adapter).process_payment("alice", order["id"], "CREDIT_CARD", CARD)

    assert p["status"] == "FAILED"
    assert p["failure_reason"] == TIMEOUT_REASON
    assert p["needs_reconciliation"] is True


@pytest.mark.db
def test_gateway_error_becomes_failure_reason():
    order = make_order()
    adapter = FakeAdapter(charge_outcome=GatewayError("stripe responded 503"))

    p = _orchestrator(adapter).process_payment("alice", order["id"], "CREDIT_CARD", CARD)

    assert p["status"] == "FAILED"
    assert p["failure_reason"] == "stripe responded 503"
    assert p["needs_reconciliation"] is False


@pytest.mark.db
def test_paid_order_is_rejected_without_new_row():
    order = make_order()
    orders_store.mark_order_paid(order["id"], "PAYEARLIER")

    with pytest.raises(OrderAlreadyPaid):
        _orchestrator(FakeAdapter()).process_payment("alice", order["id"], "CREDIT_CARD", CARD)
    assert payments_store.count_payments_for_order(order["id"]) == 0


@pytest.mark.db
def test_foreign_or_missing_order_is_not_found():
    order = make_order(user_id="bob")
    orch = _orchestrator(FakeAdapter())
    with pytest.raises(OrderNotFound):
        orch.process_payment("alice", order["id"], "CREDIT_CARD", CARD)
    with pytest.raises(OrderNotFound):
        orch.process_payment("alice", "does-not-exist", "CREDIT_CARD", CARD)
    assert payments_store.count_payments_for_order(order["id"]) == 0


@pytest.mark.db
@pytest.mark.parametrize("method, details", [
    ("BITCOIN", CARD),
    ("BANK_TRANSFER", CARD),
    (None, CARD),
    ("CREDIT_CARD", "not-a-dict"),
])
def test_invalid_requests_write_nothing(method, details):
    order = make_order()
    with pytest.raises(ValidationError):
        _orchestrator(FakeAdapter()).process_payment("alice", order["id"], method, details)
    assert payments_store.count_payments_for_order(order["id"]) == 0


@pytest.mark.db
def test_webhook_landing_during_charge_keeps_stored_row():
    order = make_order()

    class RacingAdapter(FakeAdapter):
        def charge(self, amount, currency, payment_details, order_ref, payment_id):
            # the gateway's webhook arrives before the HTTP response does
            payments_store.complete_charge(payment_id, "tx_1", "ch_1")
            orders_store.mark_order_paid(order["id"], payment_id)
            return ChargeResult(True, "tx_1", "ch_1", {"late": True})

    p = _orchestrator(RacingAdapter()).process_payment("alice", order["id"], "CREDIT_CARD", CARD)

    assert p["status"] == "COMPLETED"
    assert p["gateway_response"] is None   # the webhook's write stands
    assert p["needs_reconciliation"] is False
    assert orders_store.get_order(order["id"])["payment_id"] == p["payment_id"]


@pytest.mark.db
def test_order_paid_concurrently_by_other_payment_flags_this_one():
    order = make_order()

    class DoublePayAdapter(FakeAdapter):
        def charge(self, amount, currency, payment_details, order_ref, payment_id):
            orders_store.mark_order_paid(order["id"], "PAYOTHER")
            return super().charge(amount, currency, payment_details, order_ref, payment_id)

    p = _orchestrator(DoublePayAdapter()).process_payment(
        "alice", order["id"], "CREDIT_CARD", CARD)

    assert p["status"] == "COMPLETED"
    assert p["needs_reconciliation"] is True
    assert orders_store.get_order(order["id"])["payment_id"] == "PAYOTHER"


@pytest.mark.db
def test_side_channel_failures_never_break_the_payment():
    order = make_order()

    class BrokenNotifier(LoggingNotifier):
        def payment_succeeded(self, payment):
            raise RuntimeError("smtp down")

    events = EventBus()
    events.subscribe("payment.processed", lambda n, p: 1 / 0)

    p = _orchestrator(FakeAdapter(), BrokenNotifier(), events).process_payment(
        "alice", order["id"], "CREDIT_CARD", CARD)
    assert p["status"] == "COMPLETED"
