import json
import os
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from models import orders_store, payments_store
from models.users_db import create_user
from services.payments.dummy_provider import SIGNATURE_HEADER, sign_event
from tests.utils import login_user, make_order

CARD = {"cardNumber": "4242424242424242", "expiryMonth": "12", "expiryYear": "2030",
        "cvv": "123"}


def _process(client, order_id, method="CREDIT_CARD", details=None):
    return client.post("/payments/process", json={
        "orderId": order_id, "method": method,
        "paymentDetails": CARD if details is None else details})


def _webhook(client, payload, secret=None, gateway="sandbox"):
    body = json.dumps(payload).encode()
    secret = secret or os.environ["SANDBOX_WEBHOOK_SECRET"]
    return client.post(f"/payments/webhook/{gateway}", data=body,
                       headers={SIGNATURE_HEADER: sign_event(secret, body),
                                "Content-Type": "application/json"})


@pytest.mark.db
def test_process_requires_login(client):
    r = _process(client, "whatever")
    assert r.status_code == 401


@pytest.mark.db
def test_process_payment_happy_path(client, alice):
    order = make_order(user_id="alice", total="49.99")

    r = _process(client, order["id"])

    assert r.status_code == 201
    body = r.get_json()
    assert body["status"] == "COMPLETED"
    assert body["orderId"] == order["id"]
    assert body["amount"] == "49.99"
    assert body["transactionId"] == f"sbx_{body['paymentId']}"
    assert "gatewayResponse" not in body
    assert orders_store.get_order(order["id"])["payment_status"] == "PAID"


@pytest.mark.db
def test_declined_payment_is_still_201(client, alice):
    order = make_order(user_id="alice")
    r = _process(client, order["id"], details={"simulate": "decline"})
    assert r.status_code == 201
    assert r.get_json()["status"] == "FAILED"
    assert r.get_json()["failureReason"] == "card_declined"


@pytest.mark.db
@pytest.mark.parametrize("method, code, error", [
    ("BANK_TRANSFER", 400, "validation_error"),
    ("CASH", 400, "validation_error"),
])
def test_process_rejects_bad_methods(client, alice, method, code, error):
    order = make_order(user_id="alice")
    r = _process(client, order["id"], method=method)
    assert r.status_code == code
    assert r.get_json()["error"] == error


@pytest.mark.db
def test_process_paid_and_foreign_orders(client, alice):
    order = make_order(user_id="alice")
    assert _process(client, order["id"]).status_code == 201
    r = _process(client, order["id"])
    assert r.status_code == 409
    assert r.get_json()["error"] == "order_already_paid"

    bobs = make_order(user_id="bob")
    r = _process(client, bobs["id"])
    assert r.status_code == 404
    assert r.get_json()["error"] == "order_not_found"


@pytest.mark.db
def test_list_and_read_own_payments(client, alice):
    order = make_order(user_id="alice", total="12.50")
    pid = _process(client, order["id"]).get_json()["paymentId"]

    listed = client.get("/payments").get_json()
    assert [p["paymentId"] for p in listed] == [pid]
    assert listed[0]["order"] == {"orderNumber": order["order_number"], "totalAmount": "12.50"}

    assert client.get(f"/payments/{pid}").get_json()["paymentId"] == pid
    assert client.get(f"/payments/order/{order['id']}").get_json()["paymentId"] == pid


@pytest.mark.db
def test_other_users_payments_are_hidden(client, alice):
    bobs = make_order(user_id="bob")
    p = payments_store.create_payment(bobs["id"], "bob", Decimal("5"), "USD", "CREDIT_CARD")
    assert client.get(f"/payments/{p['payment_id']}").status_code == 404
    assert client.get(f"/payments/order/{bobs['id']}").status_code == 404
    assert client.post(f"/payments/{p['payment_id']}/refund", json={}).status_code == 404


@pytest.mark.db
def test_refund_route(client, alice):
    order = make_order(user_id="alice")
    pid = _process(client, order["id"]).get_json()["paymentId"]

    r = client.post(f"/payments/{pid}/refund", json={"reason": "requested_by_customer"})
    assert r.status_code == 200
    assert r.get_json()["status"] == "REFUNDED"
    assert r.get_json()["refundAmount"] == "49.99"

    again = client.post(f"/payments/{pid}/refund", json={})
    assert again.status_code == 409
    assert again.get_json()["error"] == "not_refundable"


@pytest.mark.db
def test_refund_over_amount_is_rejected(client, alice):
    order = make_order(user_id="alice", total="10.00")
    pid = _process(client, order["id"]).get_json()["paymentId"]
    r = client.post(f"/payments/{pid}/refund", json={"amount": "10.01"})
    assert r.status_code == 400


@pytest.mark.db
def test_reconciliation_queue_is_admin_only(client, alice):
    assert client.get("/payments/reconciliation").status_code == 403


@pytest.mark.db
def test_reconciliation_queue_lists_flagged(client, admin_user):
    order = make_order(user_id="alice")
    p = payments_store.create_payment(order["id"], "alice", Decimal("5"), "USD", "CREDIT_CARD")
    payments_store.fail_charge(p["payment_id"], "gateway_timeout: outcome unknown",
                               needs_reconciliation=True)
    r = client.get("/payments/reconciliation")
    assert r.status_code == 200
    assert [x["paymentId"] for x in r.get_json()] == [p["payment_id"]]
    assert r.get_json()[0]["needsReconciliation"] is True


@pytest.mark.db
def test_webhook_route_applies_signed_event(client):
    order = make_order(user_id="alice")
    p = payments_store.create_payment(order["id"], "alice", Decimal("49.99"), "USD", "CREDIT_CARD")

    r = _webhook(client, {"id": "evt_http_1", "type": "payment.succeeded",
                          "data": {"paymentId": p["payment_id"], "transactionId": "tx_http"}})

    assert r.status_code == 200
    assert r.get_json()["status"] == "success"
    assert payments_store.get_payment(p["payment_id"])["status"] == "COMPLETED"

    again = _webhook(client, {"id": "evt_http_1", "type": "payment.succeeded",
                              "data": {"paymentId": p["payment_id"]}})
    assert again.status_code == 200
    assert again.get_json()["result"]["noop"] is True


@pytest.mark.db
def test_webhook_route_statuses(client):
    bad = _webhook(client, {"id": "evt_b", "type": "payment.succeeded", "data": {}},
                   secret="wrong")
    assert bad.status_code == 400
    assert bad.get_json()["status"] == "error"

    ignored = _webhook(client, {"id": "evt_i", "type": "payment.unknown", "data": {}})
    assert ignored.status_code == 200
    assert ignored.get_json()["status"] == "ignored"

    assert client.post("/payments/webhook/venmo", data=b"{}").status_code == 404


@pytest.mark.db
def test_webhook_store_failure_asks_for_redelivery(client, monkeypatch):
    def boom(*a, **k):
        raise OperationalError("INSERT INTO payment_events", {}, Exception("db down"))
    monkeypatch.setattr(payments_store, "record_webhook_event", boom)

    r = _webhook(client, {"id": "evt_503", "type": "payment.succeeded", "data": {}})
    assert r.status_code == 503


@pytest.mark.db
def test_webhook_health_lists_endpoints(client):
    r = client.get("/payments/webhook/health")
    assert r.status_code == 200
    assert r.get_json()["endpoints"] == {"sandbox": "/payments/webhook/sandbox"}


@pytest.mark.db
def test_login_logout_json(client):
    create_user("carol", "carol-pass")
    assert client.post("/login", json={"username": "carol", "password": "nope"}).status_code == 401
    r = client.post("/login", json={"username": "carol", "password": "carol-pass"})
    assert r.status_code == 200
    assert r.get_json() == {"username": "carol", "role": "user"}
    assert client.get("/payments").status_code == 200
    assert client.post("/logout").status_code == 200
    assert client.get("/payments").status_code == 401


@pytest.mark.db
def test_health_and_metrics(client, alice):
    assert client.get("/healthz").get_json() == {"status": "ok"}
    assert client.get("/readyz").status_code == 200

    order = make_order(user_id="alice")
    _process(client, order["id"])
    text = client.get("/metrics").get_data(as_text=True)
    assert "payments_processed_total" in text
    assert "http_requests_total" in text


def test_login_helper_posts_form(client):
    r = login_user(client, "nobody", "x")
    assert r.status_code == 401


@pytest.mark.db
def test_non_object_json_bodies_are_rejected(client, alice):
    r = client.post("/payments/process", json=[{"orderId": "x"}])
    assert r.status_code == 400
    assert r.get_json()["error"] == "validation_error"

    order = make_order(user_id="alice")
    pid = _process(client, order["id"]).get_json()["paymentId"]
    r = client.post(f"/payments/{pid}/refund", json=["all of it"])
    assert r.status_code == 400
    assert payments_store.get_payment(pid)["status"] == "COMPLETED"


@pytest.mark.db
def test_signed_webhook_with_non_object_body_is_rejected(client):
    r = _webhook(client, ["payment.succeeded"])
    assert r.status_code == 400
    assert r.get_json()["status"] == "error"
