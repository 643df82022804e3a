import json
from decimal import Decimal

import pytest

from services.payments.errors import GatewayError, InvalidSignature, RefundError
from services.payments.paypal_provider import PayPalAdapter
from tests.utils import TIMEOUT, FakeResponse, FakeSession

TOKEN = FakeResponse(200, {"access_token": "A21", "expires_in": 32400})

HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "tid", "PAYPAL-TRANSMISSION-TIME": "2026-10-18T10:00:00Z",
    "PAYPAL-TRANSMISSION-SIG": "sig", "PAYPAL-CERT-URL": "https://api.paypal.test/cert",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
}


def _adapter(session, webhook_id="WH-1"):
    return PayPalAdapter("cid", "secret", webhook_id=webhook_id,
                         api_url="https://api.paypal.test", timeout=7, session=session)


def _captured(order_id="5O190127TN364715T", capture_id="3C679366HH908993F", status="COMPLETED"):
    return FakeResponse(201, {"id": order_id, "status": "COMPLETED", "purchase_units": [
        {"payments": {"captures": [{"id": capture_id, "status": status}]}}]})


def test_charge_creates_and_captures_order():
    session = FakeSession(TOKEN, FakeResponse(201, {"id": "5O190127TN364715T"}), _captured())

    res = _adapter(session).charge(Decimal("19.999"), "usd", {}, "ORD-7", "PAY7")

    assert res.success is True
    assert res.transaction_id == "5O190127TN364715T"
    assert res.charge_id == "3C679366HH908993F"

    token_call, create_call, capture_call = session.calls
    assert token_call["url"] == "https://api.paypal.test/v1/oauth2/token"
    assert token_call["auth"] == ("cid", "secret")
    unit = create_call["json"]["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "USD", "value": "20.00"}
    assert unit["custom_id"] == "PAY7"
    assert unit["reference_id"] == "ORD-7"
    assert create_call["headers"]["PayPal-Request-Id"] == "PAY7"
    assert create_call["headers"]["Authorization"] == "Bearer A21"
    assert capture_call["url"].endswith("/v2/checkout/orders/5O190127TN364715T/capture")
    assert capture_call["timeout"] == 7


def test_token_is_reused_between_calls():
    session = FakeSession(TOKEN, FakeResponse(201, {"id": "O1"}), _captured("O1"),
                          FakeResponse(201, {"id": "O2"}), _captured("O2"))
    adapter = _adapter(session)
    adapter.charge(Decimal("1"), "USD", {}, "A", "PAY1")
    adapter.charge(Decimal("1"), "USD", {}, "B", "PAY2")
    assert sum(1 for c in session.calls if c["url"].endswith("/oauth2/token")) == 1


def test_capture_declined_is_a_failed_result():
    session = FakeSession(TOKEN, FakeResponse(201, {"id": "O1"}), FakeResponse(422, {
        "name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INSTRUMENT_DECLINED"}]}))

    res = _adapter(session).charge(Decimal("5"), "USD", {}, "ORD", "PAY1")

    assert res.success is False
    assert res.transaction_id == "O1"
    assert res.error == "INSTRUMENT_DECLINED"


def test_pending_capture_is_not_success():
    session = FakeSession(TOKEN, FakeResponse(201, {"id": "O1"}), _captured("O1", status="PENDING"))
    res = _adapter(session).charge(Decimal("5"), "USD", {}, "ORD", "PAY1")
    assert res.success is False
    assert res.error == "capture PENDING"


def test_auth_failure_and_outage_raise():
    with pytest.raises(GatewayError):
        _adapter(FakeSession(FakeResponse(401, {}))).charge(Decimal("5"), "USD", {}, "O", "P")
    with pytest.raises(GatewayError):
        _adapter(FakeSession(TOKEN, FakeResponse(503, {}))).charge(
            Decimal("5"), "USD", {}, "O", "P")


def test_token_response_without_access_token_is_a_gateway_error():
    no_token = FakeResponse(200, {"token_type": "Bearer"})
    with pytest.raises(GatewayError):
        _adapter(FakeSession(no_token)).charge(Decimal("5"), "USD", {}, "O", "P")
    with pytest.raises(RefundError):
        _adapter(FakeSession(no_token)).refund("O1", Decimal("1"), None, charge_id="CAP1")
    with pytest.raises(InvalidSignature):
        _adapter(FakeSession(FakeResponse(200, None))).verify_webhook(
            json.dumps(CAPTURE_EVENT).encode(), HEADERS)


def test_refund_goes_through_capture_id():
    session = FakeSession(TOKEN, FakeResponse(201, {"id": "1JU08902781691411",
                                                    "status": "COMPLETED"}))
    res = _adapter(session).refund("O1", Decimal("10"), "damaged", charge_id="CAP1",
                                   currency="USD")
    assert res.refund_id == "1JU08902781691411"
    assert res.status == "completed"
    call = session.calls[1]
    assert call["url"].endswith("/v2/payments/captures/CAP1/refund")
    assert call["json"]["amount"] == {"currency_code": "USD", "value": "10.00"}
    assert call["json"]["note_to_payer"] == "damaged"


def test_refund_request_id_is_derived_from_payment_id():
    session = FakeSession(TOKEN, FakeResponse(201, {"id": "RF2", "status": "COMPLETED"}))
    _adapter(session).refund("O1", Decimal("1"), None, charge_id="CAP1", payment_id="PAY9")
    assert session.calls[1]["headers"]["PayPal-Request-Id"] == "PAY9-refund"


def test_refund_failures():
    with pytest.raises(RefundError):
        _adapter(FakeSession()).refund("O1", Decimal("1"), None, charge_id=None)
    with pytest.raises(RefundError):
        _adapter(FakeSession(TOKEN, FakeResponse(422, {"name": "CAPTURE_FULLY_REFUNDED"}))).refund(
            "O1", Decimal("1"), None, charge_id="CAP1")
    with pytest.raises(RefundError):
        _adapter(FakeSession(TOKEN, TIMEOUT)).refund("O1", Decimal("1"), None, charge_id="CAP1")


CAPTURE_EVENT = {
    "id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED",
    "resource": {"id": "CAP1", "status": "COMPLETED", "custom_id": "PAY1",
                 "amount": {"currency_code": "USD", "value": "49.99"},
                 "supplementary_data": {"related_ids": {"order_id": "O1"}}},
}


def test_webhook_remote_verification_success():
    session = FakeSession(TOKEN, FakeResponse(200, {"verification_status": "SUCCESS"}))
    body = json.dumps(CAPTURE_EVENT).encode()

    evt = _adapter(session).verify_webhook(body, HEADERS)

    assert evt.provider == "paypal"
    assert evt.event_type == "PAYMENT.CAPTURE.COMPLETED"
    assert (evt.transaction_id, evt.charge_id, evt.correlation_id) == ("O1", "CAP1", "PAY1")
    assert evt.amount == Decimal("49.99")
    verify = session.calls[1]["json"]
    assert verify["webhook_id"] == "WH-1"
    assert verify["transmission_id"] == "tid"
    assert verify["webhook_event"]["id"] == "WH-EVT-1"


def test_refund_event_links_back_to_capture():
    event = {"id": "WH-EVT-2", "event_type": "PAYMENT.CAPTURE.REFUNDED", "resource": {
        "id": "RF1", "custom_id": "PAY1", "amount": {"value": "49.99"},
        "links": [{"rel": "up", "href": "https://api.paypal.test/v2/payments/captures/CAP1"}]}}
    session = FakeSession(TOKEN, FakeResponse(200, {"verification_status": "SUCCESS"}))
    evt = _adapter(session).verify_webhook(json.dumps(event).encode(), HEADERS)
    assert (evt.refund_id, evt.charge_id) == ("RF1", "CAP1")


@pytest.mark.parametrize("responses, headers, webhook_id", [
    ((TOKEN, FakeResponse(200, {"verification_status": "FAILURE"})), HEADERS, "WH-1"),
    ((TOKEN, TIMEOUT), HEADERS, "WH-1"),
    ((), {}, "WH-1"),
    ((), HEADERS, ""),
])
def test_webhook_rejections(responses, headers, webhook_id):
    adapter = _adapter(FakeSession(*responses), webhook_id=webhook_id)
    with pytest.raises(InvalidSignature):
        adapter.verify_webhook(json.dumps(CAPTURE_EVENT).encode(), headers)
