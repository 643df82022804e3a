# services/payments/paypal_provider.py
"""
PayPal Orders v2 adapter.

charge(): client-credentials token -> create order (intent CAPTURE,
custom_id = our payment id) -> capture at once. The PayPal order id becomes
transaction_id and the capture id becomes gateway_charge_id; refunds and
dispute lookups go through the capture id.

Webhooks are verified remotely via /v1/notifications/verify-webhook-signature
with the paypal-* transmission headers and PAYPAL_WEBHOOK_ID.
"""

from __future__ import annotations
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import requests

from services.payments.base import (
    ChargeResult, RefundResult, WebhookEvent, format_major, header,
)
from services.payments.errors import (
    GatewayError, GatewayTimeout, InvalidSignature, RefundError,
)

log = logging.getLogger(__name__)

_TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}


class PayPalAdapter:
    name = "paypal"

    def __init__(self, client_id: str, client_secret: str, webhook_id: str = "",
                 api_url: str = "https://api-m.sandbox.paypal.com", timeout: float = 15.0,
                 session: requests.Session | None = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: str | None = None
        self._token_expires = 0.0

    # ----- HTTP -----

    def _request(self, method: str, path: str, **kw):
        try:
            return self.session.request(method, f"{self.api_url}{path}",
                                        timeout=self.timeout, **kw)
        except requests.Timeout as e:
            log.warning("paypal %s %s timed out", method, path)
            raise GatewayTimeout(f"paypal timeout on {path}: {e}") from e
        except requests.RequestException as e:
            log.warning("paypal %s %s failed: %s", method, path, e)
            raise GatewayError(f"paypal unreachable on {path}: {e}") from e

    def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires - 60:
            return self._token
        resp = self._request(
            "POST", "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        if resp.status_code != 200:
            raise GatewayError(f"paypal auth failed ({resp.status_code})")
        body = self._json(resp)
        if not body.get("access_token"):
            raise GatewayError("paypal auth failed: no access_token")
        try:
            expires_in = int(body.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        self._token = body["access_token"]
        self._token_expires = time.time() + expires_in
        return self._token

    def _api(self, method: str, path: str, payload: dict | None = None,
             request_id: str | None = None):
        headers = {"Authorization": f"Bearer {self._access_token()}",
                   "Content-Type": "application/json"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return self._request(method, path, json=payload, headers=headers)

    @staticmethod
    def _json(resp) -> dict:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _error_of(body: Mapping[str, Any], fallback: str) -> str:
        details = body.get("details") or []
        if details and details[0].get("issue"):
            return details[0]["issue"]
        return body.get("name") or body.get("message") or fallback

    # ----- charge -----

    def validate_details(self, payment_details: Mapping[str, Any]) -> None:
        # the buyer approves on PayPal's side; nothing is required up front
        return None

    def charge(self, amount: Decimal, currency: str, payment_details: Mapping[str, Any],
               order_ref: str, payment_id: str) -> ChargeResult:
        order_body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order_ref,
                "custom_id": payment_id,
                "amount": {"currency_code": currency.upper(), "value": format_major(amount)},
            }],
        }
        resp = self._api("POST", "/v2/checkout/orders", order_body, request_id=payment_id)
        body = self._json(resp)
        if resp.status_code in (401, 403, 429) or resp.status_code >= 500:
            raise GatewayError(f"paypal create order responded {resp.status_code}")
        if resp.status_code >= 400:
            return ChargeResult(False, gateway_response=body,
                                error=self._error_of(body, "PayPal order rejected"))

        paypal_order_id = body.get("id")
        resp = self._api("POST", f"/v2/checkout/orders/{paypal_order_id}/capture",
                         request_id=f"{payment_id}-capture")
        capture_body = self._json(resp)
        if resp.status_code in (401, 403, 429) or resp.status_code >= 500:
            raise GatewayError(f"paypal capture responded {resp.status_code}")
        if resp.status_code >= 400:
            return ChargeResult(False, transaction_id=paypal_order_id,
                                gateway_response=capture_body,
                                error=self._error_of(capture_body, "PayPal capture rejected"))

        capture = _first_capture(capture_body)
        if capture.get("status") == "COMPLETED":
            return ChargeResult(True, paypal_order_id, capture.get("id"), capture_body)
        return ChargeResult(
            False, transaction_id=paypal_order_id, charge_id=capture.get("id"),
            gateway_response=capture_body,
            error=f"capture {capture.get('status') or capture_body.get('status') or 'unknown'}",
        )

    # ----- refund -----

    def refund(self, transaction_id: str, amount: Decimal, reason: str | None,
               charge_id: str | None = None, currency: str = "USD",
               payment_id: str | None = None) -> RefundResult:
        if not charge_id:
            raise RefundError("PayPal refund needs the capture id")
        payload: dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": format_major(amount)},
        }
        if reason:
            payload["note_to_payer"] = reason[:255]
        try:
            resp = self._api("POST", f"/v2/payments/captures/{charge_id}/refund", payload,
                             request_id=f"{payment_id}-refund" if payment_id else None)
        except GatewayError as e:
            raise RefundError(str(e)) from e
        body = self._json(resp)
        if resp.status_code >= 400:
            raise RefundError(self._error_of(body, f"paypal refund rejected ({resp.status_code})"))
        if body.get("status") in ("CANCELLED", "FAILED"):
            raise RefundError(f"paypal refund {body.get('status')}")
        return RefundResult(body.get("id"), (body.get("status") or "PENDING").lower(), body)

    # ----- webhooks -----

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if not self.webhook_id:
            raise InvalidSignature("PayPal webhook id not configured")
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidSignature(f"Malformed PayPal event: {e}") from e
        if not isinstance(event, dict):
            raise InvalidSignature("Malformed PayPal event: not an object")

        verify = {k: header(headers, h) for k, h in _TRANSMISSION_HEADERS.items()}
        if not all(verify.values()):
            raise InvalidSignature("Missing PayPal transmission headers")
        verify["webhook_id"] = self.webhook_id
        verify["webhook_event"] = event

        try:
            resp = self._api("POST", "/v1/notifications/verify-webhook-signature", verify)
        except GatewayError as e:
            raise InvalidSignature(f"PayPal verification unavailable: {e}") from e
        if resp.status_code != 200 or self._json(resp).get("verification_status") != "SUCCESS":
            raise InvalidSignature("Invalid signature")
        try:
            return parse_paypal_event(event)
        except (AttributeError, TypeError, ValueError, InvalidOperation) as e:
            raise InvalidSignature(f"Malformed PayPal event: {e}") from e


def _first_capture(order: Mapping[str, Any]) -> dict:
    for unit in order.get("purchase_units") or []:
        caps = (unit.get("payments") or {}).get("captures") or []
        if caps:
            return caps[0]
    return {}


def _capture_order_id(resource: Mapping[str, Any]) -> str | None:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id")


def _capture_id_from_links(resource: Mapping[str, Any]) -> str | None:
    for link in resource.get("links") or []:
        if link.get("rel") == "up" and "/captures/" in (link.get("href") or ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


def parse_paypal_event(event: Mapping[str, Any]) -> WebhookEvent:
    etype = event.get("event_type") or ""
    res = event.get("resource") or {}
    evt = WebhookEvent(
        provider="paypal",
        external_event_id=event.get("id"),
        event_type=etype,
        correlation_id=res.get("custom_id"),
        raw=dict(event),
    )
    amount = (res.get("amount") or {}).get("value")
    if amount is not None:
        evt.amount = Decimal(str(amount))

    if etype in ("PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED"):
        evt.transaction_id = _capture_order_id(res)
        evt.charge_id = res.get("id")
        evt.reason = (res.get("status_details") or {}).get("reason")
    elif etype == "PAYMENT.CAPTURE.REFUNDED":
        # resource is the refund; the capture is linked via rel=up
        evt.refund_id = res.get("id")
        evt.charge_id = _capture_id_from_links(res)
        evt.transaction_id = _capture_order_id(res)
    elif etype.startswith("CUSTOMER.DISPUTE."):
        txs = res.get("disputed_transactions") or [{}]
        evt.charge_id = txs[0].get("seller_transaction_id")
        evt.correlation_id = evt.correlation_id or txs[0].get("custom")
        evt.reason = res.get("reason")
        disputed = res.get("dispute_amount") or {}
        if disputed.get("value") is not None:
            evt.amount = Decimal(str(disputed["value"]))
    elif etype.startswith("CHECKOUT.ORDER."):
        evt.transaction_id = res.get("id")
        units = res.get("purchase_units") or [{}]
        evt.correlation_id = units[0].get("custom_id")
    return evt
