# services/payments/stripe_provider.py
"""
Stripe-style payment intent adapters.

IntentAdapter confirms an intent against a payment method the client already
tokenized (paymentDetails.paymentMethodId). CardAdapter is the same call with
raw card fields sent as payment_method_data.

Both speak form-encoded POSTs to STRIPE_API_URL (default
https://api.stripe.com) and verify webhooks with the Stripe-Signature header:
HMAC-SHA256(STRIPE_WEBHOOK_SECRET, "<t>.<raw body>") compared in constant time.

Declines (HTTP 402, or an intent that did not reach 'succeeded') are returned
as ChargeResult(success=False). Timeouts, connection errors, 401/403, 429 and
5xx raise GatewayError.
"""

from __future__ import annotations
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping

import requests

from services.payments.base import (
    ChargeResult, RefundResult, WebhookEvent,
    from_minor_units, header, to_minor_units, verify_signature_header,
)
from services.payments.errors import (
    GatewayError, GatewayTimeout, InvalidSignature, RefundError, ValidationError,
)

log = logging.getLogger(__name__)

# Stripe only accepts these refund reasons; anything else goes to metadata
_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _flatten(obj: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """{'a': {'b': 1}} -> {'a[b]': 1}, the way Stripe expects form fields."""
    out: Dict[str, Any] = {}
    for k, v in obj.items():
        key = f"{prefix}[{k}]" if prefix else k
        if isinstance(v, Mapping):
            out.update(_flatten(v, key))
        elif v is not None:
            out[key] = str(v).lower() if isinstance(v, bool) else v
    return out


class IntentAdapter:
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str = "",
                 api_url: str = "https://api.stripe.com", timeout: float = 15.0,
                 webhook_tolerance: int = 300, session: requests.Session | None = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.webhook_tolerance = webhook_tolerance
        self.session = session or requests.Session()

    # ----- HTTP -----

    def _post(self, path: str, form: Mapping[str, Any], idempotency_key: str | None = None):
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            return self.session.post(f"{self.api_url}{path}", data=dict(form),
                                     headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            log.warning("stripe POST %s timed out", path)
            raise GatewayTimeout(f"stripe timeout on {path}: {e}") from e
        except requests.RequestException as e:
            log.warning("stripe POST %s failed: %s", path, e)
            raise GatewayError(f"stripe unreachable on {path}: {e}") from e

    @staticmethod
    def _json(resp) -> dict:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # ----- charge -----

    def validate_details(self, payment_details: Mapping[str, Any]) -> None:
        if not (payment_details.get("paymentMethodId") or payment_details.get("stripePaymentMethodId")):
            raise ValidationError("paymentDetails.paymentMethodId is required")

    def _payment_method_fields(self, payment_details: Mapping[str, Any]) -> Dict[str, Any]:
        return {"payment_method": payment_details.get("paymentMethodId")
                or payment_details.get("stripePaymentMethodId")}

    def charge(self, amount: Decimal, currency: str, payment_details: Mapping[str, Any],
               order_ref: str, payment_id: str) -> ChargeResult:
        form = _flatten({
            "amount": to_minor_units(amount),
            "currency": (currency or "usd").lower(),
            "confirm": True,
            "confirmation_method": "manual",
            "metadata": {"order_id": order_ref, "payment_id": payment_id},
            **self._payment_method_fields(payment_details),
        })
        resp = self._post("/v1/payment_intents", form, idempotency_key=payment_id)
        body = self._json(resp)

        if resp.status_code in (401, 403) or resp.status_code == 429 or resp.status_code >= 500:
            raise GatewayError(f"stripe responded {resp.status_code}")

        if resp.status_code >= 400:
            # 402 card_error and 400 invalid_request_error are business outcomes
            err = body.get("error") or {}
            intent = err.get("payment_intent") or {}
            return ChargeResult(
                success=False,
                transaction_id=intent.get("id"),
                gateway_response=body,
                error=err.get("code") or err.get("message") or "Stripe payment failed",
            )

        status = body.get("status")
        if status == "succeeded":
            return ChargeResult(True, body.get("id"), _charge_id_of(body), body)
        last_err = body.get("last_payment_error") or {}
        return ChargeResult(
            success=False, transaction_id=body.get("id"), gateway_response=body,
            error=last_err.get("code") or last_err.get("message") or f"payment intent {status}",
        )

    # ----- refund -----

    def refund(self, transaction_id: str, amount: Decimal, reason: str | None,
               charge_id: str | None = None, currency: str = "USD",
               payment_id: str | None = None) -> RefundResult:
        form: Dict[str, Any] = {"payment_intent": transaction_id,
                                "amount": to_minor_units(amount)}
        if reason in _REFUND_REASONS:
            form["reason"] = reason
        else:
            form["reason"] = "requested_by_customer"
            if reason:
                form["metadata[note]"] = reason[:500]
        try:
            resp = self._post("/v1/refunds", form,
                              idempotency_key=f"{payment_id}-refund" if payment_id else None)
        except GatewayError as e:
            raise RefundError(str(e)) from e
        body = self._json(resp)
        if resp.status_code >= 400:
            err = body.get("error") or {}
            raise RefundError(err.get("message") or f"stripe refund rejected ({resp.status_code})")
        if body.get("status") in ("failed", "canceled"):
            raise RefundError(f"stripe refund {body.get('status')}")
        return RefundResult(body.get("id"), body.get("status") or "pending", body)

    # ----- webhooks -----

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        sig = header(headers, "Stripe-Signature")
        if not self.webhook_secret:
            raise InvalidSignature("Stripe webhook secret not configured")
        if not verify_signature_header(self.webhook_secret, raw_body, sig, self.webhook_tolerance):
            raise InvalidSignature("Invalid signature")
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidSignature(f"Malformed Stripe event: {e}") from e
        if not isinstance(event, dict):
            raise InvalidSignature("Malformed Stripe event: not an object")
        try:
            return parse_stripe_event(event)
        except (AttributeError, TypeError, ValueError, InvalidOperation) as e:
            raise InvalidSignature(f"Malformed Stripe event: {e}") from e


class CardAdapter(IntentAdapter):
    """Card details go straight into payment_method_data; same intent API otherwise."""

    _REQUIRED = ("cardNumber", "expiryMonth", "expiryYear")

    def validate_details(self, payment_details: Mapping[str, Any]) -> None:
        missing = [k for k in self._REQUIRED if not payment_details.get(k)]
        if missing:
            raise ValidationError(f"paymentDetails missing: {', '.join(missing)}")
        if not (payment_details.get("cvv") or payment_details.get("cvc")):
            raise ValidationError("paymentDetails missing: cvv")
        try:
            int(payment_details["expiryMonth"])
            int(payment_details["expiryYear"])
        except (TypeError, ValueError) as e:
            raise ValidationError("expiryMonth/expiryYear must be numeric") from e

    def _payment_method_fields(self, payment_details: Mapping[str, Any]) -> Dict[str, Any]:
        return {"payment_method_data": {
            "type": "card",
            "card": {
                "number": str(payment_details["cardNumber"]).replace(" ", ""),
                "exp_month": int(payment_details["expiryMonth"]),
                "exp_year": int(payment_details["expiryYear"]),
                "cvc": payment_details.get("cvv") or payment_details.get("cvc"),
            },
            "billing_details": {
                "name": payment_details.get("cardHolderName") or payment_details.get("cardholderName"),
            },
        }}


def _charge_id_of(intent: Mapping[str, Any]) -> str | None:
    latest = intent.get("latest_charge")
    if isinstance(latest, Mapping):
        return latest.get("id")
    if latest:
        return latest
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0].get("id") if charges else None


def parse_stripe_event(event: Mapping[str, Any]) -> WebhookEvent:
    etype = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    evt = WebhookEvent(
        provider="stripe",
        external_event_id=event.get("id"),
        event_type=etype,
        correlation_id=metadata.get("payment_id"),
        raw=dict(event),
    )
    if etype.startswith("payment_intent."):
        evt.transaction_id = obj.get("id")
        evt.charge_id = _charge_id_of(obj)
        if obj.get("amount") is not None:
            evt.amount = from_minor_units(obj["amount"])
        last_err = obj.get("last_payment_error") or {}
        evt.reason = last_err.get("message")
    elif etype.startswith("charge.dispute."):
        evt.transaction_id = obj.get("payment_intent")
        evt.charge_id = obj.get("charge")
        evt.reason = obj.get("reason")
        if obj.get("amount") is not None:
            evt.amount = from_minor_units(obj["amount"])
    elif etype.startswith("charge."):
        evt.transaction_id = obj.get("payment_intent")
        evt.charge_id = obj.get("id")
        refunds = (obj.get("refunds") or {}).get("data") or []
        evt.refund_id = refunds[0].get("id") if refunds else None
        amount = obj.get("amount_refunded") if etype == "charge.refunded" else obj.get("amount")
        if amount is not None:
            evt.amount = from_minor_units(amount)
    else:
        evt.transaction_id = obj.get("id")
    return evt
