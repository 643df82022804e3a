# services/payments/dummy_provider.py
"""
A development-only adapter that *simulates* a gateway without any network.
Useful to run end-to-end flows (process, webhook, refund) locally and in tests.

How it works:
- charge(...) succeeds with deterministic ids ("sbx_<payment_id>"), unless
  paymentDetails asks otherwise: {"simulate": "decline" | "timeout" | "error"},
  or a card number ending in 0002 (declined like the usual test card).
- verify_webhook(...) accepts our own JSON events signed in the
  X-Sandbox-Signature header ('t=<ts>,v1=<hmac>'), see sign_event().
"""

from __future__ import annotations
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from services.payments.base import (
    ChargeResult, RefundResult, WebhookEvent, header, sign_payload, verify_signature_header,
)
from services.payments.errors import GatewayError, GatewayTimeout, InvalidSignature, RefundError

SIGNATURE_HEADER = "X-Sandbox-Signature"


class SandboxAdapter:
    name = "sandbox"

    def __init__(self, webhook_secret: str = "dev", tolerance: int = 0):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def validate_details(self, payment_details: Mapping[str, Any]) -> None:
        return None

    def charge(self, amount: Decimal, currency: str, payment_details: Mapping[str, Any],
               order_ref: str, payment_id: str) -> ChargeResult:
        mode = (payment_details.get("simulate") or "").lower()
        if not mode and str(payment_details.get("cardNumber") or "").endswith("0002"):
            mode = "decline"
        if mode == "timeout":
            raise GatewayTimeout("sandbox simulated timeout")
        if mode == "error":
            raise GatewayError("sandbox simulated outage")

        tx = f"sbx_{payment_id}"
        response = {"id": tx, "amount": str(amount), "currency": currency,
                    "order": order_ref, "sandbox": True}
        if mode == "decline":
            response["status"] = "declined"
            return ChargeResult(False, tx, None, response,
                                payment_details.get("declineCode") or "card_declined")
        response["status"] = "succeeded"
        return ChargeResult(True, tx, f"sbxch_{payment_id}", response)

    def refund(self, transaction_id: str, amount: Decimal, reason: str | None,
               charge_id: str | None = None, currency: str = "USD",
               payment_id: str | None = None) -> RefundResult:
        if reason == "simulate_failure":
            raise RefundError("sandbox simulated refund rejection")
        rid = f"sbxre_{transaction_id}"
        return RefundResult(rid, "succeeded",
                            {"id": rid, "amount": str(amount), "currency": currency})

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        sig = header(headers, SIGNATURE_HEADER)
        if not verify_signature_header(self.webhook_secret, raw_body, sig, self.tolerance):
            raise InvalidSignature("Invalid signature")
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidSignature(f"Malformed sandbox event: {e}") from e

        # {"id": "...", "type": "payment.succeeded", "data": {"transactionId": ...}}
        if not isinstance(payload, dict):
            raise InvalidSignature("Malformed sandbox event: not an object")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise InvalidSignature("Malformed sandbox event: data is not an object")
        amount = data.get("amount")
        try:
            amount = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            raise InvalidSignature(f"Malformed sandbox event: bad amount {amount!r}") from None
        return WebhookEvent(
            provider=self.name,
            external_event_id=payload.get("id"),
            event_type=payload.get("type") or "",
            transaction_id=data.get("transactionId"),
            charge_id=data.get("chargeId"),
            correlation_id=data.get("paymentId"),
            amount=amount,
            reason=data.get("reason"),
            refund_id=data.get("refundId"),
            raw=payload,
        )


def sign_event(secret: str, raw_body: bytes, timestamp: int | None = None) -> str:
    """Build an X-Sandbox-Signature value for a raw body (scripts and tests)."""
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return f"t={ts},v1={sign_payload(secret, ts, raw_body)}"
