# services/payments/reconciler.py
"""
Webhook reconciliation.

Every delivery is authenticated by its provider's adapter and recorded once
per (provider, event id). The event is then mapped through a fixed table to
one of: complete, fail, refund, dispute, log. Actions are idempotent against
the stored status, so redelivery and out-of-order delivery are no-ops rather
than errors. All payment/order writes are compare-and-set.
"""

from __future__ import annotations
import json
import logging
from decimal import Decimal
from typing import Any, Mapping

from models import orders_store, payments_store
from models.audit_store import audit
from models.schema import PaymentStatus
from services.metrics import WEBHOOK_EVENTS
from services.notifications import EventBus, safe_publish
from services.payments.base import GatewayAdapter, WebhookEvent
from services.payments.errors import InvalidSignature, ValidationError
from services.payments.orchestrator import settle_order_paid

log = logging.getLogger(__name__)

COMPLETE, FAIL, REFUND, DISPUTE, LOG = "complete", "fail", "refund", "dispute", "log"

EVENT_ACTIONS: dict[str, dict[str, str]] = {
    "stripe": {
        "payment_intent.succeeded": COMPLETE,
        "payment_intent.payment_failed": FAIL,
        "charge.refunded": REFUND,
        "charge.dispute.created": DISPUTE,
        "invoice.payment_succeeded": LOG,
    },
    "paypal": {
        "PAYMENT.CAPTURE.COMPLETED": COMPLETE,
        "PAYMENT.CAPTURE.DENIED": FAIL,
        "PAYMENT.CAPTURE.REFUNDED": REFUND,
        "CUSTOMER.DISPUTE.CREATED": DISPUTE,
        "CHECKOUT.ORDER.APPROVED": LOG,
    },
    "sandbox": {
        "payment.succeeded": COMPLETE,
        "payment.failed": FAIL,
        "payment.refunded": REFUND,
        "payment.disputed": DISPUTE,
    },
}

_OPEN = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


def _event_type_guess(raw_body: bytes) -> str:
    """Best-effort type of an unauthenticated body, for the event log only."""
    try:
        doc = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return "unknown"
    if not isinstance(doc, dict):
        return "unknown"
    return str(doc.get("type") or doc.get("event_type") or "unknown")[:64]


class WebhookReconciler:
    def __init__(self, adapters_by_provider: Mapping[str, GatewayAdapter],
                 events: EventBus | None = None):
        self.adapters = dict(adapters_by_provider)
        self.events = events

    def providers(self) -> list[str]:
        return sorted(self.adapters)

    def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValidationError(f"Unknown gateway: {provider}")

        try:
            evt = adapter.verify_webhook(raw_body, headers)
        except InvalidSignature:
            payments_store.record_webhook_event(
                provider, None, _event_type_guess(raw_body),
                raw_body.decode("utf-8", "replace"), signature_ok=False)
            WEBHOOK_EVENTS.labels(provider=provider, event="unverified", outcome="rejected").inc()
            audit("payment.webhook", target_type="provider", target_id=provider,
                  outcome="failure", status=400, actor="system",
                  extra={"provider": provider, "reason": "invalid_signature"})
            log.warning("webhook from %s rejected: invalid signature", provider)
            raise

        event_row_id, created = payments_store.record_webhook_event(
            provider, evt.external_event_id, evt.event_type, evt.raw, signature_ok=True)
        if not created:
            log.info("webhook %s/%s redelivered", provider, evt.external_event_id)

        result = self._dispatch(provider, evt)
        if not created:
            result["duplicate"] = True

        payments_store.set_event_outcome(event_row_id, _outcome_label(result),
                                         payment_id=result.get("paymentId"))
        WEBHOOK_EVENTS.labels(provider=provider, event=evt.event_type or "unknown",
                              outcome=_outcome_label(result)).inc()
        audit("payment.webhook", target_type="payment", target_id=result.get("paymentId"),
              outcome="noop" if result.get("noop") or result["status"] != "processed" else "success",
              status=200, actor="system",
              extra={"provider": provider, "event_type": evt.event_type,
                     "transaction_id": evt.transaction_id})
        return result

    # ----- dispatch -----

    def _dispatch(self, provider: str, evt: WebhookEvent) -> dict:
        action = EVENT_ACTIONS.get(provider, {}).get(evt.event_type)
        if action is None:
            log.info("webhook %s event %s ignored", provider, evt.event_type)
            return {"status": "ignored", "event_type": evt.event_type}
        if action == LOG:
            log.info("webhook %s event %s logged (id=%s tx=%s)", provider, evt.event_type,
                     evt.external_event_id, evt.transaction_id)
            return {"status": "logged", "event_type": evt.event_type}

        payment = payments_store.find_payment_for_event(
            evt.transaction_id, evt.charge_id, evt.correlation_id)
        if payment is None:
            log.warning("webhook %s event %s matched no payment (tx=%s charge=%s ref=%s)",
                        provider, evt.event_type, evt.transaction_id, evt.charge_id,
                        evt.correlation_id)
            return {"status": "processed", "matched": False, "event_type": evt.event_type}

        handler = getattr(self, f"_on_{action}")
        applied = handler(payment, evt)
        result = {"status": "processed", "matched": True, "event_type": evt.event_type,
                  "action": action, "paymentId": payment["payment_id"]}
        if not applied:
            result["noop"] = True
        else:
            current = payments_store.get_payment(payment["payment_id"])
            safe_publish(self.events, f"payment.{action}", {
                "payment_id": current["payment_id"], "order_id": current["order_id"],
                "status": current["status"], "source": provider,
            })
        return result

    def _on_complete(self, payment: dict, evt: WebhookEvent) -> bool:
        pid, status = payment["payment_id"], payment["status"]
        if status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
            return False
        if status not in _OPEN:
            # FAILED/CANCELLED are terminal: the charge went through anyway
            if not payment["needs_reconciliation"]:
                payments_store.flag_for_reconciliation(
                    pid, f"success event {evt.external_event_id} for {status} payment")
            log.warning("success event for %s payment %s; flagged for reconciliation",
                        status, pid)
            return False
        if evt.amount is not None and Decimal(evt.amount) != Decimal(payment["amount"]):
            payments_store.flag_for_reconciliation(
                pid, f"amount mismatch: gateway {evt.amount} vs {payment['amount']}")
            log.warning("success event for payment %s with amount %s (expected %s); not applied",
                        pid, evt.amount, payment["amount"])
            return False
        if not payments_store.complete_charge(pid, evt.transaction_id, evt.charge_id):
            return False
        settle_order_paid(payment["order_id"], pid)
        log.info("payment %s completed by %s webhook", pid, evt.provider)
        return True

    def _on_fail(self, payment: dict, evt: WebhookEvent) -> bool:
        if payment["status"] not in _OPEN:
            return False
        moved = payments_store.fail_charge(payment["payment_id"], evt.reason or "Payment failed",
                                           transaction_id=evt.transaction_id)
        if moved:
            log.info("payment %s failed by %s webhook", payment["payment_id"], evt.provider)
        return moved

    def _on_refund(self, payment: dict, evt: WebhookEvent) -> bool:
        if payment["status"] != PaymentStatus.COMPLETED.value:
            return False
        amount = evt.amount if evt.amount is not None else payment["amount"]
        moved = payments_store.mark_refunded(payment["payment_id"], evt.refund_id, amount,
                                             reason=evt.reason or f"refunded via {evt.provider}")
        if moved:
            orders_store.mark_order_refunded(payment["order_id"], payment["payment_id"])
            log.info("payment %s refunded by %s webhook", payment["payment_id"], evt.provider)
        return moved

    def _on_dispute(self, payment: dict, evt: WebhookEvent) -> bool:
        pid, status = payment["payment_id"], payment["status"]
        reason = f"Disputed: {evt.reason or 'unspecified'}"
        if status in _OPEN:
            return payments_store.fail_charge(pid, reason, transaction_id=evt.transaction_id)
        if status == PaymentStatus.COMPLETED.value:
            if payment["needs_reconciliation"] and payment["reconciliation_note"] == reason:
                return False
            payments_store.flag_for_reconciliation(pid, reason)
            log.warning("payment %s disputed (%s); flagged for reconciliation", pid, evt.reason)
            return True
        return False


def _outcome_label(result: Mapping[str, Any]) -> str:
    if result["status"] != "processed":
        return result["status"]
    if result.get("matched") is False:
        return "unmatched"
    return "noop" if result.get("noop") else "applied"
