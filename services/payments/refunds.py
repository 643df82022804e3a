# services/payments/refunds.py
from __future__ import annotations
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping

from models import orders_store, payments_store
from models.audit_store import audit
from models.schema import PaymentMethod, PaymentStatus
from services.metrics import REFUNDS
from services.notifications import EventBus, Notifier, safe_notify, safe_publish
from services.payments.base import GatewayAdapter
from services.payments.errors import (
    NotRefundable, PaymentNotFound, RefundError, RefundFailed, ValidationError,
)

log = logging.getLogger(__name__)


def parse_refund_amount(amount: Any, original: Decimal) -> Decimal:
    """None -> full amount; otherwise 0 < amount <= original, at cent precision."""
    if amount is None or amount == "":
        return Decimal(original)
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid refund amount: {amount!r}") from None
    if value <= 0:
        raise ValidationError("Refund amount must be positive")
    if value > Decimal(original):
        raise ValidationError(f"Refund amount {value} exceeds payment amount {original}")
    return value


def _same_refund(current: dict | None, refund_id: str | None, value: Decimal) -> bool:
    """True when the stored REFUNDED row is this very refund (its webhook landed first)."""
    if not current or current["status"] != PaymentStatus.REFUNDED.value:
        return False
    if current["refund_id"] not in (None, refund_id):
        return False
    return current["refund_amount"] is None or Decimal(current["refund_amount"]) == value


class RefundHandler:
    def __init__(self, adapters: Mapping[PaymentMethod, GatewayAdapter],
                 notifier: Notifier | None = None, events: EventBus | None = None):
        self.adapters = dict(adapters)
        self.notifier = notifier
        self.events = events

    def refund_payment(self, payment_id: str, amount: Any = None, reason: str | None = None,
                       actor: str | None = None) -> dict:
        payment = payments_store.get_payment(payment_id)
        if not payment:
            raise PaymentNotFound()
        if payment["status"] != PaymentStatus.COMPLETED.value:
            raise NotRefundable(f"Payment is {payment['status']}, only COMPLETED payments "
                                "can be refunded")
        value = parse_refund_amount(amount, payment["amount"])

        adapter = self.adapters.get(PaymentMethod(payment["method"]))
        if adapter is None:
            raise RefundFailed(f"No gateway available for {payment['method']} refunds")

        try:
            result = adapter.refund(payment["transaction_id"], value, reason,
                                    charge_id=payment["gateway_charge_id"],
                                    currency=payment["currency"], payment_id=payment_id)
        except RefundError as e:
            REFUNDS.labels(outcome="failed").inc()
            audit("payment.refund", target_type="payment", target_id=payment_id,
                  outcome="failure", status=RefundFailed.http_status, actor=actor,
                  extra={"amount": str(value), "reason": e.message})
            log.warning("refund of payment %s rejected by %s: %s", payment_id, adapter.name, e)
            raise RefundFailed(f"Refund failed: {e.message}") from e

        if not payments_store.mark_refunded(payment_id, result.refund_id, value, reason):
            current = payments_store.get_payment(payment_id)
            if not _same_refund(current, result.refund_id, value):
                # money left at the gateway but the row records something else
                note = (f"refund {result.refund_id} of {value} issued but payment stored as "
                        f"{current['status']} (refund {current['refund_id']}, "
                        f"{current['refund_amount']})")
                payments_store.flag_for_reconciliation(payment_id, note)
                REFUNDS.labels(outcome="failed").inc()
                audit("payment.refund", target_type="payment", target_id=payment_id,
                      outcome="failure", status=RefundFailed.http_status, actor=actor,
                      extra={"amount": str(value), "refund_id": result.refund_id,
                             "reason": "unrecorded_refund"})
                log.warning("payment %s: %s; flagged for reconciliation", payment_id, note)
                raise RefundFailed("Refund issued but payment state changed concurrently")
            log.info("payment %s refund %s was already recorded from its webhook",
                     payment_id, result.refund_id)
        orders_store.mark_order_refunded(payment["order_id"], payment_id)

        stored = payments_store.get_payment(payment_id)
        REFUNDS.labels(outcome="refunded").inc()
        log.info("payment %s refunded %s %s (refund %s)", payment_id, value,
                 payment["currency"], result.refund_id)
        safe_notify(self.notifier, "refund_completed", stored)
        safe_publish(self.events, "payment.refunded", {
            "payment_id": payment_id, "order_id": stored["order_id"],
            "amount": str(value), "refund_id": result.refund_id,
        })
        audit("payment.refund", target_type="payment", target_id=payment_id,
              outcome="success", status=200, actor=actor,
              extra={"amount": str(value), "refund_id": result.refund_id, "reason": reason})
        return stored
