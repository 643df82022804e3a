# services/payments/orchestrator.py
"""
Payment orchestration: validate, record, charge, then settle the payment and
its order with conditional writes.

The payment row is inserted as PROCESSING before the gateway is called, so a
crash mid-charge leaves a row the stale sweep can find. The gateway outcome is
then applied with a compare-and-set; if a webhook got there first the write is
a no-op and the stored row is returned unchanged.
"""

from __future__ import annotations
import logging
import time
from typing import Any, Mapping

from models import orders_store, payments_store
from models.audit_store import audit
from models.schema import OrderPaymentStatus, PaymentMethod, PaymentStatus
from services.metrics import GATEWAY_LATENCY, PAYMENTS_PROCESSED
from services.notifications import EventBus, Notifier, safe_notify, safe_publish
from services.payments.base import ChargeResult, GatewayAdapter
from services.payments.errors import (
    GatewayTimeout, OrderAlreadyPaid, OrderNotFound, ValidationError,
)

log = logging.getLogger(__name__)

TIMEOUT_REASON = "gateway_timeout: outcome unknown"


def parse_method(method: Any) -> PaymentMethod:
    try:
        return PaymentMethod(str(method or "").upper())
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {method!r}") from None


class PaymentOrchestrator:
    def __init__(self, adapters: Mapping[PaymentMethod, GatewayAdapter],
                 notifier: Notifier | None = None, events: EventBus | None = None):
        self.adapters = dict(adapters)
        self.notifier = notifier
        self.events = events

    def adapter_for(self, method: PaymentMethod) -> GatewayAdapter:
        adapter = self.adapters.get(method)
        if adapter is None:
            raise ValidationError(f"Payment method {method.value} is not available")
        return adapter

    def process_payment(self, user_id: str, order_id: str, method: Any,
                        payment_details: Mapping[str, Any] | None) -> dict:
        # ---- preconditions: nothing is written until all of these pass ----
        pm = parse_method(method)
        adapter = self.adapter_for(pm)
        if not isinstance(payment_details, Mapping):
            raise ValidationError("paymentDetails must be an object")
        adapter.validate_details(payment_details)

        order = orders_store.find_order_for_user(order_id, user_id)
        if not order:
            raise OrderNotFound()
        if order["payment_status"] == OrderPaymentStatus.PAID.value:
            raise OrderAlreadyPaid()

        payment = payments_store.create_payment(
            order_id=order["id"], user_id=user_id, amount=order["total_amount"],
            currency=order["currency"], method=pm.value,
        )
        pid = payment["payment_id"]
        log.info("payment %s created for order %s (%s %s via %s)", pid, order["id"],
                 payment["amount"], payment["currency"], adapter.name)

        # ---- gateway call; every failure becomes a failed result ----
        timed_out = False
        started = time.monotonic()
        try:
            result = adapter.charge(payment["amount"], payment["currency"], payment_details,
                                    order["order_number"], pid)
        except GatewayTimeout as e:
            log.warning("payment %s: gateway timeout (%s)", pid, e)
            timed_out = True
            result = ChargeResult(False, error=TIMEOUT_REASON)
        except Exception as e:
            log.exception("payment %s: gateway call failed", pid)
            result = ChargeResult(False, error=str(e) or e.__class__.__name__)
        finally:
            GATEWAY_LATENCY.labels(provider=adapter.name).observe(time.monotonic() - started)

        # ---- settle ----
        if result.success:
            self._settle_success(pid, order["id"], result)
        else:
            moved = payments_store.fail_charge(
                pid, result.error or "Payment failed", transaction_id=result.transaction_id,
                gateway_response=result.gateway_response or None,
                needs_reconciliation=timed_out,
            )
            if not moved:
                log.info("payment %s already settled elsewhere; keeping stored state", pid)

        stored = payments_store.get_payment(pid)
        succeeded = stored["status"] == PaymentStatus.COMPLETED.value
        PAYMENTS_PROCESSED.labels(method=pm.value,
                                  outcome="completed" if succeeded else "failed").inc()

        safe_notify(self.notifier, "payment_succeeded" if succeeded else "payment_failed", stored)
        safe_publish(self.events, "payment.processed", {
            "payment_id": pid, "order_id": stored["order_id"], "user_id": user_id,
            "status": stored["status"], "amount": str(stored["amount"]),
        })
        audit("payment.process", target_type="payment", target_id=pid,
              outcome="success" if succeeded else "failure",
              status=201, actor=user_id,
              extra={"method": pm.value, "amount": str(stored["amount"]),
                     "transaction_id": stored["transaction_id"],
                     "reason": stored["failure_reason"]})
        return stored

    def _settle_success(self, payment_id: str, order_id: str, result: ChargeResult) -> None:
        moved = payments_store.complete_charge(
            payment_id, result.transaction_id, result.charge_id,
            gateway_response=result.gateway_response or None,
        )
        if not moved:
            current = payments_store.get_payment(payment_id)
            if current and current["status"] != PaymentStatus.COMPLETED.value:
                # charged at the gateway but the row moved on (sweep or webhook)
                payments_store.flag_for_reconciliation(
                    payment_id, f"charged at gateway but stored as {current['status']}")
                log.warning("payment %s charged but stored as %s; flagged for reconciliation",
                            payment_id, current["status"])
                return
        settle_order_paid(order_id, payment_id)


def settle_order_paid(order_id: str, payment_id: str) -> bool:
    """
    Order CAS after a completed charge. Losing the CAS to a different payment
    leaves this payment COMPLETED but flagged; returns False in that case.
    """
    if orders_store.mark_order_paid(order_id, payment_id):
        return True
    order = orders_store.get_order(order_id)
    if order and order["payment_id"] == payment_id:
        return True
    other = order["payment_id"] if order else None
    payments_store.flag_for_reconciliation(payment_id, f"order {order_id} already paid by {other}")
    log.warning("order %s was already paid by another payment; payment %s flagged "
                "for reconciliation", order_id, payment_id)
    return False
