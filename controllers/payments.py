# controllers/payments.py
from __future__ import annotations
import logging
from decimal import Decimal

from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import SQLAlchemyError

from controllers.auth import admin_required
from models import orders_store, payments_store
from services.payments.errors import (
    InvalidSignature, PaymentError, PaymentNotFound, ValidationError,
)

log = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")

_CAMEL = {
    "payment_id": "paymentId", "order_id": "orderId", "user_id": "userId",
    "amount": "amount", "currency": "currency", "method": "method", "status": "status",
    "transaction_id": "transactionId", "gateway_charge_id": "gatewayChargeId",
    "failure_reason": "failureReason", "refund_id": "refundId",
    "refund_amount": "refundAmount", "refund_reason": "refundReason",
    "needs_reconciliation": "needsReconciliation",
    "reconciliation_note": "reconciliationNote", "processed_at": "processedAt",
    "refunded_at": "refundedAt", "created_at": "createdAt", "updated_at": "updatedAt",
}


def _wire(v):
    if isinstance(v, Decimal):
        return f"{v:.2f}"
    if hasattr(v, "isoformat"):
        return v.isoformat()
    return v


def payment_json(p: dict, order: dict | None = None) -> dict:
    """camelCase view of a payment row; gateway_response stays server-side."""
    out = {camel: _wire(p.get(key)) for key, camel in _CAMEL.items()}
    if order is not None:
        out["order"] = {"orderNumber": order["order_number"],
                        "totalAmount": _wire(order["total_amount"])}
    return out


def _services():
    return current_app.extensions["payments"]


def _can_see(payment: dict) -> bool:
    return current_user.is_admin or payment["user_id"] == current_user.username


def _json_object() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


@payments_bp.errorhandler(PaymentError)
def handle_payment_error(e: PaymentError):
    log.info("%s %s -> %s: %s", request.method, request.path, e.http_status, e.message)
    return jsonify(e.to_dict()), e.http_status


# ----- process / refund -----

@payments_bp.post("/process")
@login_required
def process_payment():
    body = _json_object()
    payment = _services().orchestrator.process_payment(
        user_id=current_user.username,
        order_id=body.get("orderId"),
        method=body.get("method"),
        payment_details=body.get("paymentDetails"),
    )
    return jsonify(payment_json(payment)), 201


@payments_bp.post("/<payment_id>/refund")
@login_required
def refund_payment(payment_id: str):
    payment = payments_store.get_payment(payment_id)
    if not payment or not _can_see(payment):
        raise PaymentNotFound()
    body = _json_object()
    refunded = _services().refunds.refund_payment(
        payment_id, amount=body.get("amount"), reason=body.get("reason"),
        actor=current_user.username,
    )
    return jsonify(payment_json(refunded)), 200


# ----- reads -----

@payments_bp.get("")
@login_required
def list_my_payments():
    rows = payments_store.list_payments_for_user(current_user.username)
    orders = orders_store.order_summaries([p["order_id"] for p in rows])
    return jsonify([payment_json(p, orders.get(p["order_id"])) for p in rows]), 200


@payments_bp.get("/reconciliation")
@admin_required
def reconciliation_queue():
    rows = payments_store.list_needing_reconciliation()
    return jsonify([payment_json(p) for p in rows]), 200


@payments_bp.get("/order/<order_id>")
@login_required
def payment_for_order(order_id: str):
    order = orders_store.get_order(order_id)
    if not order or not (current_user.is_admin or order["user_id"] == current_user.username):
        abort(404)
    payment = payments_store.get_latest_payment_for_order(order_id)
    if not payment:
        raise PaymentNotFound("No payment for this order")
    return jsonify(payment_json(payment, order)), 200


@payments_bp.get("/<payment_id>")
@login_required
def get_payment(payment_id: str):
    payment = payments_store.get_payment(payment_id)
    if not payment or not _can_see(payment):
        raise PaymentNotFound()
    return jsonify(payment_json(payment, orders_store.get_order(payment["order_id"]))), 200


# ----- provider webhooks (no auth, signature-verified, CSRF-exempt in app.py) -----

@payments_bp.post("/webhook/<gateway>")
def webhook(gateway: str):
    reconciler = _services().reconciler
    if gateway not in reconciler.providers():
        abort(404)
    try:
        result = reconciler.handle(gateway, request.get_data() or b"", request.headers)
    except InvalidSignature as e:
        return jsonify(status="error", error=e.code, message=e.message), 400
    except SQLAlchemyError:
        # non-2xx so the gateway redelivers
        log.exception("webhook %s: store failure", gateway)
        return jsonify(status="error", error="store_unavailable"), 503
    except PaymentError as e:
        log.warning("webhook %s: %s", gateway, e.message)
        return jsonify(status="error", error=e.code, message=e.message), 200

    status = "ignored" if result["status"] == "ignored" else "success"
    return jsonify(status=status, result=result), 200


@payments_bp.get("/webhook/health")
def webhook_health():
    providers = _services().reconciler.providers()
    return jsonify(status="ok", endpoints={p: f"/payments/webhook/{p}" for p in providers}), 200
