# models/orders_store.py
"""
Order collaborator store.

Only the payment-facing side of an order lives here: lookup by owner and the
conditional payment-status writes used by the payment core. Every write is a
single UPDATE guarded by the current payment_status, so two writers racing on
the same order cannot both win.
"""

from __future__ import annotations
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from flask import current_app, has_app_context
from sqlalchemy import select, update
from models.base import session_scope
from models.schema import Order, OrderPaymentStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_currency() -> str:
    if has_app_context():
        return current_app.config.get("PAYMENT_CURRENCY") or "USD"
    return (os.getenv("PAYMENT_CURRENCY") or "USD").upper()


def _order_dict(o: Order) -> dict:
    return {
        "id": o.id,
        "order_number": o.order_number,
        "user_id": o.user_id,
        "total_amount": Decimal(o.total_amount),
        "currency": o.currency,
        "payment_status": o.payment_status,
        "payment_id": o.payment_id,
        "created_at": o.created_at,
        "updated_at": o.updated_at,
    }


def create_order(user_id: str, total_amount, currency: str | None = None,
                 order_number: str | None = None, order_id: str | None = None) -> dict:
    oid = order_id or uuid.uuid4().hex
    number = order_number or f"ORD-{oid[:10].upper()}"
    now = _now()
    with session_scope() as s:
        o = Order(
            id=oid, order_number=number, user_id=user_id,
            total_amount=Decimal(str(total_amount)).quantize(Decimal("0.01")),
            currency=(currency or _default_currency()).upper(),
            payment_status=OrderPaymentStatus.UNPAID.value,
            created_at=now, updated_at=now,
        )
        s.add(o)
        s.flush()
        return _order_dict(o)


def get_order(order_id: str) -> Optional[dict]:
    if not order_id:
        return None
    with session_scope() as s:
        o = s.get(Order, order_id)
        return _order_dict(o) if o else None


def find_order_for_user(order_id: str, user_id: str) -> Optional[dict]:
    if not order_id or not user_id:
        return None
    with session_scope() as s:
        o = s.execute(
            select(Order).where(Order.id == order_id, Order.user_id == user_id)
        ).scalars().first()
        return _order_dict(o) if o else None


def order_summaries(order_ids: list[str]) -> dict[str, dict]:
    if not order_ids:
        return {}
    with session_scope() as s:
        rows = s.execute(
            select(Order.id, Order.order_number, Order.total_amount)
            .where(Order.id.in_(set(order_ids)))
        ).all()
        return {r.id: {"order_number": r.order_number, "total_amount": Decimal(r.total_amount)}
                for r in rows}


def mark_order_paid(order_id: str, payment_id: str) -> bool:
    """Compare-and-set: only an order that is not already PAID flips to PAID."""
    with session_scope() as s:
        res = s.execute(
            update(Order)
            .where(Order.id == order_id,
                   Order.payment_status != OrderPaymentStatus.PAID.value)
            .values(payment_status=OrderPaymentStatus.PAID.value,
                    payment_id=payment_id, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1


def mark_order_refunded(order_id: str, payment_id: str) -> bool:
    """PAID -> REFUNDED, only when the order was paid by this payment."""
    with session_scope() as s:
        res = s.execute(
            update(Order)
            .where(Order.id == order_id,
                   Order.payment_status == OrderPaymentStatus.PAID.value,
                   Order.payment_id == payment_id)
            .values(payment_status=OrderPaymentStatus.REFUNDED.value,
                    updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1
