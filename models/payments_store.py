# models/payments_store.py (Postgres / SQLAlchemy)
"""
Payment record store.

Rows are created once and afterwards only moved forward through the status
table in models.schema. Every status write is one conditional UPDATE on the
current status (compare-and-set); callers look at the boolean result instead
of reading the row first. transaction_id and gateway_charge_id are written
with COALESCE so a value, once set, is never replaced.
"""

from __future__ import annotations
import json
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from models.base import session_scope
from models.schema import Payment, PaymentEvent, PaymentStatus, can_transition, sources_for

_ID_ALPHABET = string.ascii_uppercase + string.digits

_COLUMNS = (
    "payment_id", "order_id", "user_id", "amount", "currency", "method", "status",
    "transaction_id", "gateway_charge_id", "gateway_response", "failure_reason",
    "refund_id", "refund_amount", "refund_reason", "needs_reconciliation",
    "reconciliation_note",
    "processed_at", "refunded_at", "created_at", "updated_at",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_payment_id() -> str:
    """PAY<epoch millis><6 random base36 chars>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"PAY{int(time.time() * 1000)}{suffix}"


def _payment_dict(p: Payment) -> dict:
    return {c: getattr(p, c) for c in _COLUMNS}


def create_payment(order_id: str, user_id: str, amount: Decimal, currency: str, method: str,
                   status: str = PaymentStatus.PROCESSING.value) -> dict:
    now = _now()
    with session_scope() as s:
        p = Payment(
            payment_id=generate_payment_id(),
            order_id=order_id, user_id=user_id,
            amount=Decimal(amount).quantize(Decimal("0.01")),
            currency=currency.upper(), method=method, status=status,
            needs_reconciliation=False,
            created_at=now, updated_at=now,
        )
        s.add(p)
        s.flush()
        return _payment_dict(p)


def get_payment(payment_id: str) -> Optional[dict]:
    if not payment_id:
        return None
    with session_scope() as s:
        p = s.get(Payment, payment_id)
        return _payment_dict(p) if p else None


def get_payment_by_transaction_id(transaction_id: str) -> Optional[dict]:
    if not transaction_id:
        return None
    with session_scope() as s:
        p = s.execute(select(Payment).where(
            Payment.transaction_id == transaction_id)).scalars().first()
        return _payment_dict(p) if p else None


def get_payment_by_charge_id(charge_id: str) -> Optional[dict]:
    if not charge_id:
        return None
    with session_scope() as s:
        p = s.execute(select(Payment).where(
            Payment.gateway_charge_id == charge_id)).scalars().first()
        return _payment_dict(p) if p else None


def find_payment_for_event(transaction_id: str | None = None, charge_id: str | None = None,
                           correlation_id: str | None = None) -> Optional[dict]:
    """Webhook lookup: transaction id first, then charge/capture id, then our own id."""
    return (get_payment_by_transaction_id(transaction_id)
            or get_payment_by_charge_id(charge_id)
            or get_payment(correlation_id))


def list_payments_for_user(user_id: str, limit: int = 200) -> list[dict]:
    with session_scope() as s:
        rows = s.execute(
            select(Payment).where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc()).limit(limit)
        ).scalars().all()
        return [_payment_dict(p) for p in rows]


def get_latest_payment_for_order(order_id: str) -> Optional[dict]:
    with session_scope() as s:
        p = s.execute(
            select(Payment).where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc()).limit(1)
        ).scalars().first()
        return _payment_dict(p) if p else None


def count_payments_for_order(order_id: str) -> int:
    with session_scope() as s:
        return s.execute(
            select(func.count()).select_from(Payment).where(
                Payment.order_id == order_id)
        ).scalar_one()


def list_needing_reconciliation(limit: int = 500) -> list[dict]:
    with session_scope() as s:
        rows = s.execute(
            select(Payment).where(Payment.needs_reconciliation.is_(True))
            .order_by(Payment.updated_at.desc()).limit(limit)
        ).scalars().all()
        return [_payment_dict(p) for p in rows]


# ----- conditional writes -----

def transition(payment_id: str, target: PaymentStatus, *,
               expected: Iterable[PaymentStatus] | None = None, **fields: Any) -> bool:
    """
    Move a payment to `target` only if its current status is one of `expected`
    (default: every status the state table allows into `target`). Statuses the
    table does not allow into `target` are dropped from `expected`.
    Returns False when the row was not in an allowed status.
    """
    allowed = sources_for(target)
    if expected:
        allowed = [PaymentStatus(e).value for e in expected if can_transition(e, target)]
    values: dict[str, Any] = {k: v for k, v in fields.items()
                              if k not in ("transaction_id", "gateway_charge_id")}
    if fields.get("transaction_id"):
        values["transaction_id"] = func.coalesce(
            Payment.transaction_id, fields["transaction_id"])
    if fields.get("gateway_charge_id"):
        values["gateway_charge_id"] = func.coalesce(
            Payment.gateway_charge_id, fields["gateway_charge_id"])
    values["status"] = PaymentStatus(target).value
    values["updated_at"] = _now()

    with session_scope() as s:
        res = s.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id, Payment.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1


def complete_charge(payment_id: str, transaction_id: str | None, charge_id: str | None = None,
                    gateway_response: dict | None = None) -> bool:
    fields: dict[str, Any] = {"transaction_id": transaction_id, "gateway_charge_id": charge_id,
                              "processed_at": _now()}
    if gateway_response is not None:
        fields["gateway_response"] = gateway_response
    return transition(payment_id, PaymentStatus.COMPLETED, **fields)


def fail_charge(payment_id: str, reason: str, transaction_id: str | None = None,
                gateway_response: dict | None = None, needs_reconciliation: bool = False) -> bool:
    fields: dict[str, Any] = {"failure_reason": reason, "transaction_id": transaction_id,
                              "processed_at": _now()}
    if gateway_response is not None:
        fields["gateway_response"] = gateway_response
    if needs_reconciliation:
        fields["needs_reconciliation"] = True
    return transition(payment_id, PaymentStatus.FAILED, **fields)


def mark_refunded(payment_id: str, refund_id: str | None, refund_amount: Decimal,
                  reason: str | None = None) -> bool:
    return transition(
        payment_id, PaymentStatus.REFUNDED, expected=(PaymentStatus.COMPLETED,),
        refund_id=refund_id,
        refund_amount=Decimal(refund_amount).quantize(Decimal("0.01")),
        refund_reason=reason, refunded_at=_now(),
    )


def flag_for_reconciliation(payment_id: str, note: str | None = None) -> bool:
    """Raise needs_reconciliation without touching status or failure_reason."""
    values: dict[str, Any] = {"needs_reconciliation": True, "updated_at": _now()}
    if note:
        values["reconciliation_note"] = note
    with session_scope() as s:
        res = s.execute(
            update(Payment).where(Payment.payment_id == payment_id).values(**values)
            .execution_options(synchronize_session=False))
        return res.rowcount == 1


def fail_stale_processing(older_than: timedelta, reason: str) -> list[str]:
    """Fail PROCESSING rows created before now - older_than; returns the ids actually moved."""
    cutoff = _now() - older_than
    with session_scope() as s:
        ids = [pid for (pid,) in s.execute(
            select(Payment.payment_id).where(
                Payment.status == PaymentStatus.PROCESSING.value,
                Payment.created_at < cutoff)
        ).all()]
    return [pid for pid in ids
            if fail_charge(pid, reason, needs_reconciliation=True)]


# ----- webhook event log -----

def record_webhook_event(provider: str, external_event_id: Optional[str], event_type: str,
                         raw_payload: Any, signature_ok: bool) -> tuple[int, bool]:
    """Store a delivery once per (provider, event id). Returns (row id, newly_created)."""
    raw_text = raw_payload if isinstance(raw_payload, str) else json.dumps(
        raw_payload, ensure_ascii=False, separators=(",", ":"))
    with session_scope() as s:
        try:
            e = PaymentEvent(
                provider=provider, external_event_id=external_event_id,
                event_type=event_type or "unknown", raw=raw_text,
                signature_ok=1 if signature_ok else 0, received_at=_now(),
            )
            s.add(e)
            s.flush()
            return e.id, True
        except IntegrityError:
            s.rollback()
            row = s.execute(
                select(PaymentEvent.id).where(
                    (PaymentEvent.provider == provider) & (
                        PaymentEvent.external_event_id == external_event_id)
                )
            ).first()
            return (int(row[0]) if row else 0), False


def set_event_outcome(event_row_id: int, outcome: str, payment_id: str | None = None) -> None:
    if not event_row_id:
        return
    with session_scope() as s:
        e = s.get(PaymentEvent, event_row_id)
        if not e:
            return
        e.outcome = outcome
        if payment_id:
            e.payment_id = payment_id


def list_events_for_payment(payment_id: str) -> list[dict]:
    with session_scope() as s:
        rows = s.execute(
            select(PaymentEvent).where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.id.asc())
        ).scalars().all()
        return [{"id": e.id, "provider": e.provider, "external_event_id": e.external_event_id,
                 "event_type": e.event_type, "signature_ok": bool(e.signature_ok),
                 "outcome": e.outcome, "received_at": e.received_at} for e in rows]
