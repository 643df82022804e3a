# models/schema.py
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    JSON, Boolean, String, Text, Integer, DateTime, Numeric, CheckConstraint,
    UniqueConstraint, Index
)
from models.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# forward-only; FAILED, CANCELLED and REFUNDED are terminal
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED,
                                         PaymentStatus.CANCELLED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(current, target) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def sources_for(target) -> list[str]:
    """Statuses from which `target` is reachable in one step."""
    return [src.value for src, dests in PAYMENT_TRANSITIONS.items()
            if PaymentStatus(target) in dests]


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    BANK_TRANSFER = "BANK_TRANSFER"


class OrderPaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


def _in_values(column: str, enum_cls) -> str:
    values = ",".join(f"'{m.value}'" for m in enum_cls)
    return f"{column} in ({values})"


# --- USERS

class User(Base):
    __tablename__ = "users"
    username: Mapped[str] = mapped_column(String, primary_key=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(
        String, nullable=False)  # ('admin','user')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("role in ('admin','user')", name="ck_users_role"),
    )


# --- ORDERS (collaborator: only the payment-facing columns live here)

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD")
    payment_status: Mapped[str] = mapped_column(
        String, nullable=False, default=OrderPaymentStatus.UNPAID.value)
    payment_id: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_ge_0"),
        CheckConstraint(_in_values("payment_status", OrderPaymentStatus),
                        name="ck_orders_payment_status"),
        UniqueConstraint("order_number", name="uq_orders_order_number"),
        Index("idx_orders_user", "user_id"),
    )


# --- PAYMENTS

class Payment(Base):
    __tablename__ = "payments"
    payment_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value)

    # gateway side; written once, matched by webhooks
    transaction_id: Mapped[str | None] = mapped_column(String(128))
    gateway_charge_id: Mapped[str | None] = mapped_column(String(128))
    gateway_response: Mapped[dict | None] = mapped_column(JSON)

    failure_reason: Mapped[str | None] = mapped_column(Text)
    refund_id: Mapped[str | None] = mapped_column(String(128))
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    refund_reason: Mapped[str | None] = mapped_column(Text)
    needs_reconciliation: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    reconciliation_note: Mapped[str | None] = mapped_column(Text)

    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_ge_0"),
        CheckConstraint(_in_values("status", PaymentStatus),
                        name="ck_payments_status"),
        CheckConstraint(_in_values("method", PaymentMethod),
                        name="ck_payments_method"),
        UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),
        Index("idx_payments_order", "order_id"),
        Index("idx_payments_user", "user_id"),
        Index("idx_payments_status", "status"),
        Index("idx_payments_charge", "gateway_charge_id"),
    )


class PaymentEvent(Base):
    __tablename__ = "payment_events"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    external_event_id: Mapped[str | None] = mapped_column(String)
    payment_id: Mapped[str | None] = mapped_column(
        String(32))  # set once the event is matched to a payment
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    raw: Mapped[str] = mapped_column(Text, nullable=False)
    signature_ok: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    outcome: Mapped[str | None] = mapped_column(String(32))
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        UniqueConstraint("provider", "external_event_id",
                         name="uq_paymentevents_provider_external"),
        CheckConstraint("signature_ok IN (0,1)",
                        name="ck_paymentevents_signature_ok"),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)

    actor: Mapped[str | None] = mapped_column(String(128))
    request_id: Mapped[str | None] = mapped_column(String(64))
    method: Mapped[str | None] = mapped_column(String(8))
    path: Mapped[str | None] = mapped_column(String(512))

    action: Mapped[str] = mapped_column(
        String(64), nullable=False)  # controlled vocabulary
    target_type: Mapped[str | None] = mapped_column(String(32))
    target_id: Mapped[str | None] = mapped_column(String(128))
    outcome: Mapped[str | None] = mapped_column(
        String(16))          # 'success'|'failure'|'noop'
    status: Mapped[int | None] = mapped_column(Integer)
    extra: Mapped[dict | None] = mapped_column(JSON)

    # Tamper-evident chain
    prev_hash: Mapped[str | None] = mapped_column(String(128))
    hash: Mapped[str | None] = mapped_column(String(128))
    signature: Mapped[str | None] = mapped_column(
        String(128))       # HMAC(hash, SECRET)
    key_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome in ('success','failure','noop') or outcome is null", name="ck_audit_outcome"),
        Index("idx_audit_ts", "ts"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_target", "target_type", "target_id"),
    )
