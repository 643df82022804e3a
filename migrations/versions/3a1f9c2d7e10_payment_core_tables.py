"""payment core tables

Revision ID: 3a1f9c2d7e10
Revises:
Create Date: 2026-10-18 09:30:12.104551

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3a1f9c2d7e10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_STATUSES = "'PENDING','PROCESSING','COMPLETED','FAILED','CANCELLED','REFUNDED'"
_METHODS = "'CREDIT_CARD','DEBIT_CARD','PAYPAL','STRIPE','BANK_TRANSFER'"


def upgrade():
    op.create_table(
        "users",
        sa.Column("username", sa.String(), primary_key=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("role in ('admin','user')", name="ck_users_role"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(32)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_amount >= 0", name="ck_orders_total_ge_0"),
        sa.CheckConstraint("payment_status in ('UNPAID','PAID','REFUNDED')",
                           name="ck_orders_payment_status"),
        sa.UniqueConstraint("order_number", name="uq_orders_order_number"),
    )
    op.create_index("idx_orders_user", "orders", ["user_id"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(32), primary_key=True),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("method", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("transaction_id", sa.String(128)),
        sa.Column("gateway_charge_id", sa.String(128)),
        sa.Column("gateway_response", sa.JSON()),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("refund_id", sa.String(128)),
        sa.Column("refund_amount", sa.Numeric(18, 2)),
        sa.Column("refund_reason", sa.Text()),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False,
                  server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_ge_0"),
        sa.CheckConstraint(f"status in ({_STATUSES})", name="ck_payments_status"),
        sa.CheckConstraint(f"method in ({_METHODS})", name="ck_payments_method"),
        sa.UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),
    )
    op.create_index("idx_payments_order", "payments", ["order_id"])
    op.create_index("idx_payments_user", "payments", ["user_id"])
    op.create_index("idx_payments_status", "payments", ["status"])
    op.create_index("idx_payments_charge", "payments", ["gateway_charge_id"])
    # operators poll this queue; keep it small on PG
    op.create_index(
        "idx_payments_needs_reconciliation", "payments", ["updated_at"],
        postgresql_where=sa.text("needs_reconciliation"),
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("external_event_id", sa.String()),
        sa.Column("payment_id", sa.String(32)),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("raw", sa.Text(), nullable=False),
        sa.Column("signature_ok", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("outcome", sa.String(32)),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "external_event_id",
                            name="uq_paymentevents_provider_external"),
        sa.CheckConstraint("signature_ok IN (0,1)", name="ck_paymentevents_signature_ok"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(128)),
        sa.Column("request_id", sa.String(64)),
        sa.Column("method", sa.String(8)),
        sa.Column("path", sa.String(512)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_type", sa.String(32)),
        sa.Column("target_id", sa.String(128)),
        sa.Column("outcome", sa.String(16)),
        sa.Column("status", sa.Integer()),
        sa.Column("extra", sa.JSON()),
        sa.Column("prev_hash", sa.String(128)),
        sa.Column("hash", sa.String(128)),
        sa.Column("signature", sa.String(128)),
        sa.Column("key_id", sa.String(16)),
        sa.CheckConstraint("outcome in ('success','failure','noop') or outcome is null",
                           name="ck_audit_outcome"),
    )
    op.create_index("idx_audit_ts", "audit_log", ["ts"])
    op.create_index("idx_audit_action", "audit_log", ["action"])
    op.create_index("idx_audit_target", "audit_log", ["target_type", "target_id"])


def downgrade():
    op.drop_table("audit_log")
    op.drop_table("payment_events")
    op.drop_index("idx_payments_needs_reconciliation", table_name="payments")
    op.drop_table("payments")
    op.drop_index("idx_orders_user", table_name="orders")
    op.drop_table("orders")
    op.drop_table("users")
