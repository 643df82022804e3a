# services/payments/sweeper.py
from __future__ import annotations
import logging
from datetime import timedelta

from models import payments_store
from models.audit_store import audit
from services.metrics import STALE_SWEPT

log = logging.getLogger(__name__)

STALE_REASON = "stale: outcome unknown"


def sweep_stale_payments(older_than: timedelta | int | float) -> list[str]:
    """
    Fail PROCESSING payments created more than `older_than` ago and flag them
    for reconciliation. Returns the payment ids moved.
    """
    if not isinstance(older_than, timedelta):
        older_than = timedelta(seconds=float(older_than))
    moved = payments_store.fail_stale_processing(older_than, STALE_REASON)
    if moved:
        STALE_SWEPT.inc(len(moved))
        log.warning("stale sweep failed %d payment(s): %s", len(moved), ", ".join(moved))
    audit("payment.sweep", target_type="payment", target_id=None,
          outcome="success" if moved else "noop", actor="system",
          extra={"count": len(moved)})
    return moved
