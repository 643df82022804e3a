# models/audit_store.py
import os
import json
import hmac
import hashlib
from typing import Any, Optional
from datetime import datetime, timezone
from flask import request, has_request_context, g
from flask_login import current_user
from sqlalchemy import asc, select
from models.base import session_scope
from models.schema import AuditLog

SIGNING_KEY_ID = os.getenv("AUDIT_HMAC_KEY_ID", "k1")

# never copy card data, secrets or raw gateway payloads into the audit trail
_ALLOWED_EXTRA_KEYS = {"reason", "note", "method", "amount", "provider",
                       "event_type", "transaction_id", "refund_id", "count", "old", "new"}


def _secret() -> bytes:
    return (os.getenv("AUDIT_HMAC_SECRET") or "secret-key").encode("utf-8")


def _ts_str(ts_val: Any) -> str:
    """Recreate the exact 'ts' string format used when hashing."""
    if isinstance(ts_val, datetime):
        if ts_val.tzinfo is None:
            ts_val = ts_val.replace(tzinfo=timezone.utc)
        return ts_val.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    return str(ts_val)


def _compute_hash(prev_hash: str, payload: dict) -> str:
    s = prev_hash + json.dumps(payload, separators=(",", ":"),
                               sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _sign(h: str) -> str:
    return hmac.new(_secret(), h.encode("utf-8"), hashlib.sha256).hexdigest()


def _payload(ts: str, actor, req_id, method, path, action, target_type, target_id,
             outcome, status, extra) -> dict:
    return {
        "ts": ts, "actor": actor, "request_id": req_id,
        "method": method, "path": path, "action": action,
        "target_type": target_type, "target_id": target_id,
        "outcome": outcome, "status": status, "extra": extra or {},
        "key_id": SIGNING_KEY_ID,
    }


def _clean_extra(extra: Optional[dict[str, Any]]) -> dict:
    if not extra:
        return {}
    out = {}
    for k, v in extra.items():
        if k not in _ALLOWED_EXTRA_KEYS:
            continue
        if isinstance(v, str) and len(v) > 512:
            v = v[:512] + "…"
        out[k] = v if isinstance(v, (str, int, float, bool, type(None))) else str(v)
    return out


def _latest_hash(s) -> str:
    row = s.execute(select(AuditLog).order_by(
        AuditLog.id.desc()).limit(1)).scalars().first()
    return (row.hash or "") if row else ""


def audit(
    action: str,
    *,
    target_type: str | None = None,
    target_id: str | None = None,
    outcome: str | None = None,            # 'success'|'failure'|'noop'
    status: int | None = None,
    extra: Optional[dict[str, Any]] = None,
    actor: Optional[str] = None
) -> None:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    ts = _ts_str(now)

    method = path = req_id = None
    if has_request_context():
        method = request.method
        path = request.path
        req_id = getattr(g, "request_id", None) or request.headers.get("X-Request-ID")

    if actor is None:
        try:
            actor = getattr(current_user, "username", None) or "anonymous"
        except Exception:
            actor = "system"

    payload = _payload(ts, actor, req_id, method, path, action, target_type, target_id,
                       outcome, status, _clean_extra(extra))

    with session_scope() as s:
        prev = _latest_hash(s)
        h = _compute_hash(prev, payload)
        s.add(AuditLog(
            ts=now, actor=actor, request_id=req_id,
            method=method, path=path,
            action=action, target_type=target_type, target_id=target_id,
            outcome=outcome, status=status, extra=payload["extra"],
            prev_hash=prev, hash=h, signature=_sign(h), key_id=SIGNING_KEY_ID,
        ))


def verify_chain(limit: Optional[int] = None) -> dict:
    """
    Walk the log oldest-first and recompute every hash and signature.
    Returns {"ok", "checked", "last_ok_id", "first_bad_id", "reason"}.
    """
    prev = ""
    checked = 0
    last_ok = None

    with session_scope() as s:
        rows = s.execute(select(AuditLog).order_by(asc(AuditLog.id))).scalars().all()
        if limit:
            rows = rows[: int(limit)]

        for r in rows:
            payload = _payload(_ts_str(r.ts), r.actor, r.request_id, r.method, r.path,
                               r.action, r.target_type, r.target_id, r.outcome, r.status,
                               r.extra)
            reason = None
            if r.prev_hash != prev:
                reason = "prev_hash_mismatch"
            elif r.hash != _compute_hash(prev, payload):
                reason = "hash_mismatch"
            elif not hmac.compare_digest(r.signature or "", _sign(r.hash)):
                reason = "signature_mismatch"
            if reason:
                return {"ok": False, "checked": checked, "last_ok_id": last_ok,
                        "first_bad_id": r.id, "reason": reason}
            checked += 1
            last_ok = r.id
            prev = r.hash or ""

    return {"ok": True, "checked": checked, "last_ok_id": last_ok,
            "first_bad_id": None, "reason": None}


def list_audit(limit: int = 500, target_id: str | None = None) -> list[dict]:
    with session_scope() as s:
        q = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        if target_id:
            q = q.where(AuditLog.target_id == target_id)
        rows = s.execute(q).scalars().all()
        return [
            {
                "id": r.id, "ts": r.ts, "actor": r.actor, "action": r.action,
                "target": f"{r.target_type}:{r.target_id}" if r.target_id else None,
                "outcome": r.outcome, "status": r.status, "extra": r.extra or {},
            }
            for r in rows
        ]
