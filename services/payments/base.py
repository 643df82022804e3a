# services/payments/base.py
"""
Gateway adapter interface + the small result/event model shared by adapters.
Adapters must implement GatewayAdapter.

Adapters hold configuration and an HTTP session only; they never touch the
database, so one instance can serve every request.
"""

from __future__ import annotations
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Mapping, Protocol


def to_minor_units(amount) -> int:
    """Exact major->minor conversion, round half up: 19.999 -> 2000, 49.99 -> 4999."""
    d = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((d * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(cents) -> Decimal:
    return (Decimal(int(cents)) / Decimal(100)).quantize(Decimal("0.01"))


def format_major(amount) -> str:
    """'49.99' style string for gateways that take decimal strings."""
    return f"{from_minor_units(to_minor_units(amount)):.2f}"


def header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup that also works on plain dicts."""
    v = headers.get(name)
    if v is None:
        lname = name.lower()
        v = next((val for k, val in headers.items() if k.lower() == lname), None)
    return v or ""


def sign_payload(secret: str, timestamp: str, raw_body: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature_header(secret: str, raw_body: bytes, sig_header: str,
                            tolerance: int = 0, now: float | None = None) -> bool:
    """
    Check a 't=<ts>,v1=<hex>[,v1=<hex>]' header: HMAC-SHA256(secret, ts + "." + body)
    must equal one of the v1 values. tolerance > 0 also bounds the timestamp age.
    """
    if not secret or not sig_header:
        return False
    timestamp = None
    candidates = []
    for part in sig_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            candidates.append(value)
    if not timestamp or not candidates:
        return False
    if tolerance > 0:
        try:
            age = abs((now if now is not None else time.time()) - int(timestamp))
        except ValueError:
            return False
        if age > tolerance:
            return False
    expected = sign_payload(secret, timestamp, raw_body)
    return any(hmac.compare_digest(expected, c) for c in candidates)


@dataclass
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None  # intent / order id
    charge_id: Optional[str] = None       # charge / capture id, when the gateway has one
    gateway_response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class RefundResult:
    refund_id: Optional[str]
    status: str
    gateway_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    provider: str                 # 'stripe' | 'paypal' | 'sandbox'
    external_event_id: Optional[str]
    event_type: str               # provider's own name, e.g. 'payment_intent.succeeded'
    transaction_id: Optional[str] = None
    charge_id: Optional[str] = None
    correlation_id: Optional[str] = None   # our payment_id echoed back in metadata
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    refund_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(Protocol):
    name: str       # provider family, used in webhook URLs

    def validate_details(self, payment_details: Mapping[str, Any]) -> None:
        """Raise ValidationError before any payment row exists."""

    def charge(self, amount: Decimal, currency: str, payment_details: Mapping[str, Any],
               order_ref: str, payment_id: str) -> ChargeResult:
        """
        Create and capture a charge.
        Declines come back as ChargeResult(success=False, error=...).
        Transport/auth failures raise GatewayError (GatewayTimeout on timeout).
        """

    def refund(self, transaction_id: str, amount: Decimal, reason: str | None,
               charge_id: str | None = None, currency: str = "USD",
               payment_id: str | None = None) -> RefundResult:
        """
        Refund a captured charge; raise RefundError if the gateway rejects it.
        payment_id keys the request so a retried or concurrent refund of the
        same payment is collapsed by the gateway.
        """

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Authenticate the delivery and parse it into a WebhookEvent.
        Raise InvalidSignature when verification fails.
        """
