# services/payments/registry.py
import logging
import os
from dataclasses import dataclass, field

from flask import current_app, has_app_context

from models.schema import PaymentMethod
from services.payments.dummy_provider import SandboxAdapter
from services.payments.paypal_provider import PayPalAdapter
from services.payments.stripe_provider import CardAdapter, IntentAdapter

log = logging.getLogger(__name__)


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _flag(key: str) -> bool:
    return str(_cfg(key, "0") or "0").lower() in ("1", "true", "yes", "on")


@dataclass
class AdapterTables:
    by_method: dict = field(default_factory=dict)     # PaymentMethod -> adapter
    by_provider: dict = field(default_factory=dict)   # webhook path segment -> adapter


def build_adapters() -> AdapterTables:
    """
    Method -> adapter lookup built from configuration.
    A gateway without credentials is simply not registered; requests for its
    methods are rejected up front. BANK_TRANSFER never has an adapter.
    """
    timeout = float(_cfg("PAYMENT_GATEWAY_TIMEOUT", "15") or 15)
    tables = AdapterTables()

    if _flag("PAYMENT_SANDBOX"):
        sandbox = SandboxAdapter(webhook_secret=_cfg("SANDBOX_WEBHOOK_SECRET", "dev") or "dev")
        for m in PaymentMethod:
            if m is not PaymentMethod.BANK_TRANSFER:
                tables.by_method[m] = sandbox
        tables.by_provider[sandbox.name] = sandbox
        log.warning("PAYMENT_SANDBOX enabled: all payment methods use the sandbox adapter")
        return tables

    stripe_key = _cfg("STRIPE_SECRET_KEY")
    if stripe_key:
        common = dict(
            secret_key=stripe_key,
            webhook_secret=_cfg("STRIPE_WEBHOOK_SECRET", "") or "",
            api_url=_cfg("STRIPE_API_URL", "https://api.stripe.com") or "https://api.stripe.com",
            timeout=timeout,
            webhook_tolerance=int(_cfg("STRIPE_WEBHOOK_TOLERANCE", "300") or 300),
        )
        card = CardAdapter(**common)
        intent = IntentAdapter(**common)
        tables.by_method[PaymentMethod.CREDIT_CARD] = card
        tables.by_method[PaymentMethod.DEBIT_CARD] = card
        tables.by_method[PaymentMethod.STRIPE] = intent
        tables.by_provider[intent.name] = intent

    if _cfg("PAYPAL_CLIENT_ID") and _cfg("PAYPAL_CLIENT_SECRET"):
        paypal = PayPalAdapter(
            client_id=_cfg("PAYPAL_CLIENT_ID"),
            client_secret=_cfg("PAYPAL_CLIENT_SECRET"),
            webhook_id=_cfg("PAYPAL_WEBHOOK_ID", "") or "",
            api_url=_cfg("PAYPAL_API_URL", "https://api-m.sandbox.paypal.com")
            or "https://api-m.sandbox.paypal.com",
            timeout=timeout,
        )
        tables.by_method[PaymentMethod.PAYPAL] = paypal
        tables.by_provider[paypal.name] = paypal

    if not tables.by_method:
        log.warning("No payment gateway configured; set STRIPE_SECRET_KEY, PAYPAL_CLIENT_ID "
                    "or PAYMENT_SANDBOX=1")
    return tables


@dataclass
class PaymentServices:
    orchestrator: object
    reconciler: object
    refunds: object
    notifier: object
    events: object


def build_services(tables: AdapterTables | None = None, notifier=None, events=None) -> PaymentServices:
    """Wire the payment core once per app; tests pass their own tables."""
    from services.notifications import EventBus, LoggingNotifier
    from services.payments.orchestrator import PaymentOrchestrator
    from services.payments.reconciler import WebhookReconciler
    from services.payments.refunds import RefundHandler

    if tables is None:
        tables = build_adapters()
    notifier = notifier if notifier is not None else LoggingNotifier()
    events = events if events is not None else EventBus()
    return PaymentServices(
        orchestrator=PaymentOrchestrator(tables.by_method, notifier, events),
        reconciler=WebhookReconciler(tables.by_provider, events),
        refunds=RefundHandler(tables.by_method, notifier, events),
        notifier=notifier,
        events=events,
    )
