# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Auth flow metrics ---
LOGIN_SUCCESSES = Counter("auth_login_success_total",
                          "Login successes", registry=APP_REGISTRY)
LOGIN_FAILURES = Counter("auth_login_failure_total", "Login failures", [
                         "reason"], registry=APP_REGISTRY)

# --- Payments ---
PAYMENTS_PROCESSED = Counter(
    "payments_processed_total", "Payments processed", ["method", "outcome"], registry=APP_REGISTRY
)
GATEWAY_LATENCY = Histogram(
    "payments_gateway_duration_seconds", "Gateway charge latency (seconds)",
    ["provider"], registry=APP_REGISTRY,
)
REFUNDS = Counter("payments_refunds_total", "Refund attempts", [
                  "outcome"], registry=APP_REGISTRY)
STALE_SWEPT = Counter("payments_stale_swept_total",
                      "PROCESSING payments failed by the stale sweep", registry=APP_REGISTRY)

# --- Webhook ---
WEBHOOK_EVENTS = Counter(
    "payments_webhook_events_total", "Webhook events", ["provider", "event", "outcome"], registry=APP_REGISTRY
)


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    LOGIN_FAILURES.labels(reason="bad_credentials").inc(0)
    for outcome in ("completed", "failed"):
        PAYMENTS_PROCESSED.labels(method="CREDIT_CARD", outcome=outcome).inc(0)
    for outcome in ("refunded", "failed"):
        REFUNDS.labels(outcome=outcome).inc(0)
    STALE_SWEPT.inc(0)
    WEBHOOK_EVENTS.labels(
        provider="stripe", event="payment_intent.succeeded", outcome="success").inc(0)
