from models.base import init_engine_and_session, Base
import os
import logging
from logging.handlers import RotatingFileHandler
from time import time

from flask import Flask, request, current_app, g, jsonify
from flask_wtf.csrf import CSRFProtect, CSRFError
from dotenv import load_dotenv
from sqlalchemy import text
from controllers.auth import auth_bp, login_manager
from controllers.payments import payments_bp
from services.metrics import init_app as init_metrics, REQUEST_COUNT, REQUEST_LATENCY
from services.payments.registry import build_services

# --- Load .env exactly once, here ---
# If you run "python app.py", this ensures variables are loaded.
# If you use "flask run", Flask will also load .env automatically (when python-dotenv is installed).
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _parse_demo_users(env_val: str) -> dict[str, tuple[str, str]]:
    """
    Parse DEMO_USERS in .env like:
      "alice:alice:user,bob:bob:user,ops:secret:admin"
    Returns {username: (password, role)}; role defaults to "user" if omitted.
    Invalid entries are ignored.
    """
    out: dict[str, tuple[str, str]] = {}
    if not env_val:
        return out
    for item in env_val.split(","):
        item = item.strip()
        if not item:
            continue
        parts = [p.strip() for p in item.split(":")]
        if len(parts) == 3:
            u, pwd, role = parts
        elif len(parts) == 2:
            u, pwd = parts
            role = "user"
        else:
            continue
        if u and pwd:
            out[u] = (pwd, role or "user")
    return out


def _configure_logging():
    # default on in containers
    log_to_stdout = os.getenv("LOG_TO_STDOUT", "1") == "1"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    if log_to_stdout:
        handler = logging.StreamHandler()
    else:
        log_dir = os.path.join(os.path.dirname(__file__), "log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            # If file logging fails (e.g., in a container), fall back to stdout
            handler = logging.StreamHandler()

    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))

    # avoid duplicate handlers on reload
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def create_app(test_config: dict | None = None):
    app = Flask(__name__, instance_relative_config=True)

    # ---- Base config from environment (no hardcoded secrets) ----
    APP_ENV = os.getenv("APP_ENV", "development").lower()

    # SECRET_KEY:
    # - In production: must be provided
    # - In dev: fall back to a random key each run (sessions will reset on restart)
    secret_key = os.getenv("FLASK_SECRET_KEY")
    if not secret_key and APP_ENV == "production":
        raise RuntimeError("FLASK_SECRET_KEY must be set in production (.env)")
    if not secret_key:
        secret_key = os.urandom(32)  # dev-only fallback

    app.config.from_mapping(
        SECRET_KEY=secret_key,
        APP_ENV=APP_ENV,
        PAYMENT_CURRENCY=(os.getenv("PAYMENT_CURRENCY") or "USD").upper(),
        PAYMENT_GATEWAY_TIMEOUT=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "15")),
        PAYMENT_STALE_AFTER_SEC=int(os.getenv("PAYMENT_STALE_AFTER_SEC", "900")),
        JSON_SORT_KEYS=False,
    )
    if test_config:
        app.config.update(test_config)

    # ---- CSRF ----
    csrf = CSRFProtect()
    csrf.init_app(app)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning("CSRF failed: %s", getattr(e, "description", ""))
        return jsonify(error="csrf_failed", message=getattr(e, "description", "")), 400

    # ---- Logging ----
    _configure_logging()
    app.logger.setLevel(logging.INFO)

    # Ensure instance folder exists
    os.makedirs(app.instance_path, exist_ok=True)

    # ---- DB & users init ----
    from models.users_db import get_user, create_user
    engine, _Session = init_engine_and_session()

    if os.getenv("AUTO_CREATE_SCHEMA", "1") in ("1", "true", "yes", "on"):
        Base.metadata.create_all(engine, checkfirst=True)

    with app.app_context():
        # seed admin (optional)
        admin_pwd = os.getenv("ADMIN_PASSWORD")
        if admin_pwd and not get_user("admin"):
            create_user("admin", admin_pwd, role="admin")
            app.logger.info("Seeded admin user from .env")

        # seed demo users in dev (optional)
        if app.config["APP_ENV"] == "development" and _env_bool("SEED_DEMO_USERS", False):
            demo = _parse_demo_users(os.getenv("DEMO_USERS", ""))
            for u, (pwd, role) in demo.items():
                if u == "admin":
                    continue
                if not get_user(u):
                    create_user(u, pwd, role)
            app.logger.info("Seeded demo users (development only)")

        # ---- Payment core: adapters + orchestrator/reconciler/refunds, wired once ----
        app.extensions["payments"] = build_services(
            tables=app.config.get("PAYMENT_ADAPTERS"),
            notifier=app.config.get("PAYMENT_NOTIFIER"),
        )

    login_manager.init_app(app)

    # ---- Blueprints ----
    app.register_blueprint(auth_bp)
    app.register_blueprint(payments_bp)

    # JSON API + gateway webhooks: no form tokens
    csrf.exempt(payments_bp)
    csrf.exempt(auth_bp)

    # Prometheus
    if _env_bool("METRICS_ENABLED", True):
        init_metrics(app)

    # ---- Errors ----

    @app.errorhandler(404)
    def not_found(e):
        app.logger.warning("404 %s %s", request.method, request.path)
        return jsonify(error="not_found", path=request.path), 404

    @app.errorhandler(405)
    def not_allowed(e):
        app.logger.warning("405 %s %s", request.method, request.path)
        return jsonify(error="method_not_allowed", path=request.path), 405

    # ---- Routes ----
    @app.before_request
    def _start_timer():
        g._t0 = time()

    @app.after_request
    def _log_request(resp):
        try:
            ms = (time() - getattr(g, "_t0", time())) * 1000
            app.logger.info("%s %s %s %s %.1fms",
                            request.remote_addr, request.method, request.full_path, resp.status_code, ms)

            # --- Skip self-scrapes to keep series clean ---
            ep = request.endpoint or ""
            path = request.path or ""
            if path.startswith("/metrics"):
                return resp

            endpoint = ep.replace(".", "_") or "unknown"
            method = request.method
            status = str(resp.status_code)

            REQUEST_COUNT.labels(
                method=method, endpoint=endpoint, status=status).inc()
            REQUEST_LATENCY.labels(
                endpoint=endpoint, method=method).observe(ms / 1000.0)
        except Exception:
            app.logger.exception("Failed to log request")
        return resp

    @app.get("/healthz")
    def healthz():
        # Liveness: process is up, Flask can serve a simple request
        return jsonify(status="ok"), 200

    @app.get("/readyz")
    def readyz():
        # Readiness: app can talk to the DB
        try:
            engine, _ = init_engine_and_session()
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return jsonify(status="ok"), 200
        except Exception as e:
            current_app.logger.exception("Readiness check failed")
            return jsonify(status="error", error=str(e)), 500

    return app


if __name__ == "__main__":
    # TIP: use APP_ENV=production FLASK_SECRET_KEY=... when deploying
    app = create_app()
    app.run(host="0.0.0.0", port=8000, debug=(
        app.config["APP_ENV"] != "production"))
