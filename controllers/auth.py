from functools import wraps
from flask import Blueprint, jsonify, request
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from models.users_db import get_user, verify_password
from models.audit_store import audit
from services.metrics import LOGIN_SUCCESSES, LOGIN_FAILURES

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class User(UserMixin):
    def __init__(self, username, role):
        self.id = username
        self.username = username
        self.role = role

    @property
    def is_admin(self):
        return self.role == "admin"


@login_manager.user_loader
def load_user(user_id):
    row = get_user(user_id)
    if not row:
        return None
    return User(row["username"], row["role"])


@login_manager.unauthorized_handler
def unauthorized():
    # JSON API: no login page to redirect to
    return jsonify(error="unauthorized", message="Login required"), 401


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if not getattr(current_user, "is_admin", False):
            audit(
                "auth.forbidden",
                target_type="user", target_id=(getattr(current_user, "username", "") or "anonymous"),
                outcome="failure", status=403,
                extra={"reason": "not_admin"}
            )
            return jsonify(error="forbidden", message="Admin only"), 403
        return f(*args, **kwargs)
    return wrapper


def _credentials():
    body = request.get_json(silent=True) if request.is_json else None
    src = body if isinstance(body, dict) else request.form
    return (src.get("username") or "").strip(), src.get("password") or ""


@auth_bp.post("/login")
def login_post():
    u, p = _credentials()

    if not verify_password(u, p):
        LOGIN_FAILURES.labels(reason="bad_credentials").inc()
        audit(
            "auth.login.failure",
            target_type="user", target_id=(u or "unknown"),
            outcome="failure", status=401,
            extra={"reason": "bad_credentials"}
        )
        return jsonify(error="bad_credentials", message="Invalid username or password."), 401

    row = get_user(u)
    login_user(User(row["username"], row["role"]))
    LOGIN_SUCCESSES.inc()

    audit(
        "auth.login.success",
        target_type="user", target_id=row["username"],
        outcome="success", status=200,
        extra={"note": f"role={row['role']}"}
    )
    return jsonify(username=row["username"], role=row["role"]), 200


@auth_bp.post("/logout")
@login_required
def logout():
    audit(
        "auth.logout",
        target_type="user", target_id=current_user.username,
        outcome="success", status=200
    )
    logout_user()
    return jsonify(status="ok"), 200
