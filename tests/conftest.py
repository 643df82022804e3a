# tests/conftest.py
import os
import tempfile

import pytest

# must be in place before the engine is first built
_DB_DIR = tempfile.mkdtemp(prefix="paycore-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'test.sqlite3')}")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("METRICS_ENABLED", "1")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
os.environ.setdefault("PAYMENT_SANDBOX", "1")
os.environ.setdefault("SANDBOX_WEBHOOK_SECRET", "whsec_sandbox_test")
os.environ.setdefault("AUDIT_HMAC_SECRET", "audit-test-secret")

from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402
from models.users_db import create_user  # noqa: E402
from services.payments.registry import build_services  # noqa: E402
from tests.utils import login_user  # noqa: E402


@pytest.fixture(scope="session")
def db_engine():
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="session")
def app(db_engine):
    return create_app({"TESTING": True, "WTF_CSRF_ENABLED": False})


@pytest.fixture(autouse=True)
def _db_clean(db_engine):
    yield
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def payment_services(app):
    """Sandbox-wired services; swap in your own with use_services()."""
    original = app.extensions["payments"]
    app.extensions["payments"] = build_services()
    yield app.extensions["payments"]
    app.extensions["payments"] = original


@pytest.fixture()
def use_services(app):
    original = app.extensions["payments"]

    def _use(services):
        app.extensions["payments"] = services
        return services
    yield _use
    app.extensions["payments"] = original


@pytest.fixture
def alice(client):
    create_user("alice", "alice-pass")
    login_user(client, "alice", "alice-pass")
    yield "alice"
    client.post("/logout")


@pytest.fixture
def admin_user(client):
    create_user("admin", "admin-pass", role="admin")
    login_user(client, "admin", "admin-pass")
    yield "admin"
    client.post("/logout")
