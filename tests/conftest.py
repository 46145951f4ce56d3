"""
Shared fixtures: an in-memory SQLite engine per test, a fixed clock, user
factories that fund balances through the ledger, and a TestClient.
"""

import os

# settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123"
os.environ["PAYMENT_CALLBACK_SECRET"] = "callback-secret"
os.environ["ENABLE_COLLISION_AUDIT"] = "false"
os.environ["MATCHER_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ.pop("SMTP_HOST", None)

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from collision import database, hot_tags, ledger, models, notifications
from collision.auth import create_token
from collision.codes import CodeDraft, CodeFilters
from collision.location import LocationSnapshot

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

HANGZHOU_XIHU = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Xihu")
HANGZHOU_BINJIANG = LocationSnapshot("China", "Zhejiang", "Hangzhou", "Binjiang")
SHANGHAI = LocationSnapshot("China", "Shanghai", "Shanghai", "Pudong")


class FakeTransport:
    """Records sends; fails the first `failures` calls with the given error."""

    def __init__(self, failures: int = 0, error: Exception | None = None):
        self.failures = failures
        self.error = error or OSError("connection refused")
        self.sent = []
        self.calls = 0

    def send(self, to_email, subject, body):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        self.sent.append((to_email, subject, body))


@pytest.fixture
def engine():
    eng = database.configure("sqlite://")
    models.Base.metadata.create_all(eng)
    hot_tags.invalidate_cache()
    yield eng
    models.Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    session = database.get_sessionmaker()()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_user(db):
    """make_user(id, coins=0, **profile) -> User, funded through ledger.recharge."""

    def _make(user_id, coins=0, **fields):
        fields.setdefault("nickname", f"user{user_id}")
        fields.setdefault("gender", 0)
        user = models.User(id=user_id, coins=0, **fields)
        db.add(user)
        db.commit()
        if coins:
            ledger.recharge(
                db, user_id=user_id, coins=coins, order_no=f"seed-{user_id}", now=NOW - timedelta(days=30),
            )
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def places():
    return SimpleNamespace(xihu=HANGZHOU_XIHU, binjiang=HANGZHOU_BINJIANG, shanghai=SHANGHAI)


@pytest.fixture
def draft():
    """draft(tag, location=Xihu, validity_days=None, **filters) -> CodeDraft"""

    def _draft(tag="hiking", location=HANGZHOU_XIHU, validity_days=None, **filters):
        return CodeDraft(tag=tag, location=location, filters=CodeFilters(**filters), validity_days=validity_days)

    return _draft


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def fake_transport():
    transport = FakeTransport()
    notifications.set_gateway(notifications.EmailGateway(transport, sleep=lambda s: None))
    yield transport
    notifications.set_gateway(None)


@pytest.fixture
def client(engine):
    from collision.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth():
    def _headers(user_id, role="user", **extra):
        headers = {"Authorization": f"Bearer {create_token(user_id, role=role)}"}
        headers.update(extra)
        return headers

    return _headers
