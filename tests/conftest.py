from datetime import datetime, timedelta

import pytest

from core.config import Settings
from core.db import Database, init_db
from core.db.listings import insert_listing
from core.db.users import create_session, create_user
from core.errors import DeliveryFailure


class FakeClock:
    """Settable naive-UTC clock shared by engine, matcher and dispatcher."""

    def __init__(self, start=datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeTransport:
    """Records sends; `fail_for` makes sends to those addresses raise DeliveryFailure."""

    name = "fake"

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, to_email, subject, html_body):
        if to_email in self.fail_for:
            raise DeliveryFailure(f"mailbox unavailable: {to_email}")
        self.sent.append((to_email, subject, html_body))


@pytest.fixture
def settings(tmp_path):
    return Settings().with_overrides(
        database_url=f"sqlite:///{tmp_path}/test.db",
        mail_transport="log",
        cache_backend="memory",
        rate_limit_requests=0,
        app_url="http://bazar.test",
        app_secret="test-secret",
    )


@pytest.fixture
def db(settings):
    database = Database(settings.database_url)
    init_db(database)
    return database


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def transport_cls():
    return FakeTransport


@pytest.fixture
def user(db):
    user_id = create_user(db, "buyer@example.com", username="buyer")
    return {"id": user_id, "email": "buyer@example.com"}


@pytest.fixture
def make_listing(db, clock):
    def _make(title, **kwargs):
        kwargs.setdefault("created_at", clock())
        return insert_listing(db, title=title, **kwargs)

    return _make


@pytest.fixture
def client(settings, db):
    from fastapi.testclient import TestClient

    from app.api import create_app

    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_client(client, db, user):
    """TestClient carrying a valid session cookie for `user`."""
    from app.auth_utils import SESSION_COOKIE_NAME

    client.cookies.set(SESSION_COOKIE_NAME, create_session(db, user["id"]))
    return client
