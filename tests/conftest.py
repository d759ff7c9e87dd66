import hashlib
import hmac
import json
import threading
import time
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from auth import create_token, hash_password
from config import Settings
from mailer import Mailer
from main import create_app
from models import Course, Role, User

WEBHOOK_SECRET = "whsec_test_secret"


class InMemoryRedis:
    """The subset of redis.Redis used by IdempotencyGuard, with SET NX EX semantics."""

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def _alive(self, name):
        item = self._data.get(name)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[name]
            return None
        return value

    def set(self, name, value, nx=False, ex=None):
        with self._lock:
            if nx and self._alive(name) is not None:
                return None
            self._data[name] = (value, time.monotonic() + ex if ex else None)
            return True

    def exists(self, *names):
        with self._lock:
            return sum(1 for n in names if self._alive(n) is not None)

    def delete(self, *names):
        with self._lock:
            return sum(1 for n in names if self._data.pop(n, None) is not None)

    def close(self):
        pass


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_id: str, event_type: str, obj: dict) -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        SECRET_KEY="test-secret",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CLIENT_URL="http://front.test",
        UPLOAD_DIR=str(tmp_path / "uploads"),
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True
    )
    yield engine
    engine.dispose()


@pytest.fixture
def redis_client():
    return InMemoryRedis()


@pytest.fixture
def stripe_client():
    client = MagicMock()
    client.checkout.sessions.create.return_value = SimpleNamespace(
        id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    return client


@pytest.fixture
def mailer():
    return MagicMock(spec=Mailer)


@pytest.fixture
def app(settings, engine, redis_client, stripe_client, mailer):
    return create_app(settings, engine=engine, redis_client=redis_client, stripe_client=stripe_client, mailer=mailer)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(app, client):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    counter = iter(range(1, 1000))

    def _make(role=Role.STUDENT, password="Senha@123", **kwargs):
        n = next(counter)
        user = User(
            name=kwargs.pop("name", f"User {n}"),
            email=kwargs.pop("email", f"user{n}@example.com"),
            cpf=kwargs.pop("cpf", f"{n:011d}"),
            hashed_password=hash_password(password),
            role=role,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_course(db):
    def _make(title="Python para Web", price="99.90", **kwargs):
        course = Course(title=title, description=kwargs.pop("description", "Curso"), price=Decimal(price), **kwargs)
        db.add(course)
        db.commit()
        db.refresh(course)
        return course

    return _make


@pytest.fixture
def auth_header(settings):
    def _header(user):
        return {"Authorization": f"Bearer {create_token(user, settings)}"}

    return _header
