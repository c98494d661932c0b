"""
RSL Platform Test Suite — Shared Fixtures
conftest.py

Two layers of fixtures:
  1. services — Store, LicenseService, TokenService, AccessService and
     WebhookDispatcher wired by hand on a temporary SQLite file, with a
     controllable clock. No HTTP.
  2. app      — the real create_app() behind a TestClient, lifespan included.

Outbound webhook HTTP never leaves the process: every dispatcher posts
through an httpx.MockTransport that records the requests.

Usage:
    pip install -e ".[test]"
    pytest tests/ -v
"""

import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from cryptography.fernet import Fernet

BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from fastapi.testclient import TestClient  # noqa: E402

from core.app import create_app  # noqa: E402
from core.audit import AuditLog  # noqa: E402
from core.config import Settings  # noqa: E402
from core.crypto import SecretBox  # noqa: E402
from core.event_bus import InMemoryEventBus  # noqa: E402
from core.store import Store  # noqa: E402
from modules.licenses.service import LicenseService  # noqa: E402
from modules.policy.payments import MockPaymentProcessor  # noqa: E402
from modules.policy.service import AccessService  # noqa: E402
from modules.tokens.service import TokenService  # noqa: E402
from modules.webhooks.dispatcher import WebhookDispatcher  # noqa: E402

from helpers import register_client, client_token  # noqa: E402

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class WebhookReceiver:
    """Records webhook POSTs and answers each with ``status_code``."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.fail_with = None  # an httpx.HTTPError subclass to raise instead
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with("receiver unreachable", request=request)
        return httpx.Response(self.status_code)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Settings & persistence
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'rsl.db'}",
        encryption_key=TEST_ENCRYPTION_KEY,
        rate_limit_enabled=False,
        webhook_allow_private_targets=True,
        webhook_retry_backoff_seconds=0.5,
    )


@pytest.fixture
def store(settings):
    # Service imports above registered every table on Base.metadata
    s = Store(settings.database_url).open()
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def audit(store):
    return AuditLog(store)


@pytest.fixture
def secret_box():
    return SecretBox(TEST_ENCRYPTION_KEY)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def licenses(store, audit, bus, clock):
    return LicenseService(store, audit, bus, clock=clock)


@pytest.fixture
def tokens(store, settings, secret_box, licenses, clock):
    return TokenService(store, settings, secret_box, licenses, clock=clock)


@pytest.fixture
def payments():
    return MockPaymentProcessor()


@pytest.fixture
def access(store, licenses, tokens, payments, audit, bus, settings, clock):
    return AccessService(store, licenses, tokens, payments, audit, bus, settings, clock=clock)


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
def http_client(receiver):
    c = receiver.client()
    yield c
    c.close()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the dispatcher, in order."""
    return []


@pytest.fixture
def dispatcher(store, settings, secret_box, http_client, clock, sleeps):
    d = WebhookDispatcher(store, settings, secret_box, http_client, clock=clock, sleep=sleeps.append)
    yield d
    d.close()


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

@pytest.fixture
def app(settings, http_client, payments):
    return create_app(settings=settings, http_client=http_client, payment_processor=payments)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api_client(client):
    """A registered OAuth client allowed the client_credentials and rsl grants."""
    return register_client(client)


@pytest.fixture
def owner_token(client, api_client):
    token = client_token(client, api_client)
    assert token, "client_credentials grant failed"
    return token
