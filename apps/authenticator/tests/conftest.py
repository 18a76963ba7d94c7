import os
import time
from types import SimpleNamespace

import pytest


# Ensure sensible defaults for tests before app import
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "true")
os.environ.setdefault("OTP_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("NOTIFIER_PROVIDER", "log")
os.environ.setdefault("DEFAULT_PHONE_REGION", "DO")

from fastapi.testclient import TestClient  # noqa: E402

from homeport_shared import MemoryChallengeStore, MemoryPhoneRateLimiter, NotifierError  # noqa: E402

from app.config import settings  # noqa: E402
from app.database import session_scope  # noqa: E402
from app.main import create_app  # noqa: E402
from app.models import Tenant, TenantContact  # noqa: E402
from seed_demo import ensure_tenant  # noqa: E402


DEMO_PHONE = "+18095551234"


class FakeClock:
    def __init__(self, now: float | None = None):
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send_code(self, phone: str, code: str) -> None:
        if self.fail:
            raise NotifierError("provider down")
        self.sent.append((phone, code))

    def last_code(self, phone: str) -> str:
        return [code for to, code in self.sent if to == phone][-1]


@pytest.fixture(autouse=True)
def _clean_tenants():
    yield
    with session_scope() as session:
        session.query(TenantContact).delete()
        session.query(Tenant).delete()


@pytest.fixture
def seed():
    def _seed(name: str = "Demo Tenant", **contact):
        contact.setdefault("phone1", DEMO_PHONE)
        contact.setdefault("whatsapp1", True)
        with session_scope() as session:
            return ensure_tenant(session, name, [contact]).id

    return _seed


@pytest.fixture
def otp_env():
    clock = FakeClock()
    limiter = MemoryPhoneRateLimiter(
        max_requests=settings.OTP.request_max_per_window,
        window_secs=settings.OTP.request_window_secs,
        clock=clock,
    )
    store = MemoryChallengeStore(
        secret=settings.OTP.storage_secret,
        ttl_secs=settings.OTP.ttl_secs,
        max_attempts=settings.OTP.max_attempts,
        clock=clock,
    )
    notifier = RecordingNotifier()
    app = create_app(limiter=limiter, store=store, notifier=notifier, clock=clock)
    return SimpleNamespace(
        app=app,
        client=TestClient(app),
        clock=clock,
        limiter=limiter,
        store=store,
        notifier=notifier,
    )
