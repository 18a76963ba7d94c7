from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

from homeport_shared import MemoryChallengeStore, MemoryPhoneRateLimiter

from app.auth import SessionSigner
from app.database import SessionLocal
from app.errors import AppError
from app.otp_auth import ChallengeStatus, OTPAuthenticator
from app.tenants import CONTACT_PHONE_FIELDS, TenantIdentity, TenantResolver, eligible_field
from conftest import DEMO_PHONE, FakeClock, RecordingNotifier


def _authenticator(code="123456", max_requests=5):
    clock = FakeClock()
    auth = OTPAuthenticator(
        limiter=MemoryPhoneRateLimiter(max_requests=max_requests, window_secs=900, clock=clock),
        store=MemoryChallengeStore("secret", ttl_secs=300, max_attempts=5, clock=clock),
        resolver=TenantResolver(SessionLocal),
        notifier=RecordingNotifier(),
        signer=SessionSigner("session-secret", 30),
        code_factory=lambda: code,
    )
    return auth, clock


def test_request_challenge_outcomes(seed):
    seed()
    auth, _ = _authenticator(max_requests=1)
    sent = auth.request_challenge("809 555 1234", "DO")
    assert sent.status is ChallengeStatus.SENT
    assert sent.phone == DEMO_PHONE
    assert sent.delivery.code == "123456"
    assert "123456" not in repr(sent)

    throttled = auth.request_challenge("809 555 1234", "DO")
    assert throttled.status is ChallengeStatus.THROTTLED
    assert throttled.delivery is None

    unknown = auth.request_challenge("+34612345678")
    assert unknown.status is ChallengeStatus.INELIGIBLE


def test_invalid_phone_raises_generic_format_error():
    auth, _ = _authenticator()
    with pytest.raises(AppError) as exc:
        auth.request_challenge("abc", "DO")
    assert exc.value.code == "invalid_phone_format"
    assert exc.value.status_code == 400


def test_deliver_reports_failure_without_raising(seed):
    seed()
    auth, _ = _authenticator()
    outcome = auth.request_challenge(DEMO_PHONE)
    assert auth.deliver(outcome.delivery) is True
    auth.notifier.fail = True
    assert auth.deliver(outcome.delivery) is False


def test_concurrent_verifies_with_same_code_exactly_one_succeeds(seed):
    tenant_id = seed()
    auth, _ = _authenticator()
    auth.request_challenge(DEMO_PHONE)

    def attempt(_):
        try:
            return auth.verify("123456", DEMO_PHONE)
        except AppError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))
    wins = [r for r in results if not isinstance(r, AppError)]
    assert len(wins) == 1
    assert wins[0].tenant_id == tenant_id
    assert all(r.code == "invalid_otp" for r in results if isinstance(r, AppError))


def test_verify_accepts_raw_phone_hint_with_region(seed):
    seed()
    auth, _ = _authenticator()
    auth.request_challenge("809-555-1234", "DO")
    credential = auth.verify("123456", "(809) 555-1234", "DO")
    assert credential.phone == DEMO_PHONE


def test_eligible_field_table():
    assert [f for f, _ in CONTACT_PHONE_FIELDS] == ["phone1", "phone2", "phone"]
    contact = SimpleNamespace(phone=DEMO_PHONE, phone1=None, phone2=None, whatsapp1=False, whatsapp2=True)
    assert eligible_field(contact, DEMO_PHONE) == "phone"
    contact.whatsapp2 = False
    assert eligible_field(contact, DEMO_PHONE) is None
    contact = SimpleNamespace(phone=None, phone1=DEMO_PHONE, phone2=DEMO_PHONE, whatsapp1=False, whatsapp2=True)
    assert eligible_field(contact, DEMO_PHONE) == "phone2"


def test_resolver_picks_oldest_tenant_deterministically(seed):
    first = seed("First")
    seed("Second")
    resolver = TenantResolver(SessionLocal)
    found = resolver.find_eligible(DEMO_PHONE)
    assert isinstance(found, TenantIdentity)
    assert found.tenant_id == first
    assert resolver.find_eligible(DEMO_PHONE) == found
    assert resolver.find_eligible("") is None
    assert resolver.find_eligible("+34612345678") is None
