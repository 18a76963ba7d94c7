"""Two-phase WhatsApp OTP sign-in.

Phase one (``request_challenge``) turns a typed phone number into a stored
challenge and a pending delivery. Phase two (``verify``) consumes the
challenge and issues a session credential. Every policy outcome (throttled,
unknown, not WhatsApp-enabled, store down) looks identical from outside; the
reason is only logged and counted.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from homeport_shared import (
    ChallengeStore,
    NotifierBackend,
    NotifierError,
    PhoneNumber,
    PhoneRateLimiter,
    StoreUnavailableError,
    generate_otp_code,
    is_well_formed_code,
    mask_phone,
    normalize_phone,
)

from .auth import SessionCredential, SessionSigner
from .errors import invalid_otp, invalid_phone_format
from .metrics import OTP_EVENTS
from .tenants import TenantLookupError, TenantResolver

logger = logging.getLogger("authenticator.otp")

SYNTHETIC_EMAIL_DOMAIN = "whatsapp.tenant"


class ChallengeStatus(str, enum.Enum):
    SENT = "sent"
    THROTTLED = "throttled"
    INELIGIBLE = "ineligible"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PendingDelivery:
    phone: str
    code: str = field(repr=False)


@dataclass(frozen=True)
class ChallengeOutcome:
    """Internal result of a well-formed request. Callers answer 204 regardless."""

    phone: str
    status: ChallengeStatus
    delivery: Optional[PendingDelivery] = None


class OTPAuthenticator:
    def __init__(
        self,
        limiter: PhoneRateLimiter,
        store: ChallengeStore,
        resolver: TenantResolver,
        notifier: NotifierBackend,
        signer: SessionSigner,
        ttl_secs: int = 300,
        code_factory: Optional[Callable[[], str]] = None,
    ):
        self.limiter = limiter
        self.store = store
        self.resolver = resolver
        self.notifier = notifier
        self.signer = signer
        self.ttl_secs = ttl_secs
        self.code_factory = code_factory

    def _outcome(self, phone: str, status: ChallengeStatus, delivery: Optional[PendingDelivery] = None) -> ChallengeOutcome:
        OTP_EVENTS.labels("request", status.value).inc()
        if status is not ChallengeStatus.SENT:
            logger.info("OTP request to=%s not sent: %s", mask_phone(phone), status.value)
        return ChallengeOutcome(phone=phone, status=status, delivery=delivery)

    def normalize(self, raw_phone: str, region: Optional[str]) -> PhoneNumber:
        result = normalize_phone(raw_phone, region)
        if not isinstance(result, PhoneNumber):
            OTP_EVENTS.labels("request", "invalid_format").inc()
            logger.info("OTP request rejected: %s (region=%s)", result.kind.value, region)
            raise invalid_phone_format()
        return result

    def request_challenge(self, raw_phone: str, region: Optional[str] = None) -> ChallengeOutcome:
        """Normalize, rate-limit, resolve and store a new challenge.

        Raises ``AppError(invalid_phone_format)`` for malformed input, which is
        the only outcome distinguishable by the client.
        """
        phone = self.normalize(raw_phone, region).e164
        try:
            if not self.limiter.check(phone).allowed:
                return self._outcome(phone, ChallengeStatus.THROTTLED)
            identity = self.resolver.find_eligible(phone)
            # Counts every attempt that got past check; never exceeds the window max.
            if not self.limiter.record(phone).allowed:
                return self._outcome(phone, ChallengeStatus.THROTTLED)
            if identity is None:
                return self._outcome(phone, ChallengeStatus.INELIGIBLE)
            code = (self.code_factory or generate_otp_code)()
            self.store.create(phone, code, self.ttl_secs)
        except (StoreUnavailableError, TenantLookupError):
            logger.exception("OTP request to=%s failed on a backing store", mask_phone(phone))
            return self._outcome(phone, ChallengeStatus.UNAVAILABLE)
        logger.info("OTP challenge created for tenant=%s to=%s", identity.tenant_id, mask_phone(phone))
        return self._outcome(phone, ChallengeStatus.SENT, PendingDelivery(phone=phone, code=code))

    def deliver(self, pending: PendingDelivery) -> bool:
        """Hand the code to the notifier. Runs after the response was sent."""
        try:
            self.notifier.send_code(pending.phone, pending.code)
        except NotifierError as exc:
            OTP_EVENTS.labels("deliver", "delivery_failed").inc()
            logger.warning("OTP delivery to=%s failed: %s", mask_phone(pending.phone), exc)
            return False
        except Exception:
            OTP_EVENTS.labels("deliver", "delivery_failed").inc()
            logger.exception("OTP delivery to=%s failed unexpectedly", mask_phone(pending.phone))
            return False
        OTP_EVENTS.labels("deliver", "delivered").inc()
        return True

    def _reject(self, phone: Optional[str], reason: str):
        OTP_EVENTS.labels("verify", "rejected").inc()
        logger.info("OTP verify to=%s rejected: %s", mask_phone(phone or ""), reason)
        return invalid_otp()

    def verify(self, otp: Optional[str], phone_hint: Optional[str], region: Optional[str] = None) -> SessionCredential:
        """Consume the challenge for ``phone_hint`` and issue a session.

        Any failure raises the same ``AppError(invalid_otp)``.
        """
        if not phone_hint:
            raise self._reject(None, "no phone context")
        normalized = normalize_phone(phone_hint, region)
        if not isinstance(normalized, PhoneNumber):
            raise self._reject(None, f"phone {normalized.kind.value}")
        phone = normalized.e164
        if not is_well_formed_code(otp):
            raise self._reject(phone, "malformed code")
        try:
            result = self.store.consume(phone, otp)
        except StoreUnavailableError:
            logger.exception("OTP verify to=%s failed on the challenge store", mask_phone(phone))
            raise self._reject(phone, "store unavailable")
        if not result.matched:
            raise self._reject(phone, result.value)
        try:
            identity = self.resolver.find_eligible(phone)
        except TenantLookupError:
            logger.exception("OTP verify to=%s failed on tenant lookup", mask_phone(phone))
            raise self._reject(phone, "tenant lookup unavailable")
        if identity is None:
            raise self._reject(phone, "no longer eligible")
        credential = self.signer.issue(
            tenant_id=identity.tenant_id,
            phone=phone,
            email=identity.email or f"{phone}@{SYNTHETIC_EMAIL_DOMAIN}",
        )
        OTP_EVENTS.labels("verify", "verified").inc()
        logger.info("OTP verified for tenant=%s to=%s", identity.tenant_id, mask_phone(phone))
        return credential
