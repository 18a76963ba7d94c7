"""One-time code challenges.

A challenge holds a digest of the code, never the code itself. There is at
most one live challenge per canonical phone; creating a new one replaces the
old. ``consume`` is a single atomic read-and-conditionally-delete.
"""
from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import redis

from .env import env_float, env_int
from .env_loader import ensure_loaded as _ensure_env_loaded

logger = logging.getLogger("homeport.otp")

Clock = Callable[[], float]

OTP_CODE_LENGTH = 6
_DEV_STORAGE_SECRET = "dev-otp-storage-secret"


class OTPError(Exception):
    """Base exception for OTP operations."""


class StoreUnavailableError(OTPError):
    """The shared challenge/counter store could not be reached in time."""


@dataclass
class OTPConfig:
    backend: str = "memory"  # "memory" or "redis"
    ttl_secs: int = 300
    max_attempts: int = 5
    request_window_secs: int = 15 * 60
    request_max_per_window: int = 5
    redis_url: Optional[str] = None
    redis_timeout_secs: float = 2.0
    key_prefix: str = "otp:whatsapp"
    storage_secret: str = _DEV_STORAGE_SECRET
    dev_mode: bool = True

    @classmethod
    def from_env(cls, prefix: str = "") -> "OTPConfig":
        _ensure_env_loaded()
        p = f"{prefix}_" if prefix else ""
        env = os.getenv(f"{p}ENV") or os.getenv("ENV", "dev")
        return cls(
            backend=(os.getenv(f"{p}OTP_BACKEND", "memory") or "memory").lower(),
            ttl_secs=env_int(f"{p}OTP_TTL_SECS", default=300),
            max_attempts=env_int(f"{p}OTP_MAX_ATTEMPTS", default=5),
            request_window_secs=env_int(f"{p}OTP_REQUEST_WINDOW_SECS", default=15 * 60),
            request_max_per_window=env_int(f"{p}OTP_REQUEST_MAX_PER_WINDOW", default=5),
            # Prefer per-test override if provided, then normal REDIS_URL
            redis_url=os.getenv(f"{p}REDIS_TEST_URL") or os.getenv(f"{p}REDIS_URL", "redis://redis:6379/0"),
            redis_timeout_secs=env_float(f"{p}REDIS_TIMEOUT_SECS", default=2.0),
            key_prefix=os.getenv(f"{p}OTP_KEY_PREFIX", "otp:whatsapp"),
            storage_secret=os.getenv(f"{p}OTP_STORAGE_SECRET") or os.getenv("OTP_STORAGE_SECRET") or _DEV_STORAGE_SECRET,
            dev_mode=(env or "dev").lower() == "dev",
        )

    @property
    def uses_default_secret(self) -> bool:
        return self.storage_secret == _DEV_STORAGE_SECRET


def redis_client(url: Optional[str], timeout_secs: float = 2.0) -> "redis.Redis":
    if not url:
        raise OTPError("REDIS_URL must be configured for the redis backend")
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout_secs,
        socket_connect_timeout=timeout_secs,
    )


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10**length):0{length}d}"


def is_well_formed_code(code: Optional[str], length: int = OTP_CODE_LENGTH) -> bool:
    return isinstance(code, str) and len(code) == length and code.isascii() and code.isdigit()


def hash_code(secret: str, phone: str, code: str) -> str:
    msg = "|".join([phone, code]).encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class Challenge:
    phone: str
    code_hash: str
    created_at: float
    expires_at: float
    attempts_remaining: int

    def ttl(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class ConsumeResult(str, enum.Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    # Last allowed mismatch; the challenge is gone. Callers treat it as MISMATCHED.
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"

    @property
    def matched(self) -> bool:
        return self is ConsumeResult.MATCHED


class ChallengeStore(Protocol):
    def create(self, phone: str, code: str, ttl_secs: Optional[int] = None) -> Challenge:  # pragma: no cover
        ...

    def peek(self, phone: str) -> Optional[Challenge]:  # pragma: no cover
        ...

    def peek_attempts(self, phone: str) -> int:  # pragma: no cover
        ...

    def consume(self, phone: str, code: str) -> ConsumeResult:  # pragma: no cover
        ...


class MemoryChallengeStore:
    """Single-process store for dev and tests. Expired entries are dropped lazily."""

    def __init__(self, secret: str, ttl_secs: int = 300, max_attempts: int = 5, clock: Clock = time.time):
        self.secret = secret
        self.ttl_secs = ttl_secs
        self.max_attempts = max_attempts
        self._clock = clock
        self._lock = threading.Lock()
        self._challenges: Dict[str, Challenge] = {}

    def create(self, phone: str, code: str, ttl_secs: Optional[int] = None) -> Challenge:
        now = self._clock()
        challenge = Challenge(
            phone=phone,
            code_hash=hash_code(self.secret, phone, code),
            created_at=now,
            expires_at=now + (ttl_secs or self.ttl_secs),
            attempts_remaining=self.max_attempts,
        )
        with self._lock:
            self._challenges[phone] = challenge
        return challenge

    def _live(self, phone: str, now: float) -> Optional[Challenge]:
        challenge = self._challenges.get(phone)
        if challenge is not None and now >= challenge.expires_at:
            del self._challenges[phone]
            return None
        return challenge

    def peek(self, phone: str) -> Optional[Challenge]:
        with self._lock:
            return self._live(phone, self._clock())

    def peek_attempts(self, phone: str) -> int:
        challenge = self.peek(phone)
        return challenge.attempts_remaining if challenge else 0

    def consume(self, phone: str, code: str) -> ConsumeResult:
        supplied = hash_code(self.secret, phone, code)
        with self._lock:
            now = self._clock()
            challenge = self._challenges.get(phone)
            if challenge is None:
                return ConsumeResult.NOT_FOUND
            if now >= challenge.expires_at:
                del self._challenges[phone]
                return ConsumeResult.EXPIRED
            if hmac.compare_digest(challenge.code_hash, supplied):
                del self._challenges[phone]
                return ConsumeResult.MATCHED
            remaining = challenge.attempts_remaining - 1
            if remaining <= 0:
                del self._challenges[phone]
                return ConsumeResult.EXHAUSTED
            self._challenges[phone] = Challenge(
                phone=challenge.phone,
                code_hash=challenge.code_hash,
                created_at=challenge.created_at,
                expires_at=challenge.expires_at,
                attempts_remaining=remaining,
            )
            return ConsumeResult.MISMATCHED


_CONSUME_LUA = """
local stored = redis.call('HGET', KEYS[1], 'code_hash')
if not stored then
  return 'not_found'
end
if stored == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 'matched'
end
local left = redis.call('HINCRBY', KEYS[1], 'attempts', -1)
if left <= 0 then
  redis.call('DEL', KEYS[1])
  return 'exhausted'
end
return 'mismatched'
"""


class RedisChallengeStore:
    """Challenge hash per phone, expired by Redis itself.

    Because expiry is passive, an expired challenge is indistinguishable from
    a missing one and ``consume`` reports NOT_FOUND for both.
    """

    def __init__(self, client: "redis.Redis", secret: str, ttl_secs: int = 300, max_attempts: int = 5, prefix: str = "otp:whatsapp"):
        self.redis = client
        self.secret = secret
        self.ttl_secs = ttl_secs
        self.max_attempts = max_attempts
        self.prefix = prefix
        self._consume = client.register_script(_CONSUME_LUA)

    def _key(self, phone: str) -> str:
        return f"{self.prefix}:challenge:{phone}"

    def create(self, phone: str, code: str, ttl_secs: Optional[int] = None) -> Challenge:
        ttl = ttl_secs or self.ttl_secs
        now = time.time()
        challenge = Challenge(
            phone=phone,
            code_hash=hash_code(self.secret, phone, code),
            created_at=now,
            expires_at=now + ttl,
            attempts_remaining=self.max_attempts,
        )
        key = self._key(phone)
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={
                "code_hash": challenge.code_hash,
                "created_at": f"{now:.3f}",
                "attempts": challenge.attempts_remaining,
            },
        )
        pipe.pexpire(key, int(ttl * 1000))
        try:
            pipe.execute()
        except redis.RedisError as exc:
            raise StoreUnavailableError("challenge create failed") from exc
        return challenge

    def peek(self, phone: str) -> Optional[Challenge]:
        key = self._key(phone)
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.hgetall(key)
            pipe.pttl(key)
            record, pttl = pipe.execute()
        except redis.RedisError as exc:
            raise StoreUnavailableError("challenge read failed") from exc
        if not record or "code_hash" not in record:
            return None
        now = time.time()
        return Challenge(
            phone=phone,
            code_hash=record["code_hash"],
            created_at=float(record.get("created_at") or now),
            expires_at=now + max(int(pttl), 0) / 1000,
            attempts_remaining=int(record.get("attempts") or 0),
        )

    def peek_attempts(self, phone: str) -> int:
        challenge = self.peek(phone)
        return challenge.attempts_remaining if challenge else 0

    def consume(self, phone: str, code: str) -> ConsumeResult:
        try:
            outcome = self._consume(keys=[self._key(phone)], args=[hash_code(self.secret, phone, code)])
        except redis.RedisError as exc:
            raise StoreUnavailableError("challenge consume failed") from exc
        return ConsumeResult(outcome)


def build_challenge_store(cfg: OTPConfig, clock: Clock = time.time) -> ChallengeStore:
    if cfg.backend == "redis":
        return RedisChallengeStore(
            redis_client(cfg.redis_url, cfg.redis_timeout_secs),
            secret=cfg.storage_secret,
            ttl_secs=cfg.ttl_secs,
            max_attempts=cfg.max_attempts,
            prefix=cfg.key_prefix,
        )
    if not cfg.dev_mode:
        logger.warning("In-memory OTP store outside dev; challenges are not shared across replicas")
    return MemoryChallengeStore(
        secret=cfg.storage_secret,
        ttl_secs=cfg.ttl_secs,
        max_attempts=cfg.max_attempts,
        clock=clock,
    )


__all__ = [
    "OTP_CODE_LENGTH",
    "OTPError",
    "StoreUnavailableError",
    "OTPConfig",
    "redis_client",
    "generate_otp_code",
    "is_well_formed_code",
    "hash_code",
    "Challenge",
    "ConsumeResult",
    "ChallengeStore",
    "MemoryChallengeStore",
    "RedisChallengeStore",
    "build_challenge_store",
]
