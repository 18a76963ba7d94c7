from __future__ import annotations

import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Optional, Protocol, Tuple

import redis
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .otp import OTPConfig, StoreUnavailableError, redis_client

logger = logging.getLogger("homeport.rate_limit")

Clock = Callable[[], float]


# ---------------------------------------------------------------------------
# Per-phone request limiter (fixed window)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    count: int = 0


class PhoneRateLimiter(Protocol):
    def check(self, phone: str) -> RateLimitDecision:  # pragma: no cover - interface
        ...

    def record(self, phone: str) -> RateLimitDecision:  # pragma: no cover - interface
        ...


class MemoryPhoneRateLimiter:
    """Process-local fixed-window counter, for dev and tests.

    The window opens with the first recorded request and closes
    ``window_secs`` later. ``record`` never pushes the count past ``max_requests``.
    """

    def __init__(self, max_requests: int, window_secs: int, clock: Clock = time.time):
        self.max_requests = max_requests
        self.window_secs = window_secs
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def _current(self, phone: str, now: float) -> Tuple[float, int]:
        window = self._windows.get(phone)
        if window is None or now >= window[0] + self.window_secs:
            self._windows.pop(phone, None)
            return now, 0
        return window

    def _retry_after(self, window_start: float, now: float) -> int:
        return max(1, math.ceil(window_start + self.window_secs - now))

    def check(self, phone: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            start, count = self._current(phone, now)
            if count >= self.max_requests:
                return RateLimitDecision(False, self._retry_after(start, now), count)
            return RateLimitDecision(True, 0, count)

    def record(self, phone: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            start, count = self._current(phone, now)
            if count >= self.max_requests:
                return RateLimitDecision(False, self._retry_after(start, now), count)
            count += 1
            self._windows[phone] = (start, count)
            return RateLimitDecision(True, 0, count)

    def count(self, phone: str) -> int:
        with self._lock:
            return self._current(phone, self._clock())[1]


# Reserve one slot unless the window is already full. Returns {allowed, count, pttl}.
_RESERVE_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
  return {0, current, redis.call('PTTL', KEYS[1])}
end
current = redis.call('INCR', KEYS[1])
if current == 1 or redis.call('PTTL', KEYS[1]) < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, current, redis.call('PTTL', KEYS[1])}
"""


class RedisPhoneRateLimiter:
    """Fixed-window counter shared by all replicas.

    The counter key lives for exactly one window; the reserve step runs as a
    single Lua script so check-and-increment cannot interleave.
    """

    def __init__(self, client: "redis.Redis", max_requests: int, window_secs: int, prefix: str = "otp:whatsapp"):
        self.redis = client
        self.max_requests = max_requests
        self.window_secs = window_secs
        self.prefix = prefix
        self._reserve = client.register_script(_RESERVE_LUA)

    def _key(self, phone: str) -> str:
        return f"{self.prefix}:req:{phone}"

    def _retry_after(self, pttl: int) -> int:
        if pttl is None or int(pttl) <= 0:
            return self.window_secs
        return max(1, math.ceil(int(pttl) / 1000))

    def check(self, phone: str) -> RateLimitDecision:
        key = self._key(phone)
        try:
            pipe = self.redis.pipeline(transaction=False)
            pipe.get(key)
            pipe.pttl(key)
            raw_count, pttl = pipe.execute()
        except redis.RedisError as exc:
            raise StoreUnavailableError("rate limiter check failed") from exc
        count = int(raw_count or 0)
        if count >= self.max_requests:
            return RateLimitDecision(False, self._retry_after(pttl), count)
        return RateLimitDecision(True, 0, count)

    def record(self, phone: str) -> RateLimitDecision:
        try:
            allowed, count, pttl = self._reserve(
                keys=[self._key(phone)],
                args=[self.max_requests, self.window_secs * 1000],
            )
        except redis.RedisError as exc:
            raise StoreUnavailableError("rate limiter record failed") from exc
        if int(allowed) == 1:
            return RateLimitDecision(True, 0, int(count))
        return RateLimitDecision(False, self._retry_after(pttl), int(count))

    def count(self, phone: str) -> int:
        try:
            return int(self.redis.get(self._key(phone)) or 0)
        except redis.RedisError as exc:
            raise StoreUnavailableError("rate limiter read failed") from exc


def build_phone_rate_limiter(cfg: OTPConfig, clock: Clock = time.time) -> PhoneRateLimiter:
    if cfg.backend == "redis":
        return RedisPhoneRateLimiter(
            redis_client(cfg.redis_url, cfg.redis_timeout_secs),
            max_requests=cfg.request_max_per_window,
            window_secs=cfg.request_window_secs,
            prefix=cfg.key_prefix,
        )
    return MemoryPhoneRateLimiter(
        max_requests=cfg.request_max_per_window,
        window_secs=cfg.request_window_secs,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Per-client HTTP limiter middlewares
# ---------------------------------------------------------------------------


_DEFAULT_EXEMPT = ("/health", "/metrics")


def _rate_limited(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": {"code": "rate_limited", "message": "Too many requests", "details": {"retry_after": retry_after}}},
        headers={"Retry-After": str(retry_after)},
    )


def _client_key(request: Request) -> str:
    auth = request.headers.get("authorization")
    if auth:
        return f"token:{auth[-24:]}"
    client = request.client.host if request.client else "unknown"
    return f"ip:{client}"


class SlidingWindowLimiter(BaseHTTPMiddleware):
    def __init__(self, app, limit_per_minute: int = 60, exempt_paths: Iterable[str] = _DEFAULT_EXEMPT, clock: Clock = time.time):
        super().__init__(app)
        self.window_seconds = 60
        self.limit_per_minute = limit_per_minute
        self.exempt_paths = frozenset(exempt_paths)
        self._clock = clock
        self.store: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)
        now = self._clock()
        dq = self.store[_client_key(request)]
        while dq and now - dq[0] > self.window_seconds:
            dq.popleft()
        if len(dq) >= self.limit_per_minute:
            retry_after = max(1, int(self.window_seconds - (now - dq[0])))
            return _rate_limited(retry_after)
        dq.append(now)
        return await call_next(request)


class RedisRateLimiter(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        redis_url: str,
        limit_per_minute: int = 60,
        prefix: str = "ratelimit",
        exempt_paths: Iterable[str] = _DEFAULT_EXEMPT,
        timeout_secs: float = 2.0,
        client: Optional["redis.Redis"] = None,
    ):
        super().__init__(app)
        self.redis = client if client is not None else redis_client(redis_url, timeout_secs)
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)
        now = int(time.time())
        key = f"{self.prefix}:{_client_key(request)}:{now // 60}"
        try:
            pipe = self.redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, 70)
            count, _ = pipe.execute()
        except redis.RedisError as exc:
            # fail open
            logger.warning("HTTP rate limiter unavailable: %s", exc)
            return await call_next(request)
        if count > self.limit_per_minute:
            return _rate_limited(60 - (now % 60))
        return await call_next(request)


__all__ = [
    "RateLimitDecision",
    "PhoneRateLimiter",
    "MemoryPhoneRateLimiter",
    "RedisPhoneRateLimiter",
    "build_phone_rate_limiter",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
]
