import os
import threading
import uuid

import pytest
import redis

from homeport_shared.rate_limit import MemoryPhoneRateLimiter, RedisPhoneRateLimiter


PHONE = "+18095551234"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


def test_memory_limiter_allows_up_to_max_then_throttles():
    clock = FakeClock()
    limiter = MemoryPhoneRateLimiter(max_requests=5, window_secs=900, clock=clock)
    for i in range(5):
        assert limiter.check(PHONE).allowed
        decision = limiter.record(PHONE)
        assert decision.allowed
        assert decision.count == i + 1
        clock.advance(10)

    assert not limiter.check(PHONE).allowed
    sixth = limiter.record(PHONE)
    assert not sixth.allowed
    assert sixth.count == 5
    assert limiter.count(PHONE) == 5
    # window opened at t0, 50s elapsed
    assert sixth.retry_after == 850


def test_memory_limiter_window_resets_after_expiry():
    clock = FakeClock()
    limiter = MemoryPhoneRateLimiter(max_requests=2, window_secs=900, clock=clock)
    limiter.record(PHONE)
    limiter.record(PHONE)
    assert not limiter.check(PHONE).allowed
    clock.advance(900)
    assert limiter.check(PHONE).allowed
    assert limiter.record(PHONE).count == 1


def test_memory_limiter_counts_phones_independently():
    limiter = MemoryPhoneRateLimiter(max_requests=1, window_secs=60, clock=FakeClock())
    assert limiter.record(PHONE).allowed
    assert not limiter.record(PHONE).allowed
    assert limiter.record("+34612345678").allowed


def test_memory_limiter_record_is_atomic_under_contention():
    limiter = MemoryPhoneRateLimiter(max_requests=5, window_secs=900)
    results = []
    lock = threading.Lock()

    def worker():
        decision = limiter.record(PHONE)
        with lock:
            results.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(40)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 5
    assert limiter.count(PHONE) == 5


def _redis_or_skip() -> "redis.Redis":
    url = os.getenv("REDIS_TEST_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")
    client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=1, socket_connect_timeout=1)
    try:
        client.ping()
    except redis.RedisError:
        pytest.skip("redis not available")
    return client


def test_redis_limiter_caps_count_and_sets_window_ttl():
    client = _redis_or_skip()
    prefix = f"test:{uuid.uuid4().hex}"
    limiter = RedisPhoneRateLimiter(client, max_requests=5, window_secs=900, prefix=prefix)
    try:
        for _ in range(5):
            assert limiter.record(PHONE).allowed
        sixth = limiter.record(PHONE)
        assert not sixth.allowed
        assert limiter.count(PHONE) == 5
        assert 0 < sixth.retry_after <= 900
        assert 0 < client.ttl(f"{prefix}:req:{PHONE}") <= 900
        assert not limiter.check(PHONE).allowed
    finally:
        client.delete(f"{prefix}:req:{PHONE}")
