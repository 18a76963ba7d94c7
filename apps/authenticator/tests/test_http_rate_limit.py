from fastapi.testclient import TestClient

from conftest import RecordingNotifier


def _new_app_with_limit(per_minute: int, monkeypatch):
    from app import config
    from app.main import create_app

    monkeypatch.setattr(config.settings, "RATE_LIMIT_BACKEND", "memory", raising=False)
    monkeypatch.setattr(config.settings, "RATE_LIMIT_PER_MINUTE", per_minute, raising=False)
    return create_app(notifier=RecordingNotifier())


def test_rate_limit_memory_returns_429(monkeypatch):
    client = TestClient(_new_app_with_limit(3, monkeypatch))
    responses = [client.get("/session") for _ in range(5)]
    codes = [r.status_code for r in responses]
    assert codes[:3] == [401, 401, 401]
    assert codes.count(429) == 2
    limited = responses[-1]
    assert limited.json()["error"]["code"] == "rate_limited"
    assert int(limited.headers["Retry-After"]) >= 1


def test_health_is_exempt_from_rate_limit(monkeypatch):
    client = TestClient(_new_app_with_limit(1, monkeypatch))
    codes = [client.get("/health").status_code for _ in range(5)]
    assert codes == [200] * 5
