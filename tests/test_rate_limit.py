from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.core.errors import register_error_handlers
from app.core.rate_limit import IPRateLimiter, rate_limit


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_limiter_blocks_after_limit_until_window_ends():
    clock = FakeClock()
    limiter = IPRateLimiter(2, window_seconds=60, clock=clock)

    assert limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.1")
    assert not limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.2")

    clock.now = 61.0
    assert limiter.allow("10.0.0.1")


def test_limiter_evicts_entry_expiring_first_when_full():
    clock = FakeClock()
    limiter = IPRateLimiter(1, window_seconds=60, max_entries=2, clock=clock)

    limiter.allow("a")
    clock.now = 0.5
    limiter.allow("b")
    clock.now = 0.7
    limiter.allow("c")

    assert len(limiter) == 2
    # "a" was evicted, so it starts a fresh window
    assert limiter.allow("a")
    assert not limiter.allow("c")


def test_expired_entries_are_swept():
    clock = FakeClock()
    limiter = IPRateLimiter(5, window_seconds=10, clock=clock)
    limiter.allow("a")
    limiter.allow("b")

    clock.now = 30.0
    limiter.allow("c")
    assert len(limiter) == 1


def test_invalid_configuration_falls_back_to_defaults():
    limiter = IPRateLimiter(0, window_seconds=-1, max_entries=0)
    assert limiter.limit == 1
    assert limiter.window_seconds == 60.0
    assert limiter.max_entries == 10000


def test_login_endpoint_returns_429_envelope(client):
    for _ in range(10):
        response = client.post("/api/auth/login", json={})
        assert response.status_code == 400

    blocked = client.post("/api/auth/login", json={}, headers={"X-Request-Id": "rl-1"})
    assert blocked.status_code == 429
    assert blocked.json() == {
        "error": {"code": "RATE_LIMITED", "message": "Too many login attempts"},
        "requestId": "rl-1",
    }


def test_rate_limited_route_rejects_second_request():
    limited = FastAPI()
    register_error_handlers(limited)
    limited.state.rate_limiters = {"storage": IPRateLimiter(1)}

    @limited.get("/api/storage", dependencies=[Depends(rate_limit("storage"))])
    def list_storage():
        return {"items": []}

    client = TestClient(limited)
    assert client.get("/api/storage").status_code == 200
    blocked = client.get("/api/storage")
    assert blocked.status_code == 429
    assert '"code":"RATE_LIMITED"' in blocked.text
