import threading
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import Request

from app.core.errors import ApiError

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_MAX_ENTRIES = 10000


@dataclass
class _Window:
    count: int
    window_ends: float


class IPRateLimiter:
    """Fixed-window request counter keyed by client IP.

    The table holds at most ``max_entries`` addresses. When it overflows, the
    entry whose window ends first is evicted.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        message: str = "Rate limit exceeded",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit if limit > 0 else 1
        self.window_seconds = window_seconds if window_seconds > 0 else DEFAULT_WINDOW_SECONDS
        self.max_entries = max_entries if max_entries > 0 else DEFAULT_MAX_ENTRIES
        self.message = message
        self._clock = clock
        self._entries: dict[str, _Window] = {}
        self._last_cleanup = 0.0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_cleanup >= 1.0:
                self._sweep(now)
                self._last_cleanup = now

            entry = self._entries.get(key)
            if entry is None or entry.window_ends < now:
                entry = _Window(count=0, window_ends=now + self.window_seconds)
                self._entries[key] = entry
            entry.count += 1

            while len(self._entries) > self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].window_ends)
                del self._entries[oldest]

            return entry.count <= self.limit

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.window_ends < now]
        for key in expired:
            del self._entries[key]

    def check(self, request: Request) -> None:
        if not self.allow(client_ip(request)):
            raise ApiError(429, "RATE_LIMITED", self.message)


def client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def build_limiters(max_entries: int) -> dict[str, IPRateLimiter]:
    return {
        "login": IPRateLimiter(10, max_entries=max_entries, message="Too many login attempts"),
        "imports": IPRateLimiter(8, max_entries=max_entries, message="Too many import requests"),
        "exports": IPRateLimiter(30, max_entries=max_entries, message="Too many export requests"),
    }


def rate_limit(name: str):
    """Route dependency that counts the request against the app's named limiter."""

    def _dependency(request: Request) -> None:
        limiter: IPRateLimiter = request.app.state.rate_limiters[name]
        limiter.check(request)

    return _dependency
