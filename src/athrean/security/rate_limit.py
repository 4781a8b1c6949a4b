"""Fixed-window rate limiting for the generation endpoints, kept in process memory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Mapping, Optional

GENERATE_LIMIT_ENV = "ATHREAN_GENERATE_RATE_LIMIT"
GENERATE_WINDOW_ENV = "ATHREAN_GENERATE_RATE_WINDOW"
DEFAULT_GENERATE_LIMIT = 20
DEFAULT_GENERATE_WINDOW_SECONDS = 60

_TRUTHY = {"1", "true", "yes", "on"}


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(f"Rate limit exceeded. Try again in {retry_after_seconds} seconds.")
        self.retry_after_seconds = retry_after_seconds


@dataclass
class _Window:
    used: int
    closes_at: datetime


class FixedWindowLimiter:
    """Counts hits per identifier; limit and window are re-read from env on every hit.

    Closed windows are swept out at most once per window length, from inside
    :meth:`hit`, so the table only holds clients seen recently.
    """

    def __init__(
        self,
        limit_env: str,
        window_env: str,
        default_limit: int,
        default_window_seconds: int,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.limit_env = limit_env
        self.window_env = window_env
        self.default_limit = default_limit
        self.default_window_seconds = default_window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep: Optional[datetime] = None
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, identifier: str) -> int:
        """Count one action and return how many remain in the current window.

        Raises:
            RateLimitExceeded when the window is used up.
        """
        limit = _env_int(self.limit_env, self.default_limit)
        if _rate_limiting_disabled():
            return limit
        window = timedelta(seconds=_env_int(self.window_env, self.default_window_seconds))
        now = self._clock()
        with self._lock:
            if self._next_sweep is None or now >= self._next_sweep:
                self._drop_closed(now)
                self._next_sweep = now + window
            current = self._windows.get(identifier)
            if current is None or current.closes_at <= now:
                self._windows[identifier] = _Window(used=1, closes_at=now + window)
                return limit - 1
            if current.used >= limit:
                wait = int((current.closes_at - now).total_seconds())
                raise RateLimitExceeded(max(wait, 1))
            current.used += 1
            return limit - current.used

    def purge(self) -> int:
        with self._lock:
            return self._drop_closed(self._clock())

    def _drop_closed(self, now: datetime) -> int:
        stale = [ident for ident, w in self._windows.items() if w.closes_at <= now]
        for ident in stale:
            del self._windows[ident]
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._next_sweep = None


GENERATION_LIMITER = FixedWindowLimiter(
    GENERATE_LIMIT_ENV,
    GENERATE_WINDOW_ENV,
    DEFAULT_GENERATE_LIMIT,
    DEFAULT_GENERATE_WINDOW_SECONDS,
)


def limit_generation(identifier: str) -> int:
    return GENERATION_LIMITER.hit(identifier)


def request_identifier(headers: Mapping[str, str], client_host: Optional[str] = None, user_id: Optional[str] = None) -> str:
    """Prefer an authenticated user id, else the first forwarded address."""

    if user_id:
        return f"user:{user_id}"
    forwarded = headers.get("x-forwarded-for") or ""
    ip = forwarded.split(",")[0].strip() or client_host or "anonymous"
    return f"ip:{ip}"


def purge_expired() -> int:
    return GENERATION_LIMITER.purge()


def reset_rate_limits() -> None:
    GENERATION_LIMITER.reset()


def _env_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, ""))
    except ValueError:
        return default
    return value if value > 0 else default


def _rate_limiting_disabled() -> bool:
    if os.getenv("ATHREAN_RATE_LIMIT_DISABLED", "").lower() in _TRUTHY:
        return True
    # pytest sets PYTEST_CURRENT_TEST; tests that exercise limits opt back in
    return bool(os.getenv("PYTEST_CURRENT_TEST")) and not os.getenv("ATHREAN_RATE_LIMIT_ENFORCE_IN_TESTS")
