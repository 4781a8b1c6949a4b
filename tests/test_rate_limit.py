import pytest

from src.athrean.security import rate_limit as rl


@pytest.fixture
def enforce(monkeypatch):
    monkeypatch.setenv("ATHREAN_RATE_LIMIT_ENFORCE_IN_TESTS", "1")
    monkeypatch.delenv("ATHREAN_RATE_LIMIT_DISABLED", raising=False)


def test_limit_blocks_after_allowance(enforce, monkeypatch):
    monkeypatch.setenv(rl.GENERATE_LIMIT_ENV, "2")
    assert rl.limit_generation("ip:1") == 1
    assert rl.limit_generation("ip:1") == 0
    with pytest.raises(rl.RateLimitExceeded) as info:
        rl.limit_generation("ip:1")
    assert 1 <= info.value.retry_after_seconds <= rl.DEFAULT_GENERATE_WINDOW_SECONDS
    # other identifiers have their own window
    assert rl.limit_generation("ip:2") == 1


def test_invalid_env_falls_back_to_default(enforce, monkeypatch):
    monkeypatch.setenv(rl.GENERATE_LIMIT_ENV, "zero")
    assert rl.limit_generation("ip:3") == rl.DEFAULT_GENERATE_LIMIT - 1


def test_disabled_flag_skips_counting(monkeypatch):
    monkeypatch.setenv("ATHREAN_RATE_LIMIT_ENFORCE_IN_TESTS", "1")
    monkeypatch.setenv("ATHREAN_RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv(rl.GENERATE_LIMIT_ENV, "1")
    for _ in range(5):
        rl.limit_generation("ip:4")


def test_reset_clears_counters(enforce, monkeypatch):
    monkeypatch.setenv(rl.GENERATE_LIMIT_ENV, "1")
    rl.limit_generation("ip:5")
    rl.reset_rate_limits()
    rl.limit_generation("ip:5")


def test_purge_expired_removes_finished_windows(enforce, monkeypatch):
    monkeypatch.setenv(rl.GENERATE_WINDOW_ENV, "60")
    rl.limit_generation("ip:6")
    assert rl.purge_expired() == 0


def test_request_identifier_preference():
    assert rl.request_identifier({}, "10.0.0.1", user_id="u1") == "user:u1"
    assert rl.request_identifier({"x-forwarded-for": "1.1.1.1, 2.2.2.2"}, "10.0.0.1") == "ip:1.1.1.1"
    assert rl.request_identifier({}, "10.0.0.1") == "ip:10.0.0.1"
    assert rl.request_identifier({}) == "ip:anonymous"


def test_window_reopens_after_expiry(enforce):
    from datetime import datetime, timedelta, timezone

    now = [datetime(2025, 1, 1, tzinfo=timezone.utc)]
    limiter = rl.FixedWindowLimiter("ATHREAN_TEST_LIMIT", "ATHREAN_TEST_WINDOW", 1, 30, clock=lambda: now[0])
    assert limiter.hit("ip:7") == 0
    with pytest.raises(rl.RateLimitExceeded) as info:
        limiter.hit("ip:7")
    assert info.value.retry_after_seconds == 30

    now[0] += timedelta(seconds=31)
    assert limiter.purge() == 1
    assert limiter.hit("ip:7") == 0


def test_closed_windows_are_swept_on_later_hits(enforce):
    from datetime import datetime, timedelta, timezone

    now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
    limiter = rl.FixedWindowLimiter("UNSET_LIMIT", "UNSET_WINDOW", 5, 60, clock=lambda: now[0])
    limiter.hit("ip:a")
    limiter.hit("ip:b")
    assert len(limiter) == 2

    now[0] += timedelta(seconds=61)
    limiter.hit("ip:c")
    assert len(limiter) == 1

    # a one-off client per window never grows the table past the live ones
    for i in range(10):
        now[0] += timedelta(seconds=61)
        limiter.hit(f"ip:x{i}")
    assert len(limiter) == 1
