"""Tests for the minimum-interval rate limiter."""

import pytest

from scripts.provisioning.rate_limiter import RateLimiter


def test_first_call_does_not_wait(clock):
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    assert limiter.wait() == 0.0
    assert clock.sleeps == []


def test_waits_remaining_interval(clock):
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    limiter.wait()
    clock.advance(0.25)
    assert limiter.wait() == pytest.approx(0.75)
    assert clock.sleeps == [pytest.approx(0.75)]


def test_no_wait_when_interval_already_elapsed(clock):
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    limiter.wait()
    clock.advance(5)
    assert limiter.wait() == 0.0


def test_zero_interval_disables(clock):
    limiter = RateLimiter(0, clock=clock, sleep=clock.sleep)
    for _ in range(5):
        limiter.wait()
    assert clock.sleeps == []


def test_defer_extends_wait(clock):
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    limiter.wait()
    limiter.defer(30.0)
    assert limiter.wait() == pytest.approx(30.0)
    clock.advance(0.5)
    assert limiter.wait() == pytest.approx(0.5)


def test_defer_shorter_than_interval_is_ignored(clock):
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    limiter.wait()
    limiter.defer(0.25)
    assert limiter.wait() == pytest.approx(1.0)


def test_defer_applies_to_first_call(clock):
    limiter = RateLimiter(0, clock=clock, sleep=clock.sleep)
    limiter.defer(5.0)
    assert limiter.wait() == pytest.approx(5.0)
    assert limiter.wait() == 0.0


def test_from_millis():
    assert RateLimiter.from_millis(1500).min_interval_s == 1.5


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        RateLimiter(-1)
