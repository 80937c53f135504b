"""Tests for the sliding-window rate limiter."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ballistic.config import DEFAULT_RATE_LIMITS, Settings
from ballistic.errors import RateLimited
from ballistic.ratelimit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter({"api": (2, 60), "connections": (1, 10)}, clock=clock)


def test_allows_hits_up_to_limit(limiter):
    limiter.hit("api", "u1")
    limiter.hit("api", "u1")
    assert limiter.remaining("api", "u1") == 0


def test_rejects_with_retry_after(limiter, clock):
    limiter.hit("api", "u1")
    clock.now += 20
    limiter.hit("api", "u1")

    with pytest.raises(RateLimited) as exc_info:
        limiter.hit("api", "u1")

    assert exc_info.value.retry_after == 40
    assert exc_info.value.limit_name == "api"
    assert exc_info.value.status_code == 429


def test_window_slides(limiter, clock):
    limiter.hit("api", "u1")
    limiter.hit("api", "u1")
    clock.now += 60
    limiter.hit("api", "u1")
    assert limiter.remaining("api", "u1") == 1


def test_keys_and_limits_are_independent(limiter):
    limiter.hit("api", "u1")
    limiter.hit("api", "u1")
    limiter.hit("api", "u2")
    limiter.hit("connections", "u1")

    with pytest.raises(RateLimited):
        limiter.hit("connections", "u1")


def test_unknown_limit(limiter):
    with pytest.raises(KeyError):
        limiter.hit("uploads", "u1")


def test_reset(limiter):
    limiter.hit("api", "u1")
    limiter.hit("api", "u1")
    limiter.reset()
    assert limiter.remaining("api", "u1") == 2


def test_settings_rate_limits_from_env(monkeypatch):
    monkeypatch.setenv("BALLISTIC_RATE_LIMIT_API", "5")
    monkeypatch.setenv("BALLISTIC_RATE_LIMIT_MCP", "lots")

    settings = Settings.from_env()

    assert settings.rate_limits["api"] == (5, 60)
    assert settings.rate_limits["mcp"] == DEFAULT_RATE_LIMITS["mcp"]
