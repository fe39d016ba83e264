"""Rate-limit classification, backoff growth and expiry."""

from datetime import timedelta

import pytest

from app.core.rate_limits import (
    LimitType,
    RateLimitRegistry,
    Severity,
    parse_retry_after,
)

from conftest import FIXED_NOW


class Clock:
    def __init__(self):
        self.now = FIXED_NOW

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(clock):
    return RateLimitRegistry(clock=clock)


@pytest.mark.parametrize(
    "code, limit_type, severity, wait",
    [
        (17, LimitType.USER, Severity.HIGH, 3600),
        (80004, LimitType.APP, Severity.MEDIUM, 1800),
        (613, LimitType.HOURLY, Severity.MEDIUM, 3600),
    ],
)
def test_platform_codes(registry, code, limit_type, severity, wait):
    state = registry.classify("meta", "123", error_code=code, error_message="limit")
    assert state.limit_type == limit_type
    assert state.severity == severity
    assert state.wait_seconds == wait
    assert state.reset_time == FIXED_NOW + timedelta(seconds=wait)


def test_generic_rules(registry):
    by_status = registry.classify("meta", "a", status_code=429)
    assert (by_status.limit_type, by_status.wait_seconds) == (LimitType.GENERIC, 300)

    by_message = registry.classify("meta", "b", error_code=4, error_message="Too Many Requests")
    assert by_message.severity == Severity.LOW

    throttled = registry.classify("meta", "c", error_message="Request throttled")
    assert throttled.wait_seconds == 60


def test_platform_rule_wins_over_generic(registry):
    state = registry.classify("meta", "123", error_code=17, status_code=429)
    assert state.limit_type == LimitType.USER


def test_unknown_platform_uses_generic_rules(registry):
    assert registry.classify("google", "1", error_code=17, error_message="nope") is None
    assert registry.classify("google", "1", status_code=429).limit_type == LimitType.GENERIC


def test_non_rate_limit_errors_are_not_classified(registry):
    assert registry.classify("meta", "123", error_code=190, error_message="Invalid OAuth") is None
    assert registry.is_currently_limited("meta", "123") is None


def test_backoff_grows_then_resets_on_success(registry):
    waits = [registry.classify("meta", "123", status_code=429).wait_seconds for _ in range(3)]
    assert waits == [300, 450, 675]

    registry.mark_success("meta", "123")
    assert registry.classify("meta", "123", status_code=429).wait_seconds == 300


def test_backoff_is_capped_by_severity(registry):
    waits = [registry.classify("meta", "123", error_code=17).wait_seconds for _ in range(4)]
    assert waits == [3600, 5400, 7200, 7200]


def test_multiplier_caps_at_four(registry):
    states = [registry.classify("meta", "123", error_message="throttled") for _ in range(6)]
    assert max(s.backoff_multiplier for s in states) == 4.0


def test_retry_after_overrides_base_wait(registry):
    state = registry.classify("meta", "123", status_code=429, headers={"Retry-After": "120"})
    assert state.wait_seconds == 120

    tiny = registry.classify("meta", "456", status_code=429, headers={"retry-after": "5"})
    assert tiny.wait_seconds == 60


def test_limits_expire_lazily(registry, clock):
    registry.classify("meta", "123", status_code=429)
    assert registry.is_currently_limited("meta", "123") is not None

    clock.advance(299)
    assert registry.is_currently_limited("meta", "123").remaining_seconds(clock.now) == 1

    clock.advance(1)
    assert registry.is_currently_limited("meta", "123") is None


def test_mark_success_keeps_unexpired_limit(registry):
    registry.classify("meta", "123", error_code=17)
    registry.mark_success("meta", "123")
    assert registry.is_currently_limited("meta", "123") is not None


def test_accounts_are_independent(registry):
    registry.classify("meta", "123", error_code=17)
    assert registry.is_currently_limited("meta", "999") is None


def test_active_limits_purges_expired(registry, clock):
    registry.classify("meta", "short", error_message="throttled")
    registry.classify("meta", "long", error_code=17)
    clock.advance(61)

    active = registry.active_limits()

    assert [s.account_id for s in active] == ["long"]
    data = active[0].to_dict(clock.now)
    assert data["limit_type"] == "user"
    assert data["remaining_seconds"] == 3539


def test_state_message_mentions_minutes(registry):
    state = registry.classify("meta", "123", error_code=80004)
    assert state.wait_time_minutes == 30
    assert "30 minutes" in state.message


def test_parse_retry_after():
    assert parse_retry_after({"Retry-After": "30"}) == 30
    assert parse_retry_after({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None
    assert parse_retry_after({"Retry-After": "0"}) is None
    assert parse_retry_after(None) is None
