"""
polystream - Retry Policy Tests
"""

import random
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from polystream.core.retry import (
    DEFAULT_RETRY,
    RetryPolicy,
    default_retry_on,
    jittered_backoff,
    parse_retry_after,
    resolve_policy,
)


class TestRetryPolicy:
    """Test policy values and validation."""

    def test_defaults(self):
        assert DEFAULT_RETRY.retries == 2
        assert DEFAULT_RETRY.base_delay_ms == 300
        assert DEFAULT_RETRY.max_delay_ms == 2000
        assert DEFAULT_RETRY.max_attempts == 3

    def test_immutable(self):
        with pytest.raises(AttributeError):
            DEFAULT_RETRY.retries = 5

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=-5)

    @pytest.mark.parametrize(
        "status,expected",
        [(None, True), (500, True), (503, True), (429, True), (400, False), (401, False), (404, False)],
    )
    def test_default_retry_on(self, status, expected):
        assert default_retry_on(status, None) is expected
        assert DEFAULT_RETRY.should_retry(status, None) is expected

    def test_custom_predicate(self):
        policy = RetryPolicy(retry_on=lambda status, code: code == "timeout")
        assert policy.should_retry(None, "timeout")
        assert not policy.should_retry(503, "http_5xx")


class TestResolvePolicy:
    """Test per-call overrides."""

    def test_none_is_default(self):
        assert resolve_policy(None) is DEFAULT_RETRY

    def test_policy_passes_through(self):
        policy = RetryPolicy(retries=0)
        assert resolve_policy(policy) is policy

    def test_mapping_overrides_fields(self):
        policy = resolve_policy({"retries": 5, "base_delay_ms": 10})
        assert policy.retries == 5
        assert policy.base_delay_ms == 10
        assert policy.max_delay_ms == DEFAULT_RETRY.max_delay_ms

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="retrys"):
            resolve_policy({"retrys": 3})


class TestBackoff:
    """Test jittered exponential backoff."""

    @pytest.mark.parametrize("attempt", range(8))
    def test_bounds(self, attempt):
        rng = random.Random(attempt)
        for _ in range(200):
            delay = jittered_backoff(attempt, 300, 2000, rng)
            raw = min(2000, 300 * 2 ** attempt)
            assert 0 <= delay <= 2000
            assert int(raw * 0.85) - 1 <= delay <= raw * 1.15

    def test_grows_then_caps(self):
        low = random.Random(0)
        low.uniform = lambda a, b: 1.0
        delays = [jittered_backoff(n, 300, 2000, low) for n in range(5)]
        assert delays == [300, 600, 1200, 2000, 2000]

    def test_policy_backoff(self):
        assert RetryPolicy(base_delay_ms=0, max_delay_ms=0).backoff_ms(3) == 0


class TestRetryAfter:
    """Test ``Retry-After`` parsing."""

    def test_seconds(self):
        assert parse_retry_after("2") == 2000
        assert parse_retry_after("0.5") == 500

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=30)
        ms = parse_retry_after(format_datetime(when, usegmt=True))
        assert 25_000 <= ms <= 30_000

    def test_past_date_is_zero(self):
        when = datetime.now(timezone.utc) - timedelta(seconds=30)
        assert parse_retry_after(format_datetime(when, usegmt=True)) == 0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_unparseable(self, value):
        assert parse_retry_after(value) is None
