"""
polystream - Retry Policy

Bounded retries with exponential backoff and multiplicative jitter:
300ms, 600ms, 1200ms, ... capped at 2000ms (each +/-15%).
"""

import random
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping, Optional, Union


JITTER_LOW = 0.85
JITTER_HIGH = 1.15


def default_retry_on(status: Optional[int] = None, code: Optional[str] = None) -> bool:
    """Retry when there is no status (transport failure), on 5xx and on 429."""
    if status is None:
        return True
    return status >= 500 or status == 429


RetryPredicate = Callable[..., bool]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""
    retries: int = 2
    base_delay_ms: int = 300
    max_delay_ms: int = 2000
    retry_on: RetryPredicate = default_retry_on

    def __post_init__(self):
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def backoff_ms(self, attempt: int, rng: Optional[random.Random] = None) -> int:
        return jittered_backoff(attempt, self.base_delay_ms, self.max_delay_ms, rng)

    def should_retry(self, status: Optional[int], code: Optional[str]) -> bool:
        return bool(self.retry_on(status, code))


DEFAULT_RETRY = RetryPolicy()

_POLICY_FIELDS = frozenset(f.name for f in fields(RetryPolicy))


def resolve_policy(retry: Union[RetryPolicy, Mapping[str, Any], None] = None) -> RetryPolicy:
    """
    Resolve a per-call override into a policy.

    Accepts a full ``RetryPolicy``, a mapping of overridden fields, or None
    for the default.
    """
    if retry is None:
        return DEFAULT_RETRY
    if isinstance(retry, RetryPolicy):
        return retry
    unknown = set(retry) - _POLICY_FIELDS
    if unknown:
        raise ValueError(f"Unknown retry option(s): {', '.join(sorted(unknown))}")
    overrides = {k: v for k, v in retry.items() if v is not None}
    return replace(DEFAULT_RETRY, **overrides)


def jittered_backoff(
    attempt: int,
    base_ms: int,
    max_ms: int,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Calculate delay for ``attempt`` (0-based) in milliseconds.

    ``min(max_ms, base_ms * 2**attempt)`` scaled by a uniform factor in
    [0.85, 1.15], then clamped to ``max_ms`` again.
    """
    uniform = rng.uniform if rng is not None else random.uniform
    raw = min(max_ms, base_ms * (2 ** max(0, attempt)))
    delay = raw * uniform(JITTER_LOW, JITTER_HIGH)
    return int(max(0, min(max_ms, delay)))


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """
    Parse a ``Retry-After`` header value into milliseconds.

    Supports delta-seconds and HTTP dates. Returns None when absent or
    unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(seconds * 1000))
