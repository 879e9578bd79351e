"""
Retry delays.

Both functions are pure so they can be checked without a database or broker.
"""

from __future__ import annotations

RETRY_BASE_MS = 1000
RETRY_CAP_MS = 60_000


def retry_backoff_ms(attempt: int, *, base_ms: int = RETRY_BASE_MS, cap_ms: int = RETRY_CAP_MS) -> int:
    """
    Delay before a job that failed its `attempt`-th try (1-based) becomes claimable
    again in the table backend: min(2^attempt * base, cap).
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    # Past 2^32 the cap has long been reached.
    return int(min((2 ** min(attempt, 32)) * base_ms, cap_ms))


def exponential_backoff_ms(attempts_made: int, delay_ms: int) -> int:
    """
    Broker-side retry delay after `attempts_made` failures: delay * 2^(attempts_made-1).
    """
    if attempts_made < 1 or delay_ms <= 0:
        return 0
    return int(delay_ms * (2 ** (attempts_made - 1)))
