from __future__ import annotations

import pytest

from clinic_queue.queue.backoff import exponential_backoff_ms, retry_backoff_ms


def test_retry_backoff_doubles_then_caps() -> None:
    got = [retry_backoff_ms(k) for k in range(1, 9)]
    assert got == [2000, 4000, 8000, 16000, 32000, 60000, 60000, 60000]


def test_retry_backoff_matches_formula() -> None:
    for k in range(1, 40):
        assert retry_backoff_ms(k) == min(2**k * 1000, 60000)


def test_retry_backoff_huge_attempt_is_capped() -> None:
    assert retry_backoff_ms(10_000) == 60000


def test_retry_backoff_rejects_zero() -> None:
    with pytest.raises(ValueError):
        retry_backoff_ms(0)


def test_broker_backoff_is_exponential_from_delay() -> None:
    assert exponential_backoff_ms(1, 2000) == 2000
    assert exponential_backoff_ms(2, 2000) == 4000
    assert exponential_backoff_ms(3, 2000) == 8000
    assert exponential_backoff_ms(0, 2000) == 0
    assert exponential_backoff_ms(3, 0) == 0
