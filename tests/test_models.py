from __future__ import annotations

from datetime import datetime, timezone

import pytest

from clinic_queue.queue.errors import InvalidJobOptions
from clinic_queue.queue.models import (
    FailureOutcome,
    JobInfo,
    JobOptions,
    JobStatus,
    QueueMetrics,
    as_utc,
    split_type_key,
    type_key,
)


def test_job_options_defaults() -> None:
    opts = JobOptions.coerce(None)
    assert opts.job_id is None
    assert opts.attempts == 3
    assert opts.delay_ms == 0


def test_job_options_accepts_camel_case_and_delay() -> None:
    opts = JobOptions.coerce({"jobId": " abc ", "attempts": "5", "delay": 1500})
    assert opts == JobOptions(job_id="abc", attempts=5, delay_ms=1500)


def test_job_options_default_attempts_override() -> None:
    assert JobOptions.coerce({}, default_attempts=7).attempts == 7


@pytest.mark.parametrize(
    "raw",
    [{"attempts": 0}, {"attempts": "x"}, {"delay": -1}],
)
def test_job_options_rejects_invalid(raw) -> None:
    with pytest.raises(InvalidJobOptions):
        JobOptions.coerce(raw)


def test_type_key_round_trip_keeps_colons_in_type() -> None:
    assert type_key("orcamento", "generate-pdf") == "orcamento:generate-pdf"
    assert split_type_key("orcamento:a:b") == ("orcamento", "a:b")


def test_job_status_terminal() -> None:
    assert JobStatus.COMPLETED.terminal
    assert JobStatus.FAILED.terminal
    assert not JobStatus.PENDING.terminal
    assert not JobStatus.PROCESSING.terminal


def test_missing_job_info_serializes_to_exists_false() -> None:
    assert JobInfo.missing().to_dict() == {"exists": False}


def test_job_info_dates_are_isoformat() -> None:
    ts = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    d = JobInfo(exists=True, id="j1", name="t", state="pending", timestamp=ts).to_dict()
    assert d["timestamp"] == "2025-01-02T03:04:05+00:00"
    assert d["processed_on"] is None


def test_as_utc_treats_naive_as_utc() -> None:
    naive = datetime(2025, 1, 1, 10, 0, 0)
    assert as_utc(naive) == datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None


def test_queue_metrics_total() -> None:
    m = QueueMetrics("q", waiting=3, active=1, completed=2, failed=1, delayed=4)
    assert m.total == 11
    assert m.to_dict()["total"] == 11


def test_failure_outcome_will_retry() -> None:
    assert FailureOutcome("j", JobStatus.PENDING, 1, 3, 2000).will_retry
    assert not FailureOutcome("j", JobStatus.FAILED, 3, 3).will_retry
