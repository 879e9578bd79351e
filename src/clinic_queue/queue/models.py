from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import InvalidJobOptions

DEFAULT_MAX_ATTEMPTS = 3


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_job_id() -> str:
    return str(uuid.uuid4())


def type_key(queue_name: str, job_type: str) -> str:
    return f"{queue_name}:{job_type}"


def split_type_key(tipo: str) -> tuple[str, str]:
    queue_name, _, job_type = str(tipo).partition(":")
    return queue_name, job_type


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class JobOptions:
    job_id: str | None = None
    attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_ms: int = 0

    @classmethod
    def coerce(
        cls, options: JobOptions | Mapping[str, Any] | None, *, default_attempts: int = DEFAULT_MAX_ATTEMPTS
    ) -> JobOptions:
        """
        Accepts None, a JobOptions or a mapping with `job_id`/`jobId`, `attempts`, `delay`.
        """
        if isinstance(options, JobOptions):
            opts = options
        else:
            raw = dict(options or {})
            job_id = raw.get("job_id", raw.get("jobId"))
            attempts = raw.get("attempts")
            delay = raw.get("delay", raw.get("delay_ms", 0))
            try:
                opts = cls(
                    job_id=str(job_id).strip() if job_id is not None else None,
                    attempts=int(attempts) if attempts is not None else int(default_attempts),
                    delay_ms=int(delay or 0),
                )
            except (TypeError, ValueError) as ex:
                raise InvalidJobOptions(f"invalid job options: {ex}") from ex
        if opts.attempts < 1:
            raise InvalidJobOptions(f"attempts must be >= 1, got {opts.attempts}")
        if opts.delay_ms < 0:
            raise InvalidJobOptions(f"delay must be >= 0, got {opts.delay_ms}")
        return opts


@dataclass(frozen=True, slots=True)
class AddJobResult:
    success: bool
    job_id: str
    queue_name: str
    job_type: str
    # True when an explicit job_id was already queued and nothing new was created.
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "job_type": self.job_type,
            "duplicate": self.duplicate,
        }


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    """A job handed to a worker: `name` is the job type, `data` the payload."""

    id: str
    queue_name: str
    name: str
    data: Any
    attempts_made: int
    max_attempts: int


@dataclass(frozen=True, slots=True)
class FailureOutcome:
    job_id: str
    state: JobStatus
    attempts: int
    max_attempts: int
    retry_in_ms: int | None = None

    @property
    def will_retry(self) -> bool:
        return self.state == JobStatus.PENDING


@dataclass(frozen=True, slots=True)
class JobInfo:
    exists: bool
    id: str | None = None
    name: str | None = None
    data: Any = None
    state: str | None = None
    attempts_made: int = 0
    max_attempts: int = 0
    returnvalue: Any = None
    failed_reason: str | None = None
    timestamp: datetime | None = None
    processed_on: datetime | None = None
    next_attempt_at: datetime | None = None

    @classmethod
    def missing(cls) -> JobInfo:
        return cls(exists=False)

    def to_dict(self) -> dict[str, Any]:
        if not self.exists:
            return {"exists": False}
        return {
            "exists": True,
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "state": self.state,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "returnvalue": self.returnvalue,
            "failed_reason": self.failed_reason,
            "timestamp": _iso(self.timestamp),
            "processed_on": _iso(self.processed_on),
            "next_attempt_at": _iso(self.next_attempt_at),
        }


@dataclass(frozen=True, slots=True)
class QueueMetrics:
    queue_name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_name": self.queue_name,
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class RateLimit:
    """At most `max` jobs per `duration_ms` window, shared by all workers of a queue."""

    max: int
    duration_ms: int
