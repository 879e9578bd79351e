from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .models import (
    AddJobResult,
    ClaimedJob,
    FailureOutcome,
    JobInfo,
    JobOptions,
    QueueMetrics,
    RateLimit,
)


@dataclass(frozen=True, slots=True)
class QueueStatus:
    mode: str  # "redis" | "table" | "none"
    redis_configured: bool
    redis_ok: bool
    detail: str
    banner: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "redis_configured": self.redis_configured,
            "redis_ok": self.redis_ok,
            "detail": self.detail,
            "banner": self.banner,
        }


JobProcessor = Callable[[ClaimedJob], Awaitable[Any]]


class QueueBackend(Protocol):
    """
    Single canonical queue interface.

    - The broker backend (Redis) pushes jobs to workers it creates itself.
    - The table backend stores jobs as rows; workers poll and claim them.

    Exactly one backend is active per QueueManager; it is chosen once at startup.
    """

    mode: str

    def status(self) -> QueueStatus: ...

    async def initialize(self) -> bool: ...
    async def is_available(self) -> bool: ...
    async def close(self) -> None: ...

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        options: JobOptions | Mapping[str, Any] | None = None,
    ) -> AddJobResult: ...

    async def get_job_status(self, queue_name: str, job_id: str) -> JobInfo: ...
    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics: ...


@runtime_checkable
class PullQueueBackend(Protocol):
    """Backends whose workers claim jobs themselves."""

    async def get_next_job(self, queue_name: str) -> ClaimedJob | None: ...
    async def complete_job(self, job_id: str, result: Any = None) -> None: ...
    async def fail_job(self, job_id: str, error: str, should_retry: bool = True) -> FailureOutcome: ...
    async def cleanup(self, older_than_days: int = 7) -> int: ...
    async def recover_stalled(self, stalled_after_s: float) -> int: ...


@runtime_checkable
class PushQueueBackend(Protocol):
    """Backends that run the processor for the caller (broker-driven dispatch)."""

    def create_worker(
        self,
        queue_name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 1,
        rate_limit: RateLimit | None = None,
    ) -> PushWorker: ...


class PushWorker(Protocol):
    async def run(self) -> None: ...
    async def close(self) -> None: ...
