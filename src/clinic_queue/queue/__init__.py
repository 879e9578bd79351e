"""
Background job queue: a Redis broker backend, a `jobs` table fallback and the
QueueManager that picks one of them at startup.
"""

from .errors import (
    DuplicateJobError,
    InvalidJobOptions,
    InvalidJobTransition,
    JobNotFoundError,
    NonRetryableJobError,
    QueueError,
    QueueUnavailableError,
    UnknownJobTypeError,
    UnsupportedOperationError,
)
from .interfaces import QueueBackend, QueueStatus
from .manager import QueueManager, build_queue_manager
from .models import (
    AddJobResult,
    ClaimedJob,
    FailureOutcome,
    JobInfo,
    JobOptions,
    JobStatus,
    QueueMetrics,
    RateLimit,
)

__all__ = [
    "AddJobResult",
    "ClaimedJob",
    "DuplicateJobError",
    "FailureOutcome",
    "InvalidJobOptions",
    "InvalidJobTransition",
    "JobInfo",
    "JobNotFoundError",
    "JobOptions",
    "JobStatus",
    "NonRetryableJobError",
    "QueueBackend",
    "QueueError",
    "QueueManager",
    "QueueMetrics",
    "QueueStatus",
    "QueueUnavailableError",
    "RateLimit",
    "UnknownJobTypeError",
    "UnsupportedOperationError",
    "build_queue_manager",
]
