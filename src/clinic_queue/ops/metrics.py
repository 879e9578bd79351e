from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

REGISTRY = CollectorRegistry()

# Handler latency buckets (seconds); PDF rendering dominates the upper range.
HANDLER_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0)

jobs_added = Counter(
    "clinic_queue_jobs_added_total",
    "Jobs accepted by the queue",
    labelnames=("queue", "backend"),
    registry=REGISTRY,
)
jobs_claimed = Counter(
    "clinic_queue_jobs_claimed_total",
    "Jobs handed to a handler",
    labelnames=("queue",),
    registry=REGISTRY,
)
jobs_finished = Counter(
    "clinic_queue_jobs_finished_total",
    "Handler outcomes (completed|retried|failed)",
    labelnames=("queue", "outcome"),
    registry=REGISTRY,
)
job_handler_seconds = Histogram(
    "clinic_queue_job_handler_seconds",
    "Handler latency (seconds)",
    labelnames=("job_type",),
    registry=REGISTRY,
    buckets=HANDLER_BUCKETS,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Context manager to time a block and observe into a histogram.
    Usage:
        with time_hist(hist) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)


def render_latest() -> bytes:
    return generate_latest(REGISTRY)
