from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any

from clinic_queue.ops import metrics
from clinic_queue.queue.errors import NonRetryableJobError
from clinic_queue.queue.interfaces import PushWorker
from clinic_queue.queue.manager import QueueManager
from clinic_queue.queue.models import ClaimedJob, RateLimit
from clinic_queue.utils.log import bind_job, logger

from .registry import HandlerRegistry


class QueueWorker:
    """
    Consumes one queue from whichever backend the manager picked.

    - table backend: a poll loop; each tick claims at most one job, runs its
      handler and reports completion/failure back to the table.
    - redis backend: a broker worker with `concurrency` slots and `rate_limit`;
      the broker owns completion, retries and stalled-job recovery.

    A failing tick is logged and the loop carries on.
    """

    def __init__(
        self,
        manager: QueueManager,
        queue_name: str,
        registry: HandlerRegistry,
        *,
        poll_interval_s: float = 5.0,
        concurrency: int = 2,
        rate_limit: RateLimit | None = None,
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        self._manager = manager
        self._queue = queue_name
        self._registry = registry
        self._poll_interval_s = float(poll_interval_s)
        self._concurrency = max(1, int(concurrency))
        self._rate_limit = rate_limit

        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()
        self._push: PushWorker | None = None
        self.mode: str | None = None

    @property
    def queue_name(self) -> str:
        return self._queue

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("worker_already_running", queue=self._queue)
            return
        self._stop.clear()
        self.mode = await self._manager.initialize()
        if self.mode == "redis":
            self._push = await self._manager.create_worker(
                self._queue,
                self._process_pushed,
                concurrency=self._concurrency,
                rate_limit=self._rate_limit,
            )
            self._task = asyncio.create_task(self._push.run(), name=f"worker.push:{self._queue}")
        else:
            self._task = asyncio.create_task(self._poll_loop(), name=f"worker.poll:{self._queue}")
        logger.info(
            "worker_started",
            queue=self._queue,
            queue_type=self.mode,
            job_types=self._registry.job_types(),
            poll_interval_s=self._poll_interval_s if self.mode != "redis" else None,
            concurrency=self._concurrency if self.mode == "redis" else 1,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop taking new jobs; let the job in flight finish (bounded by `timeout`),
        then cancel whatever is left.
        """
        self._stop.set()
        task, self._task = self._task, None
        if self._push is not None:
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._push.close(), timeout=timeout)
            self._push = None
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("worker_stop_timeout", queue=self._queue, timeout_s=timeout)
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        logger.info("worker_stopped", queue=self._queue)

    async def run_forever(self) -> None:
        await self.start()
        task = self._task
        if task is not None:
            await task

    # --- table backend ---

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.error("worker_tick_failed", queue=self._queue, error=str(ex))
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval_s)

    async def tick(self) -> bool:
        """
        One poll cycle: claim at most one job and settle it.
        Returns True when a job was processed. Queue errors propagate.
        """
        async with self._tick_lock:
            job = await self._manager.get_next_job(self._queue)
            if job is None:
                return False
            try:
                result = await self._dispatch(job)
            except Exception as ex:
                retry = not isinstance(ex, NonRetryableJobError)
                outcome = await self._manager.fail_job(job.id, str(ex) or type(ex).__name__, retry)
                metrics.jobs_finished.labels(
                    queue=self._queue, outcome="retried" if outcome.will_retry else "failed"
                ).inc()
                return True
            await self._manager.complete_job(job.id, result)
            metrics.jobs_finished.labels(queue=self._queue, outcome="completed").inc()
            return True

    # --- redis backend ---

    async def _process_pushed(self, job: ClaimedJob) -> Any:
        try:
            result = await self._dispatch(job)
        except Exception as ex:
            retry = not isinstance(ex, NonRetryableJobError)
            will_retry = retry and job.attempts_made + 1 < job.max_attempts
            metrics.jobs_finished.labels(
                queue=self._queue, outcome="retried" if will_retry else "failed"
            ).inc()
            raise
        metrics.jobs_finished.labels(queue=self._queue, outcome="completed").inc()
        return result

    # --- shared ---

    async def _dispatch(self, job: ClaimedJob) -> Any:
        metrics.jobs_claimed.labels(queue=self._queue).inc()
        with bind_job(job.id, self._queue):
            logger.info(
                "worker_job_started",
                job_type=job.name,
                attempt=job.attempts_made + 1,
                max_attempts=job.max_attempts,
            )
            try:
                handler = self._registry.get(job.name)
                with metrics.time_hist(metrics.job_handler_seconds.labels(job_type=job.name)) as elapsed:
                    result = await handler(job.data)
            except Exception as ex:
                logger.warning(
                    "worker_job_failed",
                    job_type=job.name,
                    retryable=not isinstance(ex, NonRetryableJobError),
                    error=str(ex),
                    error_type=type(ex).__name__,
                )
                raise
            logger.info("worker_job_completed", job_type=job.name, duration_s=round(elapsed(), 3))
            return result
