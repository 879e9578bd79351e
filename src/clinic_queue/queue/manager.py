from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from clinic_queue.config import get_settings
from clinic_queue.ops import metrics
from clinic_queue.utils.log import logger

from .errors import QueueUnavailableError, UnsupportedOperationError
from .interfaces import (
    JobProcessor,
    PullQueueBackend,
    PushQueueBackend,
    PushWorker,
    QueueBackend,
    QueueStatus,
)
from .models import (
    AddJobResult,
    ClaimedJob,
    FailureOutcome,
    JobInfo,
    JobOptions,
    QueueMetrics,
    RateLimit,
)

QUEUE_MODES = ("auto", "redis", "table")


class QueueManager:
    """
    Single entry point for producers and workers.

    `initialize()` picks exactly one backend:
    - `auto`: the Redis broker when reachable, otherwise the `jobs` table
    - `redis`: the broker only
    - `table`: the `jobs` table only

    Once chosen the backend never changes for the lifetime of the manager.
    Pull-model operations (`get_next_job`, `complete_job`, `fail_job`, maintenance)
    exist only on the table backend and raise UnsupportedOperationError otherwise.
    """

    def __init__(
        self,
        *,
        redis_backend: QueueBackend | None = None,
        table_backend: QueueBackend | None = None,
        mode: str = "auto",
    ) -> None:
        mode_cfg = str(mode or "auto").strip().lower()
        if mode_cfg not in QUEUE_MODES:
            logger.warning("queue_mode_invalid", queue_mode=str(mode), using="auto")
            mode_cfg = "auto"
        self._mode_cfg = mode_cfg
        self._redis = redis_backend
        self._table = table_backend
        self._active: QueueBackend | None = None
        self._init_lock = asyncio.Lock()

    # --- lifecycle ---

    @property
    def mode(self) -> str:
        return self._mode_cfg

    @property
    def queue_type(self) -> str | None:
        return self._active.mode if self._active is not None else None

    @property
    def backend(self) -> QueueBackend | None:
        return self._active

    async def initialize(self) -> str:
        """
        Select and initialize the active backend; returns its mode.
        Idempotent. Raises QueueUnavailableError when no backend can be reached.
        """
        if self._active is not None:
            return self._active.mode
        async with self._init_lock:
            if self._active is not None:
                return self._active.mode

            if self._mode_cfg in {"auto", "redis"} and self._redis is not None:
                if await self._redis.initialize():
                    self._activate(self._redis)
                    return self._active.mode
                logger.warning("queue_primary_unavailable", queue_mode=self._mode_cfg)

            if self._mode_cfg == "redis":
                raise QueueUnavailableError("QUEUE_MODE=redis but the Redis broker is unreachable")

            if self._table is not None:
                if await self._table.initialize():
                    self._activate(self._table)
                    return self._active.mode
                logger.error("queue_fallback_unavailable", queue_mode=self._mode_cfg)

            raise QueueUnavailableError(
                "No queue backend available (Redis unreachable and jobs table unusable)"
            )

    def _activate(self, backend: QueueBackend) -> None:
        self._active = backend
        logger.info("queue_backend_selected", queue_type=backend.mode, queue_mode=self._mode_cfg)

    async def _backend(self) -> QueueBackend:
        if self._active is None:
            await self.initialize()
        assert self._active is not None
        return self._active

    async def _pull_backend(self, operation: str) -> PullQueueBackend:
        backend = await self._backend()
        if not isinstance(backend, PullQueueBackend):
            raise UnsupportedOperationError(
                f"{operation} is only available with the table queue (active: {backend.mode})"
            )
        return backend

    async def is_available(self) -> bool:
        if self._active is None:
            return False
        return await self._active.is_available()

    def status(self) -> QueueStatus:
        redis_status = self._redis.status() if self._redis is not None else None
        redis_configured = bool(redis_status and redis_status.redis_configured)
        if self._active is not None:
            st = self._active.status()
            if self._active is self._table and redis_configured and self._mode_cfg == "auto":
                return QueueStatus(
                    mode=st.mode,
                    redis_configured=True,
                    redis_ok=False,
                    detail=st.detail,
                    banner="Redis unavailable; using fallback queue",
                )
            return st
        return QueueStatus(
            mode="none",
            redis_configured=redis_configured,
            redis_ok=False,
            detail="queue manager not initialized",
        )

    async def close(self) -> None:
        for backend in (self._redis, self._table):
            if backend is None:
                continue
            try:
                await backend.close()
            except Exception as ex:
                logger.warning("queue_backend_close_failed", backend=backend.mode, error=str(ex))
        self._active = None
        logger.info("queue_manager_closed")

    # --- uniform API ---

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        options: JobOptions | Mapping[str, Any] | None = None,
    ) -> AddJobResult:
        backend = await self._backend()
        res = await backend.add_job(queue_name, job_type, payload, options)
        if not res.duplicate:
            metrics.jobs_added.labels(queue=queue_name, backend=backend.mode).inc()
        logger.info(
            "queue_job_added",
            job_id=res.job_id,
            queue=queue_name,
            job_type=res.job_type,
            queue_type=backend.mode,
            duplicate=res.duplicate,
        )
        return res

    async def get_job_status(self, queue_name: str, job_id: str) -> JobInfo:
        return await (await self._backend()).get_job_status(queue_name, job_id)

    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics:
        return await (await self._backend()).get_queue_metrics(queue_name)

    # --- pull-model worker API (table backend only) ---

    async def get_next_job(self, queue_name: str) -> ClaimedJob | None:
        return await (await self._pull_backend("get_next_job")).get_next_job(queue_name)

    async def complete_job(self, job_id: str, result: Any = None) -> None:
        await (await self._pull_backend("complete_job")).complete_job(job_id, result)

    async def fail_job(self, job_id: str, error: str, should_retry: bool = True) -> FailureOutcome:
        return await (await self._pull_backend("fail_job")).fail_job(job_id, error, should_retry)

    async def cleanup(self, older_than_days: int = 7) -> int:
        return await (await self._pull_backend("cleanup")).cleanup(older_than_days)

    async def recover_stalled(self, stalled_after_s: float) -> int:
        return await (await self._pull_backend("recover_stalled")).recover_stalled(stalled_after_s)

    # --- push-model worker API (broker backend only) ---

    async def create_worker(
        self,
        queue_name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 1,
        rate_limit: RateLimit | None = None,
    ) -> PushWorker:
        backend = await self._backend()
        if not isinstance(backend, PushQueueBackend):
            raise UnsupportedOperationError(
                f"create_worker is only available with the redis queue (active: {backend.mode})"
            )
        return backend.create_worker(queue_name, processor, concurrency=concurrency, rate_limit=rate_limit)


def build_queue_manager(settings=None, *, mode: str | None = None) -> QueueManager:
    """
    Wire a QueueManager from settings. Backends are only constructed when they are
    configured (broker URL / DATABASE_URL); nothing connects until initialize().
    """
    from .redis_queue import RedisQueue, RedisQueueConfig
    from .table_queue import TableQueue

    s = settings or get_settings()
    broker_url = s.broker_url()
    database_url = s.database_url_value()
    redis_backend = (
        RedisQueue(redis_url=broker_url, config=RedisQueueConfig.from_settings(s)) if broker_url else None
    )
    table_backend = TableQueue(database_url=database_url) if database_url else None
    return QueueManager(
        redis_backend=redis_backend,
        table_backend=table_backend,
        mode=mode if mode is not None else str(s.queue_mode),
    )
