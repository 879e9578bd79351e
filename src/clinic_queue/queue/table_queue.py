from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, delete, func, inspect, or_, select, text, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from clinic_queue.utils.log import logger

from .backoff import retry_backoff_ms
from .errors import (
    DuplicateJobError,
    InvalidJobTransition,
    JobNotFoundError,
    QueueUnavailableError,
)
from .interfaces import QueueStatus
from .models import (
    AddJobResult,
    ClaimedJob,
    FailureOutcome,
    JobInfo,
    JobOptions,
    JobStatus,
    QueueMetrics,
    as_utc,
    new_job_id,
    split_type_key,
    type_key,
    utc_now,
)
from .schema import JOBS_TABLE, jobs


class TableQueue:
    """
    Pull-model queue backed by the `jobs` table.

    Claims use `SELECT ... FOR UPDATE SKIP LOCKED` followed by an update to
    `processing` in the same transaction, so two workers never hold the same row.
    SQLite has no row locks; there every transaction begins IMMEDIATE (see
    clinic_queue.db) which serialises claims instead.

    Rows left in `processing` by a crashed worker stay there until
    `recover_stalled()` is run explicitly.
    """

    mode = "table"

    def __init__(
        self,
        *,
        engine: AsyncEngine | None = None,
        database_url: str = "",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._owns_engine = engine is None
        self._database_url = str(database_url or "").strip()
        self._clock = clock
        self._initialized = False
        self._last_error = ""

    # --- lifecycle ---

    def _get_engine(self) -> AsyncEngine:
        if self._engine is not None:
            return self._engine
        if not self._database_url:
            raise QueueUnavailableError("DATABASE_URL not set; table queue disabled")
        from clinic_queue.db import create_engine

        self._engine = create_engine(self._database_url)
        self._owns_engine = True
        return self._engine

    def _now(self) -> datetime:
        return as_utc(self._clock())

    @property
    def configured(self) -> bool:
        return self._engine is not None or bool(self._database_url)

    async def initialize(self) -> bool:
        if self._initialized:
            return True
        try:
            engine = self._get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                exists = await conn.run_sync(lambda c: inspect(c).has_table(JOBS_TABLE))
            if not exists:
                self._last_error = "jobs table does not exist; run `clinic-queue migrate` first"
                logger.error("table_queue_missing_table", table=JOBS_TABLE)
                return False
        except Exception as ex:
            self._last_error = str(ex)
            logger.error("table_queue_init_failed", error=str(ex))
            return False
        self._initialized = True
        self._last_error = ""
        logger.info("table_queue_initialized", dialect=engine.dialect.name)
        return True

    async def is_available(self) -> bool:
        try:
            async with self._get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    def status(self) -> QueueStatus:
        if self._initialized:
            return QueueStatus(
                mode="table",
                redis_configured=False,
                redis_ok=False,
                detail="table queue active",
            )
        return QueueStatus(
            mode="none",
            redis_configured=False,
            redis_ok=False,
            detail=self._last_error or "table queue not initialized",
        )

    async def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
        self._initialized = False
        logger.info("table_queue_closed")

    # --- producer side ---

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        options: JobOptions | Mapping[str, Any] | None = None,
    ) -> AddJobResult:
        opts = JobOptions.coerce(options)
        job_id = opts.job_id or new_job_id()
        now = self._now()
        due = now + timedelta(milliseconds=opts.delay_ms) if opts.delay_ms > 0 else None
        try:
            async with self._get_engine().begin() as conn:
                await conn.execute(
                    jobs.insert().values(
                        job_id=job_id,
                        tipo=type_key(queue_name, job_type),
                        payload=payload,
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        max_attempts=opts.attempts,
                        proxima_tentativa=due,
                        criado_em=now,
                        atualizado_em=now,
                    )
                )
        except IntegrityError:
            existing = await self._find(job_id)
            if existing is None:
                raise
            existing_queue, existing_type = split_type_key(existing.tipo)
            if existing_queue != queue_name:
                raise DuplicateJobError(
                    f"Job {job_id} already exists in queue '{existing_queue}'"
                ) from None
            logger.info("table_queue_duplicate_job", job_id=job_id, queue=queue_name)
            return AddJobResult(
                success=True,
                job_id=job_id,
                queue_name=queue_name,
                job_type=existing_type,
                duplicate=True,
            )
        except SQLAlchemyError as ex:
            logger.error("table_queue_add_failed", queue=queue_name, error=str(ex))
            raise

        logger.info(
            "table_queue_job_added",
            job_id=job_id,
            queue=queue_name,
            job_type=job_type,
            max_attempts=opts.attempts,
            delay_ms=opts.delay_ms,
        )
        return AddJobResult(success=True, job_id=job_id, queue_name=queue_name, job_type=job_type)

    # --- consumer side ---

    async def get_next_job(self, queue_name: str) -> ClaimedJob | None:
        """
        Claim the oldest eligible job of `queue_name`, or return None.
        """
        now = self._now()
        stmt = (
            select(jobs)
            .where(
                jobs.c.tipo.startswith(f"{queue_name}:", autoescape=True),
                jobs.c.status == JobStatus.PENDING.value,
                jobs.c.attempts < jobs.c.max_attempts,
                or_(jobs.c.proxima_tentativa.is_(None), jobs.c.proxima_tentativa <= now),
            )
            .order_by(jobs.c.criado_em.asc(), jobs.c.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        try:
            async with self._get_engine().begin() as conn:
                row = (await conn.execute(stmt)).first()
                if row is None:
                    return None
                res = await conn.execute(
                    update(jobs)
                    .where(jobs.c.id == row.id, jobs.c.status == JobStatus.PENDING.value)
                    .values(status=JobStatus.PROCESSING.value, atualizado_em=now)
                )
                if res.rowcount != 1:
                    # Lost the row to another claimer; the next tick will try again.
                    logger.warning("table_queue_claim_lost", job_id=row.job_id, queue=queue_name)
                    return None
        except SQLAlchemyError as ex:
            logger.error("table_queue_claim_failed", queue=queue_name, error=str(ex))
            raise

        _, job_type = split_type_key(row.tipo)
        logger.info(
            "table_queue_claimed",
            job_id=row.job_id,
            queue=queue_name,
            job_type=job_type,
            attempt=int(row.attempts) + 1,
            max_attempts=int(row.max_attempts),
        )
        return ClaimedJob(
            id=row.job_id,
            queue_name=queue_name,
            name=job_type,
            data=row.payload,
            attempts_made=int(row.attempts),
            max_attempts=int(row.max_attempts),
        )

    async def complete_job(self, job_id: str, result: Any = None) -> None:
        now = self._now()
        try:
            async with self._get_engine().begin() as conn:
                await self._locked_processing_row(conn, job_id, action="complete")
                await conn.execute(
                    update(jobs)
                    .where(jobs.c.job_id == job_id, jobs.c.status == JobStatus.PROCESSING.value)
                    .values(
                        status=JobStatus.COMPLETED.value,
                        resultado=result,
                        processado_em=now,
                        atualizado_em=now,
                    )
                )
        except SQLAlchemyError as ex:
            logger.error("table_queue_complete_failed", job_id=job_id, error=str(ex))
            raise
        logger.info("table_queue_job_completed", job_id=job_id)

    async def fail_job(self, job_id: str, error: str, should_retry: bool = True) -> FailureOutcome:
        """
        Record a failed attempt: reschedule with backoff while attempts remain and the
        failure is retryable, otherwise mark the job failed for good.
        """
        now = self._now()
        message = str(error or "") or "unknown error"
        try:
            async with self._get_engine().begin() as conn:
                row = await self._locked_processing_row(conn, job_id, action="fail")
                outcome = await self._record_failure(
                    conn, row, message, should_retry=should_retry, now=now
                )
        except SQLAlchemyError as ex:
            logger.error("table_queue_fail_failed", job_id=job_id, error=str(ex))
            raise
        return outcome

    async def _locked_processing_row(self, conn: AsyncConnection, job_id: str, *, action: str) -> Row:
        row = (
            await conn.execute(
                select(jobs.c.id, jobs.c.job_id, jobs.c.status, jobs.c.attempts, jobs.c.max_attempts)
                .where(jobs.c.job_id == job_id)
                .with_for_update()
            )
        ).first()
        if row is None:
            raise JobNotFoundError(job_id)
        if row.status != JobStatus.PROCESSING.value:
            logger.warning("table_queue_invalid_transition", job_id=job_id, state=row.status, action=action)
            raise InvalidJobTransition(job_id, row.status, action)
        return row

    async def _record_failure(
        self,
        conn: AsyncConnection,
        row: Row,
        message: str,
        *,
        should_retry: bool,
        now: datetime,
    ) -> FailureOutcome:
        new_attempts = int(row.attempts) + 1
        max_attempts = int(row.max_attempts)
        guard = and_(jobs.c.id == row.id, jobs.c.status == JobStatus.PROCESSING.value)

        if not should_retry or new_attempts >= max_attempts:
            await conn.execute(
                update(jobs)
                .where(guard)
                .values(
                    status=JobStatus.FAILED.value,
                    attempts=new_attempts,
                    erro=message,
                    atualizado_em=now,
                )
            )
            logger.warning(
                "table_queue_job_failed",
                job_id=row.job_id,
                attempts=new_attempts,
                max_attempts=max_attempts,
                retryable=bool(should_retry),
                error=message,
            )
            return FailureOutcome(
                job_id=row.job_id,
                state=JobStatus.FAILED,
                attempts=new_attempts,
                max_attempts=max_attempts,
            )

        delay_ms = retry_backoff_ms(new_attempts)
        await conn.execute(
            update(jobs)
            .where(guard)
            .values(
                status=JobStatus.PENDING.value,
                attempts=new_attempts,
                erro=message,
                proxima_tentativa=now + timedelta(milliseconds=delay_ms),
                atualizado_em=now,
            )
        )
        logger.warning(
            "table_queue_job_retry_scheduled",
            job_id=row.job_id,
            attempts=new_attempts,
            max_attempts=max_attempts,
            retry_in_ms=delay_ms,
            error=message,
        )
        return FailureOutcome(
            job_id=row.job_id,
            state=JobStatus.PENDING,
            attempts=new_attempts,
            max_attempts=max_attempts,
            retry_in_ms=delay_ms,
        )

    # --- inspection ---

    async def _find(self, job_id: str) -> Row | None:
        async with self._get_engine().connect() as conn:
            return (await conn.execute(select(jobs).where(jobs.c.job_id == job_id))).first()

    async def get_job_status(self, queue_name: str, job_id: str) -> JobInfo:
        async with self._get_engine().connect() as conn:
            row = (
                await conn.execute(
                    select(jobs).where(
                        jobs.c.job_id == job_id,
                        jobs.c.tipo.startswith(f"{queue_name}:", autoescape=True),
                    )
                )
            ).first()
        if row is None:
            return JobInfo.missing()
        _, job_type = split_type_key(row.tipo)
        return JobInfo(
            exists=True,
            id=row.job_id,
            name=job_type,
            data=row.payload,
            state=row.status,
            attempts_made=int(row.attempts),
            max_attempts=int(row.max_attempts),
            returnvalue=row.resultado,
            failed_reason=row.erro,
            timestamp=as_utc(row.criado_em),
            processed_on=as_utc(row.processado_em),
            next_attempt_at=as_utc(row.proxima_tentativa),
        )

    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics:
        now = self._now()
        delayed = case(
            (
                and_(
                    jobs.c.status == JobStatus.PENDING.value,
                    jobs.c.proxima_tentativa.is_not(None),
                    jobs.c.proxima_tentativa > now,
                ),
                1,
            ),
            else_=0,
        )
        stmt = (
            select(jobs.c.status, func.count().label("n"), func.sum(delayed).label("delayed"))
            .where(jobs.c.tipo.startswith(f"{queue_name}:", autoescape=True))
            .group_by(jobs.c.status)
        )
        async with self._get_engine().connect() as conn:
            rows = (await conn.execute(stmt)).all()

        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        for row in rows:
            n = int(row.n or 0)
            if row.status == JobStatus.PENDING.value:
                d = int(row.delayed or 0)
                counts["delayed"] = d
                counts["waiting"] = n - d
            elif row.status == JobStatus.PROCESSING.value:
                counts["active"] = n
            elif row.status == JobStatus.COMPLETED.value:
                counts["completed"] = n
            elif row.status == JobStatus.FAILED.value:
                counts["failed"] = n
        return QueueMetrics(queue_name=queue_name, **counts)

    # --- maintenance ---

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete completed/failed rows created more than `older_than_days` ago."""
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        cutoff = self._now() - timedelta(days=int(older_than_days))
        async with self._get_engine().begin() as conn:
            res = await conn.execute(
                delete(jobs).where(
                    jobs.c.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]),
                    jobs.c.criado_em < cutoff,
                )
            )
        removed = int(res.rowcount or 0)
        logger.info("table_queue_cleanup", removed=removed, older_than_days=int(older_than_days))
        return removed

    async def recover_stalled(self, stalled_after_s: float) -> int:
        """
        Treat `processing` rows untouched for `stalled_after_s` seconds as a failed
        attempt (their worker is assumed dead). Returns the number of rows recovered.
        """
        if stalled_after_s <= 0:
            raise ValueError("stalled_after_s must be > 0")
        now = self._now()
        cutoff = now - timedelta(seconds=float(stalled_after_s))
        recovered = 0
        async with self._get_engine().begin() as conn:
            rows = (
                await conn.execute(
                    select(jobs.c.id, jobs.c.job_id, jobs.c.attempts, jobs.c.max_attempts)
                    .where(
                        jobs.c.status == JobStatus.PROCESSING.value,
                        jobs.c.atualizado_em < cutoff,
                    )
                    .order_by(jobs.c.id)
                    .with_for_update(skip_locked=True)
                )
            ).all()
            for row in rows:
                await self._record_failure(
                    conn,
                    row,
                    f"stalled: no progress for {int(stalled_after_s)}s",
                    should_retry=True,
                    now=now,
                )
                recovered += 1
        logger.info("table_queue_recovered_stalled", recovered=recovered, stalled_after_s=stalled_after_s)
        return recovered
