from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

import click

from clinic_queue.config import get_safe_config_report, get_settings
from clinic_queue.queue.errors import QueueError
from clinic_queue.queue.manager import QUEUE_MODES, QueueManager, build_queue_manager
from clinic_queue.utils.log import logger, set_log_level


def _echo_json(obj: Any) -> None:
    click.echo(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _run_with_manager(fn: Callable[[QueueManager], Awaitable[Any]], *, mode: str | None = None) -> Any:
    async def _main() -> Any:
        manager = build_queue_manager(mode=mode)
        try:
            await manager.initialize()
            return await fn(manager)
        finally:
            await manager.close()

    try:
        return asyncio.run(_main())
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex


_mode_option = click.option(
    "--mode",
    type=click.Choice(QUEUE_MODES, case_sensitive=False),
    default=None,
    help="Override QUEUE_MODE.",
)


@click.group(name="clinic-queue")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """
    Background job queue for the clinic backend.
    """
    if log_level:
        set_log_level(log_level)


@cli.command()
@click.option("--database-url", default=None, help="Defaults to DATABASE_URL.")
def migrate(database_url: str | None) -> None:
    """Create the `jobs` table (idempotent)."""
    from clinic_queue.db import create_engine
    from clinic_queue.queue.schema import JOBS_TABLE, create_jobs_table

    url = database_url or get_settings().database_url_value()
    if not url:
        raise click.ClickException("DATABASE_URL is not set")

    async def _main() -> None:
        engine = create_engine(url)
        try:
            await create_jobs_table(engine)
        finally:
            await engine.dispose()

    asyncio.run(_main())
    logger.info("jobs_table_migrated", table=JOBS_TABLE)
    _echo_json({"ok": True, "table": JOBS_TABLE})


@cli.command()
@_mode_option
@click.option("--queue", "queue_name", default=None, help="Defaults to WORKER_QUEUE.")
@click.option("--poll-interval", type=float, default=None, help="Seconds between polls (table queue).")
@click.option("--concurrency", type=int, default=None, help="Parallel jobs (redis queue).")
def worker(mode: str | None, queue_name: str | None, poll_interval: float | None, concurrency: int | None) -> None:
    """Run the job worker until SIGINT/SIGTERM."""
    from clinic_queue.db import create_engine
    from clinic_queue.jobs.orcamento import (
        LocalArtifactStorage,
        NtfyBudgetNotifier,
        SqlBudgetRepository,
        build_orcamento_registry,
    )
    from clinic_queue.jobs.worker import QueueWorker
    from clinic_queue.notify.ntfy import NtfyNotifier
    from clinic_queue.queue.models import RateLimit

    s = get_settings()
    if not s.database_url_value():
        raise click.ClickException("DATABASE_URL is required by the orcamento handlers")

    async def _main() -> None:
        engine = create_engine(s.database_url_value())
        manager = build_queue_manager(mode=mode)
        registry = build_orcamento_registry(
            repository=SqlBudgetRepository(engine),
            storage=LocalArtifactStorage(s.uploads_dir, s.base_url),
            notifier=NtfyBudgetNotifier(NtfyNotifier.from_settings(s)),
        )
        rate_limit = (
            RateLimit(max=int(s.worker_rate_max), duration_ms=int(s.worker_rate_duration_ms))
            if int(s.worker_rate_max) > 0
            else None
        )
        qw = QueueWorker(
            manager,
            queue_name or s.worker_queue,
            registry,
            poll_interval_s=poll_interval or float(s.worker_poll_interval_s),
            concurrency=concurrency or int(s.worker_concurrency),
            rate_limit=rate_limit,
        )
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)
        try:
            await qw.start()
            await stop.wait()
            logger.info("worker_shutdown_requested", queue=qw.queue_name)
            await qw.stop()
        finally:
            await manager.close()
            await engine.dispose()

    try:
        asyncio.run(_main())
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex


@cli.command()
@click.option("--host", default=None, help="Defaults to HOST.")
@click.option("--port", type=int, default=None, help="Defaults to PORT.")
def serve(host: str | None, port: int | None) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from clinic_queue.server import create_app

    s = get_settings()
    uvicorn.run(create_app(), host=host or s.host, port=int(port or s.port), log_config=None)


@cli.command()
@_mode_option
def status(mode: str | None) -> None:
    """Show which backend is active."""

    async def _status(manager: QueueManager) -> dict[str, Any]:
        return {
            "queue_type": manager.queue_type,
            "available": await manager.is_available(),
            "status": manager.status().to_dict(),
        }

    _echo_json(_run_with_manager(_status, mode=mode))


@cli.command()
@_mode_option
@click.argument("queue_name")
def metrics(mode: str | None, queue_name: str) -> None:
    """Job counts by state for QUEUE_NAME."""

    async def _metrics(manager: QueueManager) -> dict[str, Any]:
        return (await manager.get_queue_metrics(queue_name)).to_dict()

    _echo_json(_run_with_manager(_metrics, mode=mode))


@cli.command()
@_mode_option
@click.argument("queue_name")
@click.argument("job_id")
def job(mode: str | None, queue_name: str, job_id: str) -> None:
    """Status of one job (exit code 1 when it does not exist)."""

    async def _job(manager: QueueManager) -> dict[str, Any]:
        return (await manager.get_job_status(queue_name, job_id)).to_dict()

    info = _run_with_manager(_job, mode=mode)
    _echo_json(info)
    if not info.get("exists"):
        raise SystemExit(1)


@cli.command(name="enqueue-pdf")
@_mode_option
@click.argument("budget_id")
def enqueue_pdf(mode: str | None, budget_id: str) -> None:
    """Queue PDF generation for one budget."""
    from clinic_queue.jobs.orcamento import enqueue_pdf_generation

    bid: Any = int(budget_id) if budget_id.isdigit() else budget_id

    async def _enqueue(manager: QueueManager) -> dict[str, Any]:
        return (await enqueue_pdf_generation(manager, bid)).to_dict()

    _echo_json(_run_with_manager(_enqueue, mode=mode))


@cli.command()
@click.option("--older-than-days", type=int, default=None, help="Defaults to JOB_RETENTION_DAYS.")
def cleanup(older_than_days: int | None) -> None:
    """Delete finished jobs from the jobs table."""
    days = older_than_days if older_than_days is not None else int(get_settings().job_retention_days)

    async def _cleanup(manager: QueueManager) -> int:
        return await manager.cleanup(days)

    _echo_json({"removed": _run_with_manager(_cleanup, mode="table"), "older_than_days": days})


@cli.command(name="recover-stalled")
@click.option(
    "--stalled-after",
    type=float,
    default=None,
    help="Seconds without progress; defaults to TABLE_STALLED_AFTER_S.",
)
def recover_stalled(stalled_after: float | None) -> None:
    """Return jobs stuck in `processing` to the queue (or fail them)."""
    seconds = stalled_after if stalled_after is not None else float(get_settings().table_stalled_after_s)
    if seconds <= 0:
        raise click.ClickException("stalled-job recovery is disabled (set --stalled-after or TABLE_STALLED_AFTER_S)")

    async def _recover(manager: QueueManager) -> int:
        return await manager.recover_stalled(seconds)

    _echo_json({"recovered": _run_with_manager(_recover, mode="table"), "stalled_after_s": seconds})


@cli.command(name="config")
def config_report() -> None:
    """Print the effective configuration (secrets shown only as SET/UNSET)."""
    _echo_json(get_safe_config_report())


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
