from __future__ import annotations

import asyncio

import pytest

from clinic_queue.config import get_settings
from clinic_queue.queue.errors import QueueUnavailableError
from clinic_queue.queue.models import JobOptions, RateLimit
from clinic_queue.queue.redis_queue import RedisQueue, RedisQueueConfig
from tests._helpers.redis import REDIS_TEST_URL, delete_prefix, fake_redis_client, redis_available, unique_prefix

needs_redis = pytest.mark.skipif(not redis_available(), reason="redis not available (set REDIS_URL)")

# Every broker test runs in-process on fakeredis; set REDIS_URL to repeat them on a live server.
BROKERS = ["fake", pytest.param("live", marks=needs_redis)]


def test_config_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_QUEUE_PREFIX", ":clinicx:")
    monkeypatch.setenv("REDIS_CONNECT_ATTEMPTS", "0")
    monkeypatch.setenv("JOB_BACKOFF_DELAY_MS", "500")
    get_settings.cache_clear()
    cfg = RedisQueueConfig.from_settings(get_settings())
    assert cfg.prefix == "clinicx"
    assert cfg.connect_attempts == 1
    assert cfg.backoff_delay_ms == 500


def test_unreachable_broker_reports_unhealthy() -> None:
    rq = RedisQueue(redis_url="redis://127.0.0.1:1/0", config=RedisQueueConfig(connect_attempts=2, connect_backoff_cap_ms=10))

    async def _main() -> None:
        assert await rq.initialize() is False
        st = rq.status()
        assert st.mode == "none"
        assert st.redis_configured is True
        assert st.redis_ok is False
        with pytest.raises(QueueUnavailableError):
            rq.get_queue("q")
        await rq.close()

    asyncio.run(_main())


def test_unconfigured_broker() -> None:
    rq = RedisQueue(redis_url="")
    assert asyncio.run(rq.initialize()) is False
    assert rq.status().redis_configured is False


def _run(body, broker: str = "fake", **cfg) -> None:
    prefix = unique_prefix()
    live = broker == "live"

    async def _main() -> None:
        config = RedisQueueConfig(prefix=prefix, **cfg)
        if live:
            rq = RedisQueue(redis_url=REDIS_TEST_URL, config=config)
        else:
            rq = RedisQueue(redis_url="", client=fake_redis_client(), config=config)
        assert await rq.initialize()
        try:
            await body(rq)
        finally:
            await rq.close()

    try:
        asyncio.run(_main())
    finally:
        if live:
            delete_prefix(prefix)


@pytest.mark.parametrize("broker", BROKERS)
def test_add_claim_complete(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        res = await rq.add_job("orcamento", "generate-pdf", {"orcamento_id": 1}, {"job_id": "pdf-1"})
        assert res.job_id == "pdf-1" and not res.duplicate
        info = await rq.get_job_status("orcamento", "pdf-1")
        assert (info.state, info.name, info.data) == ("pending", "generate-pdf", {"orcamento_id": 1})

        q = rq.get_queue("orcamento")
        job, _ = await q.claim("tok")
        assert job.id == "pdf-1" and job.attempts_made == 0
        assert (await rq.get_job_status("orcamento", "pdf-1")).state == "processing"
        assert await q.complete("pdf-1", "tok", {"ok": True})

        info = await rq.get_job_status("orcamento", "pdf-1")
        assert info.state == "completed"
        assert info.returnvalue == {"ok": True}
        m = await rq.get_queue_metrics("orcamento")
        assert (m.waiting, m.active, m.completed) == (0, 0, 1)

    _run(body, broker)


@pytest.mark.parametrize("broker", BROKERS)
def test_generated_ids_and_duplicates(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        a = await rq.add_job("q", "t", {})
        b = await rq.add_job("q", "t", {})
        assert a.job_id != b.job_id
        first = await rq.add_job("q", "t", {"v": 1}, {"job_id": "same"})
        again = await rq.add_job("q", "t", {"v": 2}, {"job_id": "same"})
        assert not first.duplicate and again.duplicate
        assert (await rq.get_queue_metrics("q")).waiting == 3
        assert (await rq.get_job_status("q", "same")).data == {"v": 1}

    _run(body, broker)


@pytest.mark.parametrize("broker", BROKERS)
def test_generated_id_skips_explicit_numeric_ids(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        explicit = await rq.add_job("q", "t", {"v": "explicit"}, {"job_id": "1"})
        also_taken = await rq.add_job("q", "t", {"v": "explicit-2"}, {"job_id": "2"})
        generated = await rq.add_job("q", "t", {"v": "generated"})
        assert not explicit.duplicate and not also_taken.duplicate
        assert not generated.duplicate
        assert generated.job_id not in ("1", "2")
        assert (await rq.get_job_status("q", generated.job_id)).data == {"v": "generated"}
        assert (await rq.get_job_status("q", "1")).data == {"v": "explicit"}
        assert (await rq.get_queue_metrics("q")).waiting == 3

    _run(body, broker)


@pytest.mark.parametrize("broker", BROKERS)
def test_failure_retries_with_backoff_then_fails(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        await rq.add_job("q", "t", {}, JobOptions(job_id="f", attempts=2))
        q = rq.get_queue("q")

        job, _ = await q.claim("tok")
        assert await q.fail(job.id, "tok", "boom") == "delayed"
        info = await rq.get_job_status("q", "f")
        assert (info.state, info.attempts_made, info.failed_reason) == ("pending", 1, "boom")
        assert (await rq.get_queue_metrics("q")).delayed == 1
        assert (await q.claim("tok"))[0] is None

        await asyncio.sleep(0.08)
        job, _ = await q.claim("tok2")
        assert job.id == "f" and job.attempts_made == 1
        assert await q.fail(job.id, "tok2", "boom") == "failed"
        info = await rq.get_job_status("q", "f")
        assert (info.state, info.attempts_made) == ("failed", 2)

    _run(body, broker, backoff_delay_ms=50)


@pytest.mark.parametrize("broker", BROKERS)
def test_non_retryable_failure_and_wrong_token(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        await rq.add_job("q", "t", {}, {"job_id": "n", "attempts": 5})
        q = rq.get_queue("q")
        job, _ = await q.claim("mine")
        assert await q.complete(job.id, "someone-else", {}) is False
        assert await q.fail(job.id, "mine", "bad", retry=False) == "failed"
        assert (await rq.get_job_status("q", "n")).attempts_made == 1

    _run(body, broker)


@pytest.mark.parametrize("broker", BROKERS)
def test_rate_limiter_blocks_until_window_ends(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        for i in range(2):
            await rq.add_job("q", "t", {}, {"job_id": f"r{i}"})
        q = rq.get_queue("q")
        limit = RateLimit(max=1, duration_ms=60_000)
        job, _ = await q.claim("tok", limit)
        assert job is not None
        job2, wait_ms = await q.claim("tok", limit)
        assert job2 is None
        assert 0 < wait_ms <= 60_000

    _run(body, broker)


@pytest.mark.parametrize("broker", BROKERS)
def test_stalled_job_is_requeued_once_then_failed(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        await rq.add_job("q", "t", {}, {"job_id": "s"})
        q = rq.get_queue("q")
        await q.claim("tok")
        # Simulate a dead worker: the lock expires without being refreshed.
        await rq._client.delete(q.lock_key("s"))
        assert await q.check_stalled() == (1, 0)
        assert (await rq.get_job_status("q", "s")).state == "pending"

        await q.claim("tok")
        await rq._client.delete(q.lock_key("s"))
        await rq._client.delete(f"{rq.config.prefix}:q:stalled-check")
        assert await q.check_stalled() == (0, 1)
        assert (await rq.get_job_status("q", "s")).state == "failed"

    _run(body, broker, max_stalled_count=1)


@pytest.mark.parametrize("broker", BROKERS)
def test_push_worker_processes_jobs(broker: str) -> None:
    async def body(rq: RedisQueue) -> None:
        seen: list = []

        async def processor(job):
            seen.append(job.id)
            if job.name == "bad":
                raise RuntimeError("nope")
            return {"done": job.id}

        await rq.add_job("q", "good", {}, {"job_id": "g"})
        await rq.add_job("q", "bad", {}, {"job_id": "b", "attempts": 1})
        worker = rq.create_worker("q", processor, concurrency=2)
        task = asyncio.create_task(worker.run())
        for _ in range(200):
            m = await rq.get_queue_metrics("q")
            if m.completed == 1 and m.failed == 1:
                break
            await asyncio.sleep(0.02)
        await worker.close()
        await asyncio.wait_for(task, timeout=5)

        assert sorted(seen) == ["b", "g"]
        assert (await rq.get_job_status("q", "g")).returnvalue == {"done": "g"}
        assert (await rq.get_job_status("q", "b")).failed_reason == "nope"

    _run(body, broker)
