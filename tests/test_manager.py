from __future__ import annotations

import asyncio

import pytest

from clinic_queue.config import get_settings
from clinic_queue.queue.errors import QueueUnavailableError, UnsupportedOperationError
from clinic_queue.queue.manager import QueueManager, build_queue_manager
from clinic_queue.queue.redis_queue import RedisQueue, RedisQueueConfig
from clinic_queue.queue.table_queue import TableQueue
from tests._helpers.backends import FakePullBackend, FakePushBackend
from tests._helpers.queues import migrate, sqlite_url


def test_auto_prefers_redis_when_reachable() -> None:
    redis, table = FakePushBackend(), FakePullBackend()
    qm = QueueManager(redis_backend=redis, table_backend=table)

    assert asyncio.run(qm.initialize()) == "redis"
    assert qm.queue_type == "redis"
    assert table.init_calls == 0
    st = qm.status()
    assert st.mode == "redis" and st.redis_ok and st.banner is None


def test_auto_falls_back_to_table_with_banner() -> None:
    redis, table = FakePushBackend(ok=False), FakePullBackend()
    qm = QueueManager(redis_backend=redis, table_backend=table)

    assert asyncio.run(qm.initialize()) == "table"
    st = qm.status()
    assert st.mode == "table"
    assert st.redis_configured is True
    assert st.redis_ok is False
    assert st.banner == "Redis unavailable; using fallback queue"


def test_table_only_has_no_banner() -> None:
    qm = QueueManager(table_backend=FakePullBackend())
    assert asyncio.run(qm.initialize()) == "table"
    assert qm.status().banner is None


def test_nothing_reachable_raises() -> None:
    qm = QueueManager(redis_backend=FakePushBackend(ok=False), table_backend=FakePullBackend(ok=False))
    with pytest.raises(QueueUnavailableError):
        asyncio.run(qm.initialize())
    assert qm.queue_type is None
    assert qm.status().mode == "none"


def test_no_backends_configured_raises() -> None:
    with pytest.raises(QueueUnavailableError):
        asyncio.run(QueueManager().initialize())


def test_redis_mode_never_falls_back() -> None:
    table = FakePullBackend()
    qm = QueueManager(redis_backend=FakePushBackend(ok=False), table_backend=table, mode="redis")
    with pytest.raises(QueueUnavailableError):
        asyncio.run(qm.initialize())
    assert table.init_calls == 0


def test_table_mode_skips_redis() -> None:
    redis = FakePushBackend()
    qm = QueueManager(redis_backend=redis, table_backend=FakePullBackend(), mode="TABLE")
    assert asyncio.run(qm.initialize()) == "table"
    assert redis.init_calls == 0
    # Explicit table mode is not a fallback.
    assert qm.status().banner is None


def test_invalid_mode_behaves_like_auto() -> None:
    qm = QueueManager(redis_backend=FakePushBackend(), table_backend=FakePullBackend(), mode="kafka")
    assert qm.mode == "auto"
    assert asyncio.run(qm.initialize()) == "redis"


def test_concurrent_initialize_selects_once() -> None:
    redis = FakePushBackend()
    qm = QueueManager(redis_backend=redis, table_backend=FakePullBackend())

    async def _main():
        return await asyncio.gather(*(qm.initialize() for _ in range(5)))

    assert asyncio.run(_main()) == ["redis"] * 5
    assert redis.init_calls == 1


def test_backend_choice_is_sticky() -> None:
    redis = FakePushBackend()
    qm = QueueManager(redis_backend=redis, table_backend=FakePullBackend())

    async def _main() -> None:
        await qm.initialize()
        redis.ok = False
        assert await qm.initialize() == "redis"

    asyncio.run(_main())
    assert redis.init_calls == 1


def test_add_job_initializes_lazily_and_counts() -> None:
    table = FakePullBackend()
    qm = QueueManager(table_backend=table)

    async def _main():
        first = await qm.add_job("orcamento", "generate-pdf", {"orcamento_id": 1}, {"job_id": "x"})
        second = await qm.add_job("orcamento", "generate-pdf", {"orcamento_id": 1}, {"job_id": "x"})
        return first, second

    first, second = asyncio.run(_main())
    assert qm.queue_type == "table"
    assert not first.duplicate and second.duplicate
    assert len(table.added) == 2


def test_pull_operations_require_table_backend() -> None:
    qm = QueueManager(redis_backend=FakePushBackend(), table_backend=FakePullBackend())

    async def _main() -> None:
        await qm.initialize()
        with pytest.raises(UnsupportedOperationError):
            await qm.get_next_job("q")
        with pytest.raises(UnsupportedOperationError):
            await qm.complete_job("j", {})
        with pytest.raises(UnsupportedOperationError):
            await qm.fail_job("j", "e")
        with pytest.raises(UnsupportedOperationError):
            await qm.cleanup(7)
        with pytest.raises(UnsupportedOperationError):
            await qm.recover_stalled(60)

    asyncio.run(_main())


def test_pull_operations_delegate_to_table() -> None:
    table = FakePullBackend()
    qm = QueueManager(table_backend=table)

    async def _main() -> None:
        assert await qm.get_next_job("q") is None
        await qm.complete_job("j")
        await qm.fail_job("j", "e", False)
        assert await qm.cleanup() == 0
        assert await qm.recover_stalled(30) == 0

    asyncio.run(_main())
    assert table.calls == ["get_next_job", "complete_job", "fail_job", "cleanup", "recover_stalled"]


def test_create_worker_requires_redis_backend() -> None:
    qm = QueueManager(table_backend=FakePullBackend())

    async def _proc(job):
        return None

    with pytest.raises(UnsupportedOperationError):
        asyncio.run(qm.create_worker("q", _proc))


def test_close_closes_every_backend() -> None:
    redis, table = FakePushBackend(ok=False), FakePullBackend()
    qm = QueueManager(redis_backend=redis, table_backend=table)

    async def _main() -> None:
        await qm.initialize()
        assert await qm.is_available()
        await qm.close()
        assert not await qm.is_available()

    asyncio.run(_main())
    assert redis.closed and table.closed
    assert qm.queue_type is None


def test_unreachable_redis_falls_back_to_real_table(tmp_path) -> None:
    url = sqlite_url(tmp_path)
    asyncio.run(migrate(url))

    async def _main() -> None:
        qm = QueueManager(
            redis_backend=RedisQueue(
                redis_url="redis://127.0.0.1:1/0", config=RedisQueueConfig(connect_attempts=1)
            ),
            table_backend=TableQueue(database_url=url),
        )
        try:
            assert await qm.initialize() == "table"
            res = await qm.add_job("orcamento", "generate-pdf", {"orcamento_id": 9})
            info = await qm.get_job_status("orcamento", res.job_id)
            assert info.state == "pending"
            st = qm.status()
            assert st.banner is not None
            assert st.redis_configured is True
        finally:
            await qm.close()

    asyncio.run(_main())


def test_build_queue_manager_from_env(tmp_path, monkeypatch) -> None:
    url = sqlite_url(tmp_path)
    asyncio.run(migrate(url))
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("QUEUE_MODE", "table")
    get_settings.cache_clear()

    qm = build_queue_manager()
    assert qm.mode == "table"

    async def _main() -> None:
        try:
            assert await qm.initialize() == "table"
        finally:
            await qm.close()

    asyncio.run(_main())


def test_build_queue_manager_without_configuration_has_no_backends() -> None:
    qm = build_queue_manager()
    with pytest.raises(QueueUnavailableError):
        asyncio.run(qm.initialize())
