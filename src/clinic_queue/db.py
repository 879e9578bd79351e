from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from clinic_queue.config import get_settings


def normalize_database_url(url: str) -> str:
    """
    Map plain driver-less URLs onto the async drivers this service ships with.

    postgres://, postgresql:// -> postgresql+asyncpg://
    sqlite:// -> sqlite+aiosqlite://
    """
    raw = str(url or "").strip()
    if not raw:
        raise ValueError("database URL is empty")
    for prefix in ("postgres://", "postgresql://"):
        if raw.startswith(prefix):
            return "postgresql+asyncpg://" + raw[len(prefix) :]
    if raw.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + raw[len("sqlite://") :]
    return raw


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    # pysqlite's implicit BEGIN is deferred; take the write lock up front so that
    # concurrent claim transactions serialise instead of both reading the same row.
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(url: str | None = None, **overrides: Any) -> AsyncEngine:
    s = get_settings()
    target = normalize_database_url(url if url is not None else s.database_url_value())
    backend = make_url(target).get_backend_name()

    kwargs: dict[str, Any] = {"echo": bool(s.db_echo), "pool_pre_ping": True}
    if backend == "sqlite":
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_size=int(s.db_pool_size),
            max_overflow=int(s.db_max_overflow),
            pool_timeout=int(s.db_pool_timeout),
        )
    kwargs.update(overrides)

    engine = create_async_engine(target, **kwargs)
    if backend == "sqlite":
        _install_sqlite_locking(engine)
    return engine
