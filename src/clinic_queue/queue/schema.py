"""
Relational layout of the table-backed queue.

One row per job. `tipo` holds the composite `queue:job_type` key; claims scan
`(tipo, status, criado_em)` and break ties on the surrogate `id`.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

JOBS_TABLE = "jobs"

jobs = Table(
    JOBS_TABLE,
    metadata,
    # SQLite only auto-increments INTEGER PRIMARY KEY.
    Column("id", BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True),
    Column("job_id", String(255), nullable=False, unique=True),
    Column("tipo", String(255), nullable=False),
    Column("payload", JSON, nullable=True),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("max_attempts", Integer, nullable=False, server_default="3"),
    Column("proxima_tentativa", DateTime(timezone=True), nullable=True),
    Column("resultado", JSON, nullable=True),
    Column("erro", Text, nullable=True),
    Column("criado_em", DateTime(timezone=True), nullable=False),
    Column("atualizado_em", DateTime(timezone=True), nullable=False),
    Column("processado_em", DateTime(timezone=True), nullable=True),
    CheckConstraint(
        "status IN ('pending', 'processing', 'completed', 'failed')", name="ck_jobs_status"
    ),
    CheckConstraint("attempts >= 0", name="ck_jobs_attempts"),
    CheckConstraint("max_attempts >= 1", name="ck_jobs_max_attempts"),
)

Index("ix_jobs_claim", jobs.c.tipo, jobs.c.status, jobs.c.criado_em)
Index("ix_jobs_status_criado", jobs.c.status, jobs.c.criado_em)


async def create_jobs_table(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
