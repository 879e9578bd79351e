from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- logging ---
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="CLINIC_LOG_DIR"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=10 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=5, alias="LOG_BACKUP_COUNT")

    # --- queue selection ---
    queue_mode: str = Field(default="auto", alias="QUEUE_MODE")  # auto|redis|table

    # --- broker (primary backend) ---
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_tls: bool = Field(default=False, alias="REDIS_TLS")
    redis_queue_prefix: str = Field(default="clinic", alias="REDIS_QUEUE_PREFIX")
    redis_connect_attempts: int = Field(default=3, alias="REDIS_CONNECT_ATTEMPTS")
    redis_connect_backoff_cap_ms: int = Field(default=3000, alias="REDIS_CONNECT_BACKOFF_CAP_MS")
    redis_lock_ttl_ms: int = Field(default=30_000, alias="REDIS_LOCK_TTL_MS")
    redis_stalled_interval_ms: int = Field(default=30_000, alias="REDIS_STALLED_INTERVAL_MS")
    redis_max_stalled_count: int = Field(default=1, alias="REDIS_MAX_STALLED_COUNT")

    # Default job policy for broker queues.
    job_default_attempts: int = Field(default=3, alias="JOB_DEFAULT_ATTEMPTS")
    job_backoff_delay_ms: int = Field(default=2000, alias="JOB_BACKOFF_DELAY_MS")
    keep_completed_age_s: int = Field(default=24 * 3600, alias="KEEP_COMPLETED_AGE_S")
    keep_completed_count: int = Field(default=100, alias="KEEP_COMPLETED_COUNT")
    keep_failed_age_s: int = Field(default=7 * 24 * 3600, alias="KEEP_FAILED_AGE_S")

    # --- relational store (fallback backend) ---
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW")
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")
    db_echo: bool = Field(default=False, alias="DB_ECHO")
    # Seconds a row may stay `processing` before `recover-stalled` reclaims it. 0 disables.
    table_stalled_after_s: int = Field(default=0, alias="TABLE_STALLED_AFTER_S")
    job_retention_days: int = Field(default=7, alias="JOB_RETENTION_DAYS")

    # --- worker ---
    worker_queue: str = Field(default="orcamento", alias="WORKER_QUEUE")
    worker_concurrency: int = Field(default=2, alias="WORKER_CONCURRENCY")
    worker_rate_max: int = Field(default=10, alias="WORKER_RATE_MAX")
    worker_rate_duration_ms: int = Field(default=60_000, alias="WORKER_RATE_DURATION_MS")
    worker_poll_interval_s: float = Field(default=5.0, alias="WORKER_POLL_INTERVAL_S")

    # --- budget PDF handler ---
    uploads_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "uploads" / "orcamentos").resolve(),
        alias="UPLOADS_DIR",
    )
    base_url: str = Field(default="http://localhost:3000", alias="BASE_URL")

    # --- notifications (optional; private/self-hosted ntfy) ---
    ntfy_enabled: bool = Field(default=False, alias="NTFY_ENABLED")
    ntfy_base_url: str = Field(default="", alias="NTFY_BASE_URL")
    ntfy_topic: str = Field(default="", alias="NTFY_TOPIC")
    ntfy_timeout_sec: float = Field(default=5.0, alias="NTFY_TIMEOUT_SEC")
    ntfy_tls_insecure: bool = Field(default=False, alias="NTFY_TLS_INSECURE")

    # --- http ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
