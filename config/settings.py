from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from urllib.parse import quote

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def database_url_value(self) -> str:
        return _secret_value(self.secret.database_url)

    def broker_url(self) -> str:
        """
        Redis URL for the primary backend.

        REDIS_URL wins; otherwise the URL is assembled from REDIS_HOST/REDIS_PORT/
        REDIS_PASSWORD/REDIS_TLS.
        """
        explicit = _secret_value(self.secret.redis_url).strip()
        if explicit:
            return explicit
        host = str(self.public.redis_host or "").strip()
        if not host:
            return ""
        scheme = "rediss" if self.public.redis_tls else "redis"
        password = _secret_value(self.secret.redis_password)
        auth = f":{quote(password, safe='')}@" if password else ""
        return f"{scheme}://{auth}{host}:{int(self.public.redis_port)}/0"


def _is_production_env() -> bool:
    env = str(os.environ.get("ENV") or os.environ.get("APP_ENV") or "").strip().lower()
    return env in {"prod", "production"}


def _secret_value(secret: SecretStr | None) -> str:
    try:
        return secret.get_secret_value() if secret else ""
    except Exception:
        return ""


def _validate_settings(s: Settings) -> None:
    """
    Hard-fail only in production; elsewhere a warning is enough.
    """
    problems: list[str] = []
    mode = str(s.public.queue_mode or "auto").strip().lower()
    if mode not in {"auto", "redis", "table"}:
        problems.append("QUEUE_MODE")
    if mode == "table" and not s.database_url_value():
        problems.append("DATABASE_URL")
    if int(s.public.job_default_attempts) < 1:
        problems.append("JOB_DEFAULT_ATTEMPTS")
    if float(s.public.worker_poll_interval_s) <= 0:
        problems.append("WORKER_POLL_INTERVAL_S")

    if not problems:
        return
    if _is_production_env():
        raise ConfigError(
            "Invalid queue configuration: "
            + ", ".join(sorted(set(problems)))
            + ". Set them via environment variables, `.env` or `.env.secrets`."
        )
    logging.getLogger("clinic_queue").warning(
        "config_problems_detected",
        extra={"problems": sorted(set(problems))},
    )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {
        "production": _is_production_env(),
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate_settings(s)
    return s
