from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Credentials only. Values come from the process env (production) or a local,
    untracked `.env.secrets`; nothing here is ever logged or reported verbatim.
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection URLs embed credentials.
    database_url: SecretStr | None = Field(default=None, alias="DATABASE_URL")
    redis_url: SecretStr | None = Field(default=None, alias="REDIS_URL")
    redis_password: SecretStr | None = Field(default=None, alias="REDIS_PASSWORD")

    # ntfy publisher auth: "token:<t>", "Bearer <t>", "userpass:<u>:<p>" or "<u>:<p>".
    ntfy_auth: SecretStr | None = Field(default=None, alias="NTFY_AUTH")
