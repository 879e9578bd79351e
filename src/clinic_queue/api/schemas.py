from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class EnqueueJobRequest(BaseModel):
    job_type: str = Field(min_length=1, max_length=200)
    payload: Any = None
    job_id: str | None = Field(default=None, min_length=1, max_length=255)
    attempts: int | None = Field(default=None, ge=1, le=100)
    delay: int = Field(default=0, ge=0, description="Initial delay in milliseconds")

    def options(self) -> dict[str, Any]:
        opts: dict[str, Any] = {"delay": self.delay}
        if self.job_id:
            opts["job_id"] = self.job_id
        if self.attempts is not None:
            opts["attempts"] = self.attempts
        return opts
