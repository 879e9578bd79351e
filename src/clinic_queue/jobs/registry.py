from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from clinic_queue.queue.errors import UnknownJobTypeError

JobHandler = Callable[[Any], Awaitable[Any]]


class HandlerRegistry:
    """Maps a job type to the coroutine that handles its payload."""

    def __init__(self, name: str = "jobs") -> None:
        self.name = name
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler | None = None):
        """
        Register `handler` for `job_type`. Without a handler, returns a decorator:

            @registry.register("generate-pdf")
            async def generate_pdf(payload): ...
        """
        key = str(job_type or "").strip()
        if not key:
            raise ValueError("job_type must be a non-empty string")

        def _add(fn: JobHandler) -> JobHandler:
            if key in self._handlers:
                raise ValueError(f"handler already registered for job type '{key}' in {self.name}")
            self._handlers[key] = fn
            return fn

        if handler is None:
            return _add
        return _add(handler)

    def get(self, job_type: str) -> JobHandler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobTypeError(job_type) from None

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
