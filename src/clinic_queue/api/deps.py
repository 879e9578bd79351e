from __future__ import annotations

from fastapi import HTTPException, Request

from clinic_queue.queue.manager import QueueManager


def get_queue_manager(request: Request) -> QueueManager:
    manager = getattr(request.app.state, "queue_manager", None)
    if manager is None:
        raise HTTPException(status_code=500, detail="Queue manager not initialized")
    return manager
