from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from clinic_queue.api.deps import get_queue_manager
from clinic_queue.api.schemas import EnqueueJobRequest
from clinic_queue.queue.errors import DuplicateJobError, InvalidJobOptions
from clinic_queue.queue.manager import QueueManager

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/status")
async def queue_status(manager: QueueManager = Depends(get_queue_manager)) -> dict[str, Any]:
    return {
        "queue_type": manager.queue_type,
        "available": await manager.is_available(),
        "status": manager.status().to_dict(),
    }


@router.get("/{queue_name}/metrics")
async def queue_metrics(
    queue_name: str, manager: QueueManager = Depends(get_queue_manager)
) -> dict[str, Any]:
    return (await manager.get_queue_metrics(queue_name)).to_dict()


@router.get("/{queue_name}/jobs/{job_id}")
async def job_status(
    queue_name: str, job_id: str, manager: QueueManager = Depends(get_queue_manager)
) -> dict[str, Any]:
    info = await manager.get_job_status(queue_name, job_id)
    if not info.exists:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found in queue '{queue_name}'")
    return info.to_dict()


@router.post("/{queue_name}/jobs", status_code=201)
async def enqueue_job(
    queue_name: str,
    body: EnqueueJobRequest,
    manager: QueueManager = Depends(get_queue_manager),
) -> dict[str, Any]:
    try:
        res = await manager.add_job(queue_name, body.job_type, body.payload, body.options())
    except InvalidJobOptions as ex:
        raise HTTPException(status_code=422, detail=str(ex)) from ex
    except DuplicateJobError as ex:
        raise HTTPException(status_code=409, detail=str(ex)) from ex
    return res.to_dict()
