"""Ingestion job status endpoints (backed by the rq job registry)."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from wbs_ingest.api.deps import get_queue
from wbs_ingest.queue.client import TaskQueue

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}", summary="Job state, progress and result")
def get_job(job_id: str, queue: TaskQueue = Depends(get_queue)) -> dict:
    return {"success": True, "data": queue.get_status(job_id).to_dict()}


@router.delete("/{job_id}", summary="Cancel a queued or running job")
def cancel_job(job_id: str, queue: TaskQueue = Depends(get_queue)) -> dict:
    queue.cancel(job_id)
    return {"success": True, "data": queue.get_status(job_id).to_dict()}
