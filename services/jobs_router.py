# ──────────────────────────────────────────────────────────────────────────────
# File: services/jobs_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""Job submission and status endpoints."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field

from services.dependencies import get_queue
from services.errors import CaptureValidationError, JobNotFoundError
from services.job_queue import JobQueue

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobSubmitRequest(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("payload", "data"))


@router.post("")
async def submit_job(body: JobSubmitRequest, queue: JobQueue = Depends(get_queue)):
    """Queue a job; returns immediately with its id."""
    if not queue.has_handler(body.type):
        raise CaptureValidationError(
            f"Unknown job type: {body.type}",
            details={"supported": queue.job_types},
        )
    job_id = queue.submit(body.type, body.payload)
    return {"jobId": job_id}


@router.get("")
async def get_jobs(
    id: Optional[str] = Query(default=None, description="Job id; omit for queue stats"),
    queue: JobQueue = Depends(get_queue),
):
    if id is None:
        return queue.get_stats()
    job = queue.get_status(id)
    if job is None:
        raise JobNotFoundError(f"Job not found: {id}")
    return job.to_api()
