"""HTTP API over the job engine."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from taskrelay.core.errors import FunctionNotFound, TaskRelayError
from taskrelay.core.models import JobData, JobExecutionType, JobStatus
from taskrelay.jobs.engine import JobEngine
from taskrelay.runtime import get_job_engine

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobCreateRequest(BaseModel):
    """Job specification; ``repeatInterval`` is in milliseconds."""

    model_config = ConfigDict(populate_by_name=True)

    function_name: str = Field(..., alias="functionName")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    execution_type: JobExecutionType = Field(JobExecutionType.INSTANT, alias="executionType")
    schedule_time: Optional[datetime] = Field(None, alias="scheduleTime")
    repeat_interval: Optional[float] = Field(None, alias="repeatInterval", gt=0)
    repeat_deadline: Optional[datetime] = Field(None, alias="repeatDeadline")
    priority: int = 0
    retries: Optional[int] = Field(None, ge=1)

    def to_job_data(self) -> JobData:
        return JobData(
            function_name=self.function_name,
            parameters=dict(self.parameters),
            execution_type=self.execution_type,
            schedule_time=self.schedule_time,
            repeat_interval=self.repeat_interval / 1000.0 if self.repeat_interval else None,
            repeat_deadline=self.repeat_deadline,
            priority=self.priority,
            retries=self.retries,
        )


class PriorityRequest(BaseModel):
    priority: int


@router.get("")
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    engine: JobEngine = Depends(get_job_engine),
) -> Dict[str, Any]:
    jobs = engine.jobs_by_status(status_filter) if status_filter else engine.list_jobs()
    return {
        "jobs": [job.to_dict() for job in jobs],
        "stats": await engine.get_queue_stats(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_job(request: JobCreateRequest, engine: JobEngine = Depends(get_job_engine)) -> Dict[str, str]:
    try:
        job_id = await engine.add_job(request.to_job_data())
    except FunctionNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TaskRelayError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"jobId": job_id}


@router.get("/stats")
async def queue_stats(engine: JobEngine = Depends(get_job_engine)) -> Dict[str, int]:
    return await engine.get_queue_stats()


@router.post("/queue/pause")
async def pause_queue(engine: JobEngine = Depends(get_job_engine)) -> Dict[str, Any]:
    engine.pause()
    return {"success": True, "message": "Queue paused"}


@router.post("/queue/resume")
async def resume_queue(engine: JobEngine = Depends(get_job_engine)) -> Dict[str, Any]:
    engine.resume()
    return {"success": True, "message": "Queue resumed"}


@router.post("/queue/clean")
async def clean_queue(grace: float = 24 * 60 * 60.0, engine: JobEngine = Depends(get_job_engine)) -> Dict[str, Any]:
    removed = engine.clean_jobs(grace)
    return {"success": True, "removed": removed}


@router.get("/{job_id}")
async def get_job(job_id: str, engine: JobEngine = Depends(get_job_engine)) -> Dict[str, Any]:
    job = engine.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job.to_dict()


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, engine: JobEngine = Depends(get_job_engine)) -> Dict[str, Any]:
    if engine.get_job(job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    cancelled = await engine.cancel_job(job_id)
    return {
        "success": cancelled,
        "message": "Job cancelled" if cancelled else "Job already completed",
    }


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, engine: JobEngine = Depends(get_job_engine)) -> Dict[str, Any]:
    retried = await engine.retry_job(job_id)
    return {
        "success": retried,
        "message": "Job retry initiated" if retried else "Job not found or cannot be retried",
    }


@router.post("/{job_id}/priority")
async def set_priority(
    job_id: str,
    request: PriorityRequest,
    engine: JobEngine = Depends(get_job_engine),
) -> Dict[str, Any]:
    updated = await engine.set_priority(job_id, request.priority)
    return {"success": updated}


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: str, engine: JobEngine = Depends(get_job_engine)) -> None:
    if not await engine.remove_job(job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
