"""
Scheduler control for the two orchestration passes (assignment_pass, expiry_sweep).
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from app.services.scheduler import scheduler_service
from app.settings import get_settings

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])

PASS_JOB_IDS = ("assignment_pass", "expiry_sweep")


class PassJob(BaseModel):
    id: str
    name: str
    next_run: str | None = None
    trigger: str


class SchedulerStatus(BaseModel):
    enabled: bool
    running: bool
    celery_enabled: bool
    assignment_interval_seconds: int
    expiry_sweep_interval_seconds: int
    jobs: list[PassJob]


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    settings = get_settings()
    return SchedulerStatus(
        enabled=settings.scheduler_enabled,
        running=scheduler_service.is_running(),
        celery_enabled=settings.celery_enabled,
        assignment_interval_seconds=settings.assignment_interval_seconds,
        expiry_sweep_interval_seconds=settings.expiry_sweep_interval_seconds,
        jobs=scheduler_service.get_jobs(),
    )


@router.post("/start")
async def start_scheduler():
    if scheduler_service.is_running():
        return {"status": "already_running"}
    scheduler_service.start()
    # start() is a no-op when SCHEDULER_ENABLED=false
    if not scheduler_service.is_running():
        return {"status": "disabled"}
    return {"status": "started", "jobs": scheduler_service.get_jobs()}


@router.post("/stop")
async def stop_scheduler():
    if not scheduler_service.is_running():
        return {"status": "already_stopped"}
    scheduler_service.stop()
    return {"status": "stopped"}


@router.post("/jobs/{job_id}/run")
async def run_pass_now(job_id: str):
    """Run one pass tick now, through the same leader lock as the interval job."""
    if job_id not in PASS_JOB_IDS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown pass {job_id!r}")
    if not scheduler_service.is_running():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Scheduler is not running")

    result = await scheduler_service.run_now(job_id)
    if "error" in result:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result["error"])
    return result
