from fastapi import APIRouter, Depends, HTTPException, status

from visibility_jobs.api.deps import get_job_system
from visibility_jobs.api.schemas import JobOut, JobStatsOut, TriggerOut, TriggerRequest
from visibility_jobs.jobs.errors import InvalidJobError
from visibility_jobs.runtime import JobSystem

router = APIRouter()


@router.get("/stats", response_model=JobStatsOut)
async def get_stats(system: JobSystem = Depends(get_job_system)) -> JobStatsOut:
    return JobStatsOut(**system.queue.get_stats().to_dict())


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, system: JobSystem = Depends(get_job_system)) -> JobOut:
    job = system.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return JobOut(**job.to_dict())


@router.post("", response_model=TriggerOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_job(payload: TriggerRequest, system: JobSystem = Depends(get_job_system)) -> TriggerOut:
    try:
        job_id = system.triggers.trigger(payload.type, payload.subject_id, payload.priority, **payload.params)
    except InvalidJobError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return TriggerOut(job_ids=[job_id])
