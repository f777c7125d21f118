from fastapi import APIRouter, Depends, HTTPException, status

from visibility_jobs.api.deps import get_job_system
from visibility_jobs.api.schemas import ForceRefreshOut, ForceRefreshRequest, JobOut, TriggerOut
from visibility_jobs.freshness.repository import RepositoryUnavailableError
from visibility_jobs.runtime import JobSystem

router = APIRouter()


@router.get("/{subject_id}/jobs", response_model=list[JobOut])
async def list_subject_jobs(subject_id: str, system: JobSystem = Depends(get_job_system)) -> list[JobOut]:
    return [JobOut(**job.to_dict()) for job in system.queue.get_jobs_by_subject(subject_id)]


@router.post("/{subject_id}/full-analysis", response_model=TriggerOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_full_analysis(subject_id: str, system: JobSystem = Depends(get_job_system)) -> TriggerOut:
    return TriggerOut(job_ids=system.triggers.trigger_full_analysis(subject_id))


@router.post("/{subject_id}/force-refresh", response_model=ForceRefreshOut)
async def force_refresh(
    subject_id: str,
    payload: ForceRefreshRequest,
    system: JobSystem = Depends(get_job_system),
) -> ForceRefreshOut:
    try:
        invalidated = await system.freshness.force_refresh(subject_id, payload.reason, actor=payload.actor)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ForceRefreshOut(subject_id=subject_id, invalidated=invalidated)
