from fastapi import HTTPException, Request, status

from visibility_jobs.runtime import JobSystem


def get_job_system(request: Request) -> JobSystem:
    system: JobSystem | None = getattr(request.app.state, "job_system", None)
    if system is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="job system not started")
    return system
