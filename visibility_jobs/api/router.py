from fastapi import APIRouter

from visibility_jobs.api.routes import health, jobs, subjects

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(subjects.router, prefix="/subjects", tags=["subjects"])
