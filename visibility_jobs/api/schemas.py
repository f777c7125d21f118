from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from visibility_jobs.jobs.models import JobStatus, JobType


class JobOut(BaseModel):
    id: str
    type: JobType
    status: JobStatus
    subject_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int
    attempts: int
    max_attempts: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_eligible_at: datetime | None = None
    error: str | None = None
    result: Any = None


class JobStatsOut(BaseModel):
    total: int
    pending: int
    running: int
    completed: int
    failed: int


class TriggerRequest(BaseModel):
    type: JobType
    subject_id: str = Field(min_length=1)
    priority: int = 5
    params: dict[str, Any] = Field(default_factory=dict)


class TriggerOut(BaseModel):
    job_ids: list[str]


class ForceRefreshRequest(BaseModel):
    reason: str = Field(min_length=1)
    actor: str = "admin"


class ForceRefreshOut(BaseModel):
    subject_id: str
    invalidated: bool
