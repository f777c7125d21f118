from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import itertools
import logging
from typing import Any
from uuid import uuid4

from visibility_jobs.jobs.errors import InvalidJobError
from visibility_jobs.jobs.models import (
    Job,
    JobPayload,
    JobStats,
    JobStatus,
    JobType,
    coerce_job_type,
    validate_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """In-memory job store for a single process.

    Trigger callers only append pending jobs; status, attempts and results are
    mutated by the dispatcher alone. Nothing here is durable across restarts.
    """

    def __init__(
        self,
        *,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_max_attempts = max(1, default_max_attempts)
        self.now = now
        self.jobs: dict[str, Job] = {}
        self._sequence = itertools.count()

    def add_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | JobPayload,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int | None = None,
    ) -> str:
        resolved_type = coerce_job_type(job_type)
        attempts_limit = self.default_max_attempts if max_attempts is None else max_attempts
        if attempts_limit < 1:
            raise InvalidJobError("max_attempts must be at least 1")

        job = Job(
            id=f"job_{uuid4().hex}",
            type=resolved_type,
            payload=validate_payload(resolved_type, payload),
            priority=int(priority),
            max_attempts=attempts_limit,
            created_at=self.now(),
            sequence=next(self._sequence),
        )
        self.jobs[job.id] = job
        logger.info(
            "job enqueued id=%s type=%s subject_id=%s priority=%s",
            job.id,
            job.type.value,
            job.subject_id,
            job.priority,
        )
        return job.id

    def get_job(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    def get_jobs_by_status(self, status: JobStatus | str) -> list[Job]:
        wanted = JobStatus(status)
        return [job for job in self.jobs.values() if job.status is wanted]

    def get_jobs_by_subject(self, subject_id: str) -> list[Job]:
        return [job for job in self.jobs.values() if job.subject_id == subject_id]

    def get_stats(self) -> JobStats:
        stats = JobStats()
        for job in self.jobs.values():
            stats.total += 1
            if job.status is JobStatus.PENDING:
                stats.pending += 1
            elif job.status is JobStatus.RUNNING:
                stats.running += 1
            elif job.status is JobStatus.COMPLETED:
                stats.completed += 1
            elif job.status is JobStatus.FAILED:
                stats.failed += 1
        return stats

    def next_pending(self, now: datetime | None = None) -> Job | None:
        current = now or self.now()
        eligible = [job for job in self.jobs.values() if job.is_eligible(current)]
        if not eligible:
            return None
        return min(eligible, key=lambda job: (-job.priority, job.sequence))

    def clear_completed_jobs(self, retention: timedelta) -> int:
        cutoff = self.now() - retention
        # Snapshot ids first: handlers may enqueue while a sweep is running.
        expired = [
            job_id
            for job_id, job in list(self.jobs.items())
            if job.status.is_terminal and job.completed_at is not None and job.completed_at <= cutoff
        ]
        for job_id in expired:
            self.jobs.pop(job_id, None)

        logger.info("cleared terminal jobs count=%s retention_seconds=%s", len(expired), retention.total_seconds())
        return len(expired)
