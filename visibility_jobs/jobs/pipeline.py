from __future__ import annotations

from collections.abc import Mapping
import logging
from types import MappingProxyType

from visibility_jobs.jobs.errors import ChainingError
from visibility_jobs.jobs.models import Job, JobStatus, JobType
from visibility_jobs.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

DEFAULT_CHAIN_PRIORITY = 5

PIPELINE_EDGES: Mapping[JobType, tuple[JobType, ...]] = MappingProxyType(
    {
        JobType.BRAND_ENRICHMENT: (JobType.VISIBILITY_SCORING,),
        JobType.LLM_SAMPLING: (JobType.VISIBILITY_SCORING,),
        JobType.VISIBILITY_SCORING: (JobType.GAP_ANALYSIS,),
        JobType.GAP_ANALYSIS: (JobType.RECOMMENDATION_GENERATION,),
    }
)


class PipelineOrchestrator:
    """Enqueues downstream stages once a job has completed.

    Chaining is best-effort: a failed enqueue is logged and the triggering job
    keeps its completed status.
    """

    def __init__(
        self,
        queue: JobQueue,
        edges: Mapping[JobType, tuple[JobType, ...]] = PIPELINE_EDGES,
        *,
        chain_priority: int = DEFAULT_CHAIN_PRIORITY,
    ) -> None:
        self.queue = queue
        self.edges = edges
        self.chain_priority = chain_priority

    def next_stages(self, job_type: JobType) -> tuple[JobType, ...]:
        return self.edges.get(job_type, ())

    def on_completed(self, job: Job) -> list[str]:
        if job.status is not JobStatus.COMPLETED:
            return []

        enqueued: list[str] = []
        for next_type in self.next_stages(job.type):
            try:
                enqueued.append(self._enqueue(next_type, job))
            except ChainingError:
                logger.exception(
                    "pipeline chaining failed from job id=%s type=%s to type=%s",
                    job.id,
                    job.type.value,
                    next_type.value,
                )
        return enqueued

    def _enqueue(self, next_type: JobType, job: Job) -> str:
        try:
            job_id = self.queue.add_job(next_type, {"subject_id": job.subject_id}, priority=self.chain_priority)
        except Exception as exc:
            raise ChainingError(f"could not enqueue {next_type.value} after {job.id}: {exc}") from exc

        logger.info(
            "pipeline chained from id=%s type=%s to id=%s type=%s subject_id=%s",
            job.id,
            job.type.value,
            job_id,
            next_type.value,
            job.subject_id,
        )
        return job_id
