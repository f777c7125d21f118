from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from visibility_jobs.jobs.errors import InvalidJobError


class JobType(str, Enum):
    BRAND_ENRICHMENT = "brand_enrichment"
    COMPETITOR_ENRICHMENT = "competitor_enrichment"
    TOPIC_GENERATION = "topic_generation"
    QUERY_GENERATION = "query_generation"
    LLM_SAMPLING = "llm_sampling"
    SERP_SAMPLING = "serp_sampling"
    CITATION_EXTRACTION = "citation_extraction"
    VISIBILITY_SCORING = "visibility_scoring"
    GAP_ANALYSIS = "gap_analysis"
    RECOMMENDATION_GENERATION = "recommendation_generation"
    AXP_PUBLISH = "axp_publish"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPayload(BaseModel):
    subject_id: str = Field(min_length=1)

    model_config = ConfigDict(extra="allow")


class BrandEnrichmentPayload(JobPayload):
    domain: str | None = None
    name: str | None = None
    sources: list[str] = Field(default_factory=lambda: ["brand_dev", "knowledge_graph", "wikidata"])


class CompetitorEnrichmentPayload(JobPayload):
    competitor_id: str | None = None


class TopicGenerationPayload(JobPayload):
    count: int = Field(default=10, ge=1)


class QueryGenerationPayload(JobPayload):
    topic_id: str | None = None
    queries_per_topic: int = Field(default=5, ge=1)


class LlmSamplingPayload(JobPayload):
    prompt_id: str | None = None
    providers: list[str] = Field(default_factory=lambda: ["openai", "anthropic", "google"])
    model: str | None = None


class SerpSamplingPayload(JobPayload):
    query_id: str | None = None


class CitationExtractionPayload(JobPayload):
    query_id: str | None = None


class VisibilityScoringPayload(JobPayload):
    period: Literal["day", "week", "month"] = "week"


class GapAnalysisPayload(JobPayload):
    period: str | None = None


class RecommendationPayload(JobPayload):
    pass


class AxpPublishPayload(JobPayload):
    pass


PAYLOAD_MODELS: dict[JobType, type[JobPayload]] = {
    JobType.BRAND_ENRICHMENT: BrandEnrichmentPayload,
    JobType.COMPETITOR_ENRICHMENT: CompetitorEnrichmentPayload,
    JobType.TOPIC_GENERATION: TopicGenerationPayload,
    JobType.QUERY_GENERATION: QueryGenerationPayload,
    JobType.LLM_SAMPLING: LlmSamplingPayload,
    JobType.SERP_SAMPLING: SerpSamplingPayload,
    JobType.CITATION_EXTRACTION: CitationExtractionPayload,
    JobType.VISIBILITY_SCORING: VisibilityScoringPayload,
    JobType.GAP_ANALYSIS: GapAnalysisPayload,
    JobType.RECOMMENDATION_GENERATION: RecommendationPayload,
    JobType.AXP_PUBLISH: AxpPublishPayload,
}


def coerce_job_type(value: JobType | str) -> JobType:
    try:
        return JobType(value)
    except ValueError as exc:
        raise InvalidJobError(f"unknown job type: {value}") from exc


def validate_payload(job_type: JobType, payload: dict[str, Any] | JobPayload) -> dict[str, Any]:
    model = PAYLOAD_MODELS[job_type]
    raw = payload.model_dump() if isinstance(payload, BaseModel) else payload
    try:
        return model.model_validate(raw).model_dump(mode="json")
    except ValidationError as exc:
        raise InvalidJobError(f"invalid payload for {job_type.value}: {exc}") from exc


@dataclass(slots=True)
class Job:
    id: str
    type: JobType
    payload: dict[str, Any]
    priority: int
    max_attempts: int
    created_at: datetime
    sequence: int
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_eligible_at: datetime | None = None
    error: str | None = None
    result: Any = None

    @property
    def subject_id(self) -> str:
        return self.payload["subject_id"]

    def typed_payload(self) -> JobPayload:
        return PAYLOAD_MODELS[self.type].model_validate(self.payload)

    def is_eligible(self, now: datetime) -> bool:
        if self.status is not JobStatus.PENDING:
            return False
        return self.next_eligible_at is None or self.next_eligible_at <= now

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "subject_id": self.subject_id,
            "payload": dict(self.payload),
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "next_eligible_at": self.next_eligible_at,
        }
        if self.status is JobStatus.FAILED or self.error is not None:
            data["error"] = self.error
        if self.status is JobStatus.COMPLETED:
            data["result"] = self.result
        return data


@dataclass(slots=True)
class JobStats:
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass(slots=True)
class JobOutcome:
    """What a single dispatch tick did to the job it selected."""

    job: Job
    chained_job_ids: list[str] = field(default_factory=list)
