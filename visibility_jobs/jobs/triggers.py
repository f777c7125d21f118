from __future__ import annotations

from typing import Any

from visibility_jobs.jobs.models import JobType
from visibility_jobs.jobs.queue import DEFAULT_PRIORITY, JobQueue

FULL_ANALYSIS_PRIORITY = 8


class JobTriggers:
    """Named entry points the HTTP layer uses to enqueue pipeline stages."""

    def __init__(self, queue: JobQueue, *, full_analysis_priority: int = FULL_ANALYSIS_PRIORITY) -> None:
        self.queue = queue
        self.full_analysis_priority = full_analysis_priority

    def trigger(
        self,
        job_type: JobType | str,
        subject_id: str,
        priority: int = DEFAULT_PRIORITY,
        **params: Any,
    ) -> str:
        payload = {key: value for key, value in params.items() if value is not None}
        payload["subject_id"] = subject_id
        return self.queue.add_job(job_type, payload, priority=priority)

    def trigger_brand_enrichment(
        self,
        subject_id: str,
        priority: int = DEFAULT_PRIORITY,
        *,
        domain: str | None = None,
        sources: list[str] | None = None,
    ) -> str:
        return self.trigger(JobType.BRAND_ENRICHMENT, subject_id, priority, domain=domain, sources=sources)

    def trigger_competitor_enrichment(
        self,
        subject_id: str,
        competitor_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(JobType.COMPETITOR_ENRICHMENT, subject_id, priority, competitor_id=competitor_id)

    def trigger_topic_generation(self, subject_id: str, count: int = 10, priority: int = DEFAULT_PRIORITY) -> str:
        return self.trigger(JobType.TOPIC_GENERATION, subject_id, priority, count=count)

    def trigger_query_generation(
        self,
        subject_id: str,
        topic_id: str | None = None,
        queries_per_topic: int = 5,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(
            JobType.QUERY_GENERATION,
            subject_id,
            priority,
            topic_id=topic_id,
            queries_per_topic=queries_per_topic,
        )

    def trigger_llm_sampling(
        self,
        subject_id: str,
        prompt_id: str | None = None,
        providers: list[str] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(JobType.LLM_SAMPLING, subject_id, priority, prompt_id=prompt_id, providers=providers)

    def trigger_serp_sampling(
        self,
        subject_id: str,
        query_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(JobType.SERP_SAMPLING, subject_id, priority, query_id=query_id)

    def trigger_citation_extraction(
        self,
        subject_id: str,
        query_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(JobType.CITATION_EXTRACTION, subject_id, priority, query_id=query_id)

    def trigger_visibility_scoring(
        self,
        subject_id: str,
        period: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(JobType.VISIBILITY_SCORING, subject_id, priority, period=period)

    def trigger_gap_analysis(
        self,
        subject_id: str,
        period: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        return self.trigger(JobType.GAP_ANALYSIS, subject_id, priority, period=period)

    def trigger_recommendations(self, subject_id: str, priority: int = DEFAULT_PRIORITY) -> str:
        return self.trigger(JobType.RECOMMENDATION_GENERATION, subject_id, priority)

    def trigger_axp_publish(self, subject_id: str, priority: int = DEFAULT_PRIORITY) -> str:
        return self.trigger(JobType.AXP_PUBLISH, subject_id, priority)

    def trigger_full_analysis(self, subject_id: str, priority: int | None = None) -> list[str]:
        """Enqueue every top-level analysis stage at once.

        The stages do not wait on each other, so scoring may run against partially
        enriched data; pipeline edges re-run the downstream stages once enrichment
        lands.
        """
        resolved_priority = self.full_analysis_priority if priority is None else priority
        return [
            self.trigger_brand_enrichment(subject_id, resolved_priority),
            self.trigger_visibility_scoring(subject_id, "week", resolved_priority),
            self.trigger_gap_analysis(subject_id, "month", resolved_priority),
            self.trigger_recommendations(subject_id, resolved_priority),
        ]
