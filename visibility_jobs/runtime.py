from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from visibility_jobs.core.config import Settings
from visibility_jobs.freshness.registry import FreshnessRegistry
from visibility_jobs.freshness.repository import FreshnessRepository, InMemoryFreshnessRepository
from visibility_jobs.jobs.dispatcher import Dispatcher
from visibility_jobs.jobs.handlers import Providers, build_handlers
from visibility_jobs.jobs.pipeline import PipelineOrchestrator
from visibility_jobs.jobs.queue import JobQueue, utcnow
from visibility_jobs.jobs.registry import HandlerRegistry
from visibility_jobs.jobs.retry import RetryPolicy
from visibility_jobs.jobs.triggers import JobTriggers


@dataclass(slots=True)
class JobSystem:
    """One process-wide set of collaborators, built once and passed by reference."""

    queue: JobQueue
    registry: HandlerRegistry
    orchestrator: PipelineOrchestrator
    dispatcher: Dispatcher
    triggers: JobTriggers
    freshness: FreshnessRegistry

    def start(self) -> None:
        self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.freshness.repository.close()


def build_job_system(
    settings: Settings,
    *,
    repository: FreshnessRepository | None = None,
    providers: Providers | None = None,
    now: Callable[[], datetime] = utcnow,
) -> JobSystem:
    queue = JobQueue(default_max_attempts=settings.job_max_attempts, now=now)
    freshness = FreshnessRegistry(
        repository if repository is not None else InMemoryFreshnessRepository(),
        ttl_overrides=settings.freshness_ttl_overrides,
        now=now,
    )
    registry = HandlerRegistry()
    registry.register_many(build_handlers(providers or Providers(), freshness))

    orchestrator = PipelineOrchestrator(queue, chain_priority=settings.pipeline_chain_priority)
    dispatcher = Dispatcher(
        queue,
        registry,
        orchestrator,
        tick_interval_seconds=settings.tick_interval_seconds,
        retry_policy=RetryPolicy(
            base_seconds=settings.job_retry_base_seconds,
            max_seconds=settings.job_retry_max_seconds,
            jitter_ratio=settings.job_retry_jitter_ratio,
        ),
        handler_timeout_seconds=settings.handler_timeout_seconds,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
        job_retention=timedelta(hours=settings.job_retention_hours),
    )
    return JobSystem(
        queue=queue,
        registry=registry,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        triggers=JobTriggers(queue, full_analysis_priority=settings.full_analysis_priority),
        freshness=freshness,
    )
