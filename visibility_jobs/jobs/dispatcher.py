from __future__ import annotations

import asyncio
from datetime import timedelta
import logging
from typing import Any

from opentelemetry import trace

from visibility_jobs.jobs.errors import HandlerNotFoundError, HandlerTimeoutError
from visibility_jobs.jobs.models import Job, JobOutcome, JobStatus
from visibility_jobs.jobs.pipeline import PipelineOrchestrator
from visibility_jobs.jobs.queue import JobQueue
from visibility_jobs.jobs.registry import Handler, HandlerRegistry
from visibility_jobs.jobs.retry import RetryPolicy

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 5.0
DEFAULT_CLEANUP_INTERVAL_SECONDS = 3600.0
DEFAULT_JOB_RETENTION = timedelta(hours=24)
DEFAULT_HANDLER_TIMEOUT_SECONDS = 300.0


class Dispatcher:
    """Timer-driven scheduler that advances one pending job per tick.

    Only the dispatcher mutates job state, and at most one tick body runs at a
    time, so the job store needs no locking. Outbound work is bounded to one
    handler in flight.
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        orchestrator: PipelineOrchestrator,
        *,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        retry_policy: RetryPolicy | None = None,
        handler_timeout_seconds: float | None = DEFAULT_HANDLER_TIMEOUT_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        job_retention: timedelta = DEFAULT_JOB_RETENTION,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.orchestrator = orchestrator
        self.tick_interval_seconds = tick_interval_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.handler_timeout_seconds = handler_timeout_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.job_retention = job_retention
        self._tick_lock = asyncio.Lock()
        self._loop_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def tick(self) -> JobOutcome | None:
        if self._tick_lock.locked():
            logger.debug("dispatcher tick skipped; previous tick still in flight")
            return None

        async with self._tick_lock:
            with tracer.start_as_current_span("dispatcher.tick"):
                job = self.queue.next_pending()
                if job is None:
                    return None
                return await self._advance(job)

    async def run_until_idle(self, max_ticks: int = 100) -> int:
        """Tick until no job is eligible. Retry backoff is respected, not skipped."""
        advanced = 0
        while advanced < max_ticks:
            outcome = await self.tick()
            if outcome is None:
                break
            advanced += 1
        return advanced

    def start(self) -> None:
        if self.running:
            return
        self.registry.freeze()
        self._loop_task = asyncio.create_task(self._run_ticks(), name="dispatcher-ticks")
        self._cleanup_task = asyncio.create_task(self._run_cleanup(), name="dispatcher-cleanup")
        logger.info(
            "dispatcher started tick_interval_seconds=%s handlers=%s",
            self.tick_interval_seconds,
            ",".join(job_type.value for job_type in self.registry.registered_types()),
        )

    async def stop(self) -> None:
        tasks = [task for task in (self._loop_task, self._cleanup_task, *self._inflight) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._cleanup_task = None
        self._inflight.clear()
        logger.info("dispatcher stopped")

    async def _run_ticks(self) -> None:
        while True:
            # A fresh tick fires every interval; the single-flight guard drops it
            # while a slow handler from an earlier tick is still running.
            if not self._tick_lock.locked():
                task = asyncio.create_task(self._safe_tick())
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            await asyncio.sleep(self.tick_interval_seconds)

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception:  # pragma: no cover - per-job errors are handled inside tick
            logger.exception("dispatcher tick failed")

    async def _run_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.queue.clear_completed_jobs(self.job_retention)
            except Exception:  # pragma: no cover - sweep robustness
                logger.exception("terminal job cleanup failed")

    async def _advance(self, job: Job) -> JobOutcome:
        with tracer.start_as_current_span("dispatcher.process_job") as span:
            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.started_at = self.queue.now()
            job.next_eligible_at = None
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.type", job.type.value)
            span.set_attribute("job.attempt", job.attempts)
            logger.info(
                "processing job id=%s type=%s attempt=%s/%s",
                job.id,
                job.type.value,
                job.attempts,
                job.max_attempts,
            )

            handler = self.registry.get(job.type)
            if handler is None:
                self._mark_failed(job, HandlerNotFoundError(f"No handler registered for job type: {job.type.value}"))
                return JobOutcome(job=job)

            try:
                result = await self._invoke(handler, job)
            except asyncio.CancelledError:
                job.status = JobStatus.PENDING
                logger.warning("job interrupted by shutdown id=%s; returned to pending", job.id)
                raise
            except Exception as exc:
                span.record_exception(exc)
                self._record_failure(job, exc)
                return JobOutcome(job=job)

            job.status = JobStatus.COMPLETED
            job.completed_at = self.queue.now()
            job.result = result
            job.error = None
            logger.info("job completed id=%s type=%s attempts=%s", job.id, job.type.value, job.attempts)
            return JobOutcome(job=job, chained_job_ids=self.orchestrator.on_completed(job))

    async def _invoke(self, handler: Handler, job: Job) -> Any:
        if self.handler_timeout_seconds is None:
            return await handler(job)
        try:
            return await asyncio.wait_for(handler(job), timeout=self.handler_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise HandlerTimeoutError(
                f"handler for {job.type.value} exceeded {self.handler_timeout_seconds}s deadline"
            ) from exc

    def _record_failure(self, job: Job, exc: Exception) -> None:
        if job.attempts >= job.max_attempts:
            self._mark_failed(job, exc)
            return

        delay = self.retry_policy.delay_seconds(job.attempts)
        job.status = JobStatus.PENDING
        job.error = _error_message(exc)
        job.next_eligible_at = self.queue.now() + timedelta(seconds=delay)
        logger.warning(
            "job failed; will retry id=%s type=%s attempt=%s/%s retry_in_seconds=%.1f error=%s",
            job.id,
            job.type.value,
            job.attempts,
            job.max_attempts,
            delay,
            job.error,
        )

    def _mark_failed(self, job: Job, exc: Exception) -> None:
        job.status = JobStatus.FAILED
        job.error = _error_message(exc)
        job.completed_at = self.queue.now()
        logger.error(
            "job failed id=%s type=%s attempts=%s/%s error=%s",
            job.id,
            job.type.value,
            job.attempts,
            job.max_attempts,
            job.error,
        )


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__
