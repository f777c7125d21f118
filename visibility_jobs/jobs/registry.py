from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import Any

from visibility_jobs.jobs.errors import RegistryFrozenError
from visibility_jobs.jobs.models import Job, JobType, coerce_job_type

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Any]]


class HandlerRegistry:
    """Maps each job type to the coroutine that executes it.

    Handlers receive the full job and return a JSON-serializable result or raise.
    Execution is at-least-once: a retried job re-runs its handler from the start,
    so side effects a handler commits before raising must be safe to repeat.
    Handlers must never touch queue state; the dispatcher records the outcome.
    """

    def __init__(self) -> None:
        self._handlers: dict[JobType, Handler] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, job_type: JobType | str, handler: Handler) -> None:
        if self._frozen:
            raise RegistryFrozenError("handlers must be registered before dispatch starts")
        resolved = coerce_job_type(job_type)
        if resolved in self._handlers:
            logger.info("replacing handler for job type=%s", resolved.value)
        self._handlers[resolved] = handler

    def register_many(self, handlers: dict[JobType, Handler]) -> None:
        for job_type, handler in handlers.items():
            self.register(job_type, handler)

    def get(self, job_type: JobType) -> Handler | None:
        return self._handlers.get(job_type)

    def registered_types(self) -> list[JobType]:
        return sorted(self._handlers, key=lambda job_type: job_type.value)

    def freeze(self) -> None:
        self._frozen = True
