from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
import logging
from typing import Any

from visibility_jobs.freshness.registry import DataType, FreshnessRegistry
from visibility_jobs.jobs.errors import HandlerExecutionError
from visibility_jobs.jobs.models import BrandEnrichmentPayload, Job, JobType
from visibility_jobs.jobs.registry import Handler

logger = logging.getLogger(__name__)

ProviderFn = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

# Sampling stages skip while the subject's enrichment is younger than their own TTL.
# They only read the registry; brand enrichment is the sole writer.
GATED_STAGES: Mapping[JobType, DataType] = {
    JobType.LLM_SAMPLING: DataType.LLM_SAMPLING,
    JobType.SERP_SAMPLING: DataType.SERP_DATA,
}


@dataclass(slots=True)
class Providers:
    """External provider clients, each an opaque coroutine over a payload dict.

    ``brand_sources`` feed brand enrichment (e.g. brand_dev, knowledge_graph,
    wikidata); ``stages`` back every other pipeline stage.
    """

    brand_sources: dict[str, ProviderFn] = field(default_factory=dict)
    stages: dict[JobType, ProviderFn] = field(default_factory=dict)


def build_handlers(providers: Providers, freshness: FreshnessRegistry) -> dict[JobType, Handler]:
    handlers: dict[JobType, Handler] = {}
    if providers.brand_sources:
        handlers[JobType.BRAND_ENRICHMENT] = make_brand_enrichment_handler(providers.brand_sources, freshness)
    for job_type, provider in providers.stages.items():
        if job_type is JobType.BRAND_ENRICHMENT:
            continue
        handlers[job_type] = make_stage_handler(job_type, provider, freshness)
    return handlers


def make_stage_handler(job_type: JobType, provider: ProviderFn, freshness: FreshnessRegistry) -> Handler:
    data_type = GATED_STAGES.get(job_type)

    async def handle(job: Job) -> dict[str, Any]:
        payload = job.typed_payload().model_dump(mode="json")
        subject_id = job.subject_id

        if data_type is not None:
            decision = await freshness.needs_work(subject_id, data_type)
            if not decision.needs:
                logger.info("skipping %s for subject_id=%s: %s", job_type.value, subject_id, decision.reason)
                return _skipped(subject_id, decision.reason, decision.last_refreshed)

        result = await provider(payload)
        return {"subject_id": subject_id, **(result or {})}

    handle.__name__ = f"handle_{job_type.value}"
    return handle


def make_brand_enrichment_handler(
    sources: dict[str, ProviderFn],
    freshness: FreshnessRegistry,
) -> Handler:
    async def handle_brand_enrichment(job: Job) -> dict[str, Any]:
        payload = BrandEnrichmentPayload.model_validate(job.payload)
        subject_id = payload.subject_id

        decision = await freshness.needs_work(subject_id, DataType.BRAND_ENRICHMENT)
        if not decision.needs:
            logger.info("skipping brand enrichment subject_id=%s: %s", subject_id, decision.reason)
            return _skipped(subject_id, decision.reason, decision.last_refreshed)

        requested = [name for name in payload.sources if name in sources]
        if not requested:
            raise HandlerExecutionError(f"no configured enrichment sources among {payload.sources}")

        request = payload.model_dump(mode="json")
        outcomes = await asyncio.gather(*(sources[name](request) for name in requested), return_exceptions=True)

        identity: dict[str, Any] = {"official_name": payload.name, "variations": [payload.name] if payload.name else []}
        industry_types: list[str] = []
        used: list[str] = []
        for name, outcome in zip(requested, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("enrichment source failed source=%s subject_id=%s error=%s", name, subject_id, outcome)
                continue
            used.append(name)
            merge_source_data(identity, industry_types, outcome or {})

        if not used:
            raise HandlerExecutionError(f"all enrichment sources failed for subject {subject_id}")

        score = completeness_score(identity, industry_types)
        await freshness.register_work(payload.domain or decision.subject_key or subject_id, subject_id)
        logger.info("brand enrichment completed subject_id=%s completeness=%s", subject_id, score)
        return {
            "subject_id": subject_id,
            "brand_identity": identity,
            "industry_types": industry_types,
            "completeness_score": score,
            "sources_used": used,
            "sources_failed": [name for name in requested if name not in used],
        }

    return handle_brand_enrichment


def merge_source_data(identity: dict[str, Any], industry_types: list[str], data: dict[str, Any]) -> None:
    name = data.get("name")
    if name:
        identity["official_name"] = identity.get("official_name") or name
        _extend_unique(identity["variations"], [name])
    _extend_unique(identity["variations"], [alias for alias in data.get("aliases") or [] if alias])

    if data.get("description") and not identity.get("description"):
        identity["description"] = data["description"]
    for key in ("logo", "colors"):
        if data.get(key):
            identity[key] = data[key]
    _extend_unique(industry_types, list(data.get("types") or []))


def completeness_score(identity: dict[str, Any], industry_types: list[str]) -> int:
    fields = [
        bool(identity.get("official_name")),
        bool(identity.get("description")),
        bool(identity.get("logo")),
        len(identity.get("variations") or []) > 1,
        len(industry_types) > 0,
    ]
    return round(sum(fields) / len(fields) * 100)


def _extend_unique(target: list[Any], values: list[Any]) -> None:
    for value in values:
        if value not in target:
            target.append(value)


def _skipped(subject_id: str, reason: str, last_refreshed: Any) -> dict[str, Any]:
    return {
        "subject_id": subject_id,
        "skipped": True,
        "reason": reason,
        "last_refreshed": last_refreshed.isoformat() if last_refreshed is not None else None,
    }
