from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from visibility_jobs.freshness.registry import FreshnessRegistry
from visibility_jobs.freshness.repository import InMemoryFreshnessRepository
from visibility_jobs.jobs.errors import HandlerExecutionError
from visibility_jobs.jobs.handlers import Providers, build_handlers, completeness_score
from visibility_jobs.jobs.models import JobType
from visibility_jobs.jobs.queue import JobQueue


def make_job(queue: JobQueue, job_type: JobType, payload: dict[str, Any]):
    return queue.jobs[queue.add_job(job_type, payload)]


def test_brand_enrichment_merges_sources_and_registers_work(clock) -> None:
    repository = InMemoryFreshnessRepository()
    freshness = FreshnessRegistry(repository, now=clock)
    calls: list[str] = []

    async def brand_dev(payload: dict[str, Any]) -> dict[str, Any]:
        calls.append(payload["domain"])
        return {"name": "Acme Corp", "description": "Rockets and anvils", "logo": "https://cdn/acme.png"}

    async def wikidata(payload: dict[str, Any]) -> dict[str, Any]:
        return {"aliases": ["ACME", "Acme Corp"], "types": ["Manufacturer"]}

    async def knowledge_graph(payload: dict[str, Any]) -> dict[str, Any]:
        raise RuntimeError("quota exceeded")

    handlers = build_handlers(
        Providers(brand_sources={"brand_dev": brand_dev, "wikidata": wikidata, "knowledge_graph": knowledge_graph}),
        freshness,
    )
    queue = JobQueue(now=clock)
    job = make_job(queue, JobType.BRAND_ENRICHMENT, {"subject_id": "b1", "domain": "acme.com", "name": "Acme"})

    result = asyncio.run(handlers[JobType.BRAND_ENRICHMENT](job))

    assert calls == ["acme.com"]
    assert result["brand_identity"]["official_name"] == "Acme"
    assert result["brand_identity"]["variations"] == ["Acme", "Acme Corp", "ACME"]
    assert result["industry_types"] == ["Manufacturer"]
    assert result["completeness_score"] == 100
    assert result["sources_used"] == ["brand_dev", "wikidata"]
    assert result["sources_failed"] == ["knowledge_graph"]
    assert repository.records["acme.com"].subject_id == "b1"


def test_brand_enrichment_skips_when_fresh(clock) -> None:
    freshness = FreshnessRegistry(InMemoryFreshnessRepository(), now=clock)
    calls: list[str] = []

    async def brand_dev(payload: dict[str, Any]) -> dict[str, Any]:
        calls.append(payload["subject_id"])
        return {}

    handlers = build_handlers(Providers(brand_sources={"brand_dev": brand_dev}), freshness)
    job = make_job(JobQueue(now=clock), JobType.BRAND_ENRICHMENT, {"subject_id": "b1", "domain": "acme.com"})

    async def run() -> dict[str, Any]:
        await freshness.register_work("acme.com", "b1")
        clock.advance(days=1)
        return await handlers[JobType.BRAND_ENRICHMENT](job)

    result = asyncio.run(run())

    assert calls == []
    assert result["skipped"] is True
    assert result["reason"] == "fresh"


def test_brand_enrichment_raises_when_every_source_fails(clock) -> None:
    freshness = FreshnessRegistry(InMemoryFreshnessRepository(), now=clock)

    async def down(payload: dict[str, Any]) -> dict[str, Any]:
        raise ConnectionError("unreachable")

    handlers = build_handlers(Providers(brand_sources={"brand_dev": down}), freshness)
    job = make_job(JobQueue(now=clock), JobType.BRAND_ENRICHMENT, {"subject_id": "b1"})

    with pytest.raises(HandlerExecutionError):
        asyncio.run(handlers[JobType.BRAND_ENRICHMENT](job))
    assert asyncio.run(freshness.needs_work("b1")).needs is True


def test_sampling_stage_gates_on_enrichment_age_with_its_own_ttl(clock) -> None:
    repository = InMemoryFreshnessRepository()
    freshness = FreshnessRegistry(repository, now=clock)
    calls: list[dict[str, Any]] = []

    async def sampler(payload: dict[str, Any]) -> dict[str, Any]:
        calls.append(payload)
        return {"answers": 3}

    handlers = build_handlers(Providers(stages={JobType.LLM_SAMPLING: sampler}), freshness)
    queue = JobQueue(now=clock)

    async def sample() -> dict[str, Any]:
        return await handlers[JobType.LLM_SAMPLING](make_job(queue, JobType.LLM_SAMPLING, {"subject_id": "b1"}))

    async def run() -> list[dict[str, Any]]:
        unenriched = await sample()
        await freshness.register_work("acme.com", "b1")
        fresh = await sample()
        clock.advance(days=1, seconds=1)
        stale = await sample()
        return [unenriched, fresh, stale]

    unenriched, fresh, stale = asyncio.run(run())

    assert unenriched == {"subject_id": "b1", "answers": 3}
    assert fresh["skipped"] is True
    assert stale["answers"] == 3
    assert len(calls) == 2
    assert calls[0]["providers"] == ["openai", "anthropic", "google"]
    assert list(repository.records) == ["acme.com"]
    assert repository.records["acme.com"].last_refreshed_at == clock() - timedelta(days=1, seconds=1)


def test_sampling_does_not_mark_enrichment_fresh(clock) -> None:
    repository = InMemoryFreshnessRepository()
    freshness = FreshnessRegistry(repository, now=clock)
    enrich_calls: list[str] = []

    async def brand_dev(payload: dict[str, Any]) -> dict[str, Any]:
        enrich_calls.append(payload["subject_id"])
        return {"name": "Acme"}

    async def sampler(payload: dict[str, Any]) -> dict[str, Any]:
        return {"answers": 3}

    async def competitors(payload: dict[str, Any]) -> dict[str, Any]:
        return {"competitors": 2}

    handlers = build_handlers(
        Providers(
            brand_sources={"brand_dev": brand_dev},
            stages={JobType.LLM_SAMPLING: sampler, JobType.COMPETITOR_ENRICHMENT: competitors},
        ),
        freshness,
    )
    queue = JobQueue(now=clock)

    async def run() -> dict[str, Any]:
        await handlers[JobType.LLM_SAMPLING](make_job(queue, JobType.LLM_SAMPLING, {"subject_id": "b1"}))
        await handlers[JobType.COMPETITOR_ENRICHMENT](
            make_job(queue, JobType.COMPETITOR_ENRICHMENT, {"subject_id": "b1"})
        )
        return await handlers[JobType.BRAND_ENRICHMENT](
            make_job(queue, JobType.BRAND_ENRICHMENT, {"subject_id": "b1", "domain": "acme.com"})
        )

    result = asyncio.run(run())

    assert enrich_calls == ["b1"]
    assert "skipped" not in result
    assert list(repository.records) == ["acme.com"]


def test_new_subject_is_enriched_on_first_run(clock) -> None:
    repository = InMemoryFreshnessRepository()
    freshness = FreshnessRegistry(repository, now=clock)
    calls: list[str] = []

    async def brand_dev(payload: dict[str, Any]) -> dict[str, Any]:
        calls.append(payload["subject_id"])
        return {"name": "Acme"}

    handlers = build_handlers(Providers(brand_sources={"brand_dev": brand_dev}), freshness)
    queue = JobQueue(now=clock)

    async def run() -> list[Any]:
        resolution = await freshness.get_or_create_subject("acme.com", {"name": "Acme"})
        job = make_job(queue, JobType.BRAND_ENRICHMENT, {"subject_id": resolution.subject_id})
        result = await handlers[JobType.BRAND_ENRICHMENT](job)
        return [resolution, result, await freshness.needs_work(resolution.subject_id)]

    resolution, result, decision = asyncio.run(run())

    assert calls == [resolution.subject_id]
    assert result["sources_used"] == ["brand_dev"]
    assert (decision.needs, decision.reason) == (False, "fresh")
    assert list(repository.records) == ["acme.com"]
    assert repository.records["acme.com"].last_refreshed_at == clock()


def test_ungated_stage_always_calls_provider_and_missing_providers_get_no_handler(clock) -> None:
    freshness = FreshnessRegistry(InMemoryFreshnessRepository(), now=clock)

    async def scorer(payload: dict[str, Any]) -> dict[str, Any]:
        return {"period": payload["period"], "mention_rate": 41.5}

    handlers = build_handlers(Providers(stages={JobType.VISIBILITY_SCORING: scorer}), freshness)
    job = make_job(JobQueue(now=clock), JobType.VISIBILITY_SCORING, {"subject_id": "b1"})

    assert set(handlers) == {JobType.VISIBILITY_SCORING}
    assert asyncio.run(handlers[JobType.VISIBILITY_SCORING](job)) == {
        "subject_id": "b1",
        "period": "week",
        "mention_rate": 41.5,
    }
    assert asyncio.run(freshness.get_stats()).total == 0


def test_completeness_score_counts_filled_fields() -> None:
    assert completeness_score({"official_name": "Acme", "variations": ["Acme"]}, []) == 20
    assert completeness_score({}, []) == 0
