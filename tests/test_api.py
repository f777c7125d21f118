from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from visibility_jobs.core.config import Settings
from visibility_jobs.freshness.repository import InMemoryFreshnessRepository
from visibility_jobs.jobs.handlers import Providers
from visibility_jobs.jobs.models import JobType
from visibility_jobs.main import create_app


async def enrich_source(payload: dict[str, Any]) -> dict[str, Any]:
    return {"name": "Acme", "description": "Anvils"}


@pytest.fixture
def repository() -> InMemoryFreshnessRepository:
    return InMemoryFreshnessRepository()


@pytest.fixture
def api_client(repository: InMemoryFreshnessRepository) -> Iterator[TestClient]:
    settings = Settings(otel_enabled=False, tick_interval_seconds=3600.0, cleanup_interval_seconds=3600.0)
    app = create_app(
        settings,
        providers=Providers(brand_sources={"brand_dev": enrich_source}),
        repository=repository,
    )
    with TestClient(app) as client:
        yield client


def test_healthz(api_client: TestClient) -> None:
    response = api_client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_trigger_then_poll_job(api_client: TestClient) -> None:
    response = api_client.post(
        "/jobs",
        json={"type": "brand_enrichment", "subject_id": "b1", "priority": 8, "params": {"domain": "acme.com"}},
    )
    assert response.status_code == 202
    job_id = response.json()["job_ids"][0]

    job = api_client.get(f"/jobs/{job_id}").json()
    assert job["status"] == "pending"
    assert job["attempts"] == 0
    assert job["max_attempts"] == 3
    assert job["payload"]["domain"] == "acme.com"

    stats = api_client.get("/jobs/stats").json()
    assert stats == {"total": 1, "pending": 1, "running": 0, "completed": 0, "failed": 0}


def test_trigger_rejects_invalid_jobs(api_client: TestClient) -> None:
    bad_type = api_client.post("/jobs", json={"type": "teleport", "subject_id": "b1"})
    bad_payload = api_client.post(
        "/jobs",
        json={"type": "visibility_scoring", "subject_id": "b1", "params": {"period": "decade"}},
    )

    assert bad_type.status_code == 422
    assert bad_payload.status_code == 422
    assert api_client.get("/jobs/stats").json()["total"] == 0


def test_unknown_job_returns_404(api_client: TestClient) -> None:
    assert api_client.get("/jobs/job_missing").status_code == 404


def test_full_analysis_and_subject_listing(api_client: TestClient) -> None:
    response = api_client.post("/subjects/b1/full-analysis")
    assert response.status_code == 202
    assert len(response.json()["job_ids"]) == 4

    jobs = api_client.get("/subjects/b1/jobs").json()
    assert sorted(job["type"] for job in jobs) == [
        "brand_enrichment",
        "gap_analysis",
        "recommendation_generation",
        "visibility_scoring",
    ]
    assert {job["priority"] for job in jobs} == {8}


def test_force_refresh_records_audit_event(api_client: TestClient, repository: InMemoryFreshnessRepository) -> None:
    response = api_client.post("/subjects/b1/force-refresh", json={"reason": "rebrand"})

    assert response.status_code == 200
    assert response.json() == {"subject_id": "b1", "invalidated": False}
    assert repository.audit_events[0].metadata["reason"] == "rebrand"


def test_dispatch_tick_completes_enrichment_and_chains_scoring(
    api_client: TestClient,
    repository: InMemoryFreshnessRepository,
) -> None:
    job_id = api_client.post(
        "/jobs",
        json={"type": "brand_enrichment", "subject_id": "b1", "priority": 8, "params": {"domain": "acme.com"}},
    ).json()["job_ids"][0]

    system = api_client.app.state.job_system
    api_client.portal.call(system.dispatcher.tick)

    job = api_client.get(f"/jobs/{job_id}").json()
    assert job["status"] == "completed"
    assert job["result"]["sources_used"] == ["brand_dev"]
    pending = [item for item in api_client.get("/subjects/b1/jobs").json() if item["status"] == "pending"]
    assert [item["type"] for item in pending] == [JobType.VISIBILITY_SCORING.value]
    assert repository.records["acme.com"].subject_id == "b1"
