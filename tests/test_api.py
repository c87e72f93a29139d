from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from sourcing_worker.api.main import app
from sourcing_worker.bootstrap import SourcingServices, build_services, get_services
from sourcing_worker.core.config import Settings


@pytest.fixture
def services() -> SourcingServices:
    return build_services(Settings(storage_backend="memory"))


@pytest.fixture
def client(services: SourcingServices) -> Iterator[TestClient]:
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_enqueue_auctions_job(client: TestClient, services: SourcingServices) -> None:
    response = client.post("/scraping/jobs/auctions", json={"departmentId": 75, "sinceDate": "2025-01-01"})

    assert response.status_code == 202
    body = response.json()
    assert body["queue"] == "scraping"
    assert body["name"] == "auctions"
    assert body["message"] == "Job enqueued successfully"
    job = asyncio.run(services.queue.get_job("scraping", body["jobId"]))
    assert job is not None
    assert job.data == {"departmentId": 75, "sinceDate": "2025-01-01"}


def test_enqueue_auctions_without_body_uses_no_filters(client: TestClient, services: SourcingServices) -> None:
    response = client.post("/scraping/jobs/auctions")

    assert response.status_code == 202
    job = asyncio.run(services.queue.get_job("scraping", response.json()["jobId"]))
    assert job is not None and job.data == {}


@pytest.mark.parametrize(
    "payload",
    [{"departmentId": 0}, {"departmentId": 99}, {"sinceDate": "01/01/2025"}],
)
def test_enqueue_auctions_rejects_invalid_parameters(client: TestClient, payload: dict) -> None:
    assert client.post("/scraping/jobs/auctions", json=payload).status_code == 422


def test_enqueue_notary_listings_defaults_and_page_rules(client: TestClient, services: SourcingServices) -> None:
    default = client.post("/scraping/jobs/notary-listings")
    inverted = client.post("/scraping/jobs/notary-listings", json={"startPage": 5, "endPage": 2})
    too_wide = client.post("/scraping/jobs/notary-listings", json={"startPage": 1, "endPage": 101})

    assert default.status_code == 202
    job = asyncio.run(services.queue.get_job("scraping", default.json()["jobId"]))
    assert job is not None and job.data == {"startPage": 1, "endPage": 50}
    assert inverted.status_code == 422
    assert too_wide.status_code == 422


def test_enqueue_deceases_requires_source_file(client: TestClient) -> None:
    missing = client.post("/sourcing/jobs/deceases", json={})
    accepted = client.post("/sourcing/jobs/deceases", json={"sourceFile": "/data/deces-2025-m01.csv"})

    assert missing.status_code == 422
    assert accepted.status_code == 202
    assert accepted.json()["queue"] == "source-deceases"


def test_enqueue_energy_diagnostics_normalizes_classes(client: TestClient, services: SourcingServices) -> None:
    response = client.post(
        "/sourcing/jobs/energy-diagnostics",
        json={"departmentId": 35, "sinceDate": "2024-01-01", "energyClasses": ["g", "f", "G"]},
    )
    invalid = client.post(
        "/sourcing/jobs/energy-diagnostics",
        json={"departmentId": 35, "sinceDate": "2024-01-01", "energyClasses": ["H"]},
    )

    assert response.status_code == 202
    assert response.json()["queue"] == "source-energy-diagnostics"
    job = asyncio.run(services.queue.get_job("source-energy-diagnostics", response.json()["jobId"]))
    assert job is not None
    assert job.data["energyClasses"] == ["F", "G"]
    assert invalid.status_code == 422


def test_refresh_requests_are_debounced(client: TestClient) -> None:
    first = client.post("/refresh")
    second = client.post("/refresh")

    assert first.status_code == second.status_code == 202
    assert first.json()["jobId"] == second.json()["jobId"] == "refresh-all-opportunities"

    jobs = client.get("/queues/refresh-materialized-view/jobs")
    assert jobs.status_code == 200
    assert [job["state"] for job in jobs.json()] == ["delayed"]


def test_list_queue_jobs_validates_queue_and_state(client: TestClient) -> None:
    client.post("/scraping/jobs/auctions")

    listed = client.get("/queues/scraping/jobs", params={"state": "waiting"})
    unknown_queue = client.get("/queues/nope/jobs")
    bad_state = client.get("/queues/scraping/jobs", params={"state": "sleeping"})

    assert listed.status_code == 200
    assert [job["name"] for job in listed.json()] == ["auctions"]
    assert unknown_queue.status_code == 404
    assert bad_state.status_code == 422


def test_enqueue_liquidations_routes_to_its_own_queue(client: TestClient, services: SourcingServices) -> None:
    response = client.post("/sourcing/jobs/liquidations", json={"departmentId": 35, "sinceDate": "2026-10-18"})
    missing_date = client.post("/sourcing/jobs/liquidations", json={"departmentId": 35})

    assert response.status_code == 202
    assert response.json()["queue"] == "source-liquidations"
    job = asyncio.run(services.queue.get_job("source-liquidations", response.json()["jobId"]))
    assert job is not None
    assert job.data == {"departmentId": 35, "sinceDate": "2026-10-18"}
    assert missing_date.status_code == 422


def test_listed_active_job_shows_its_lease(client: TestClient, services: SourcingServices) -> None:
    client.post("/sourcing/jobs/liquidations", json={"departmentId": 22, "sinceDate": "2026-10-18"})
    asyncio.run(services.queue.claim_next("source-liquidations"))

    listed = client.get("/queues/source-liquidations/jobs", params={"state": "active"})

    assert listed.status_code == 200
    [job] = listed.json()
    assert job["attempts_made"] == 1
    assert job["lease_expires_at"] is not None
