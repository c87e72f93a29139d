from __future__ import annotations

import pytest

from sourcing_worker.bootstrap import build_services
from sourcing_worker.core.config import Settings, get_settings
from sourcing_worker.core.telemetry import job_span_attributes, parse_headers, service_name_for, setup_telemetry
from sourcing_worker.queue.memory import InMemoryJobQueue


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SW_INSERT_BATCH_SIZE", "250")
    monkeypatch.setenv("SW_DEFAULT_ENERGY_CLASSES", '["E", "F", "G"]')
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.insert_batch_size == 250
        assert settings.default_energy_classes == ["E", "F", "G"]
        assert settings.refresh_delay_seconds == 300
        assert settings.sourcing_queues == [
            "scraping",
            "source-deceases",
            "source-energy-diagnostics",
            "source-liquidations",
        ]
        assert settings.job_lease_seconds == 300
    finally:
        get_settings.cache_clear()


def test_parse_headers_skips_malformed_items() -> None:
    assert parse_headers("authorization=Bearer abc, x-team = data ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "data",
    }
    assert parse_headers(None) == {}


def test_memory_backend_wires_one_consumer_per_queue() -> None:
    services = build_services(Settings(storage_backend="memory"))

    assert isinstance(services.queue, InMemoryJobQueue)
    assert [consumer.queue_name for consumer in services.consumers()] == [
        "scraping",
        "source-deceases",
        "source-energy-diagnostics",
        "source-liquidations",
        "refresh-materialized-view",
    ]
    assert services.scraping_processor.job_names == [
        "auctions",
        "deceases",
        "energy-diagnostics",
        "liquidations",
        "notary-listings",
    ]
    assert services.queue_for_job("liquidations") == "source-liquidations"
    assert services.queue_for_job("notary-listings") == "scraping"
    assert services.queue_for_job("energy-diagnostics") == "source-energy-diagnostics"


def test_unknown_storage_backend_is_rejected() -> None:
    with pytest.raises(ValueError, match="storage backend"):
        build_services(Settings(storage_backend="sqlite"))


def test_service_name_is_suffixed_for_non_worker_components() -> None:
    settings = Settings(otel_service_name="sourcing")

    assert service_name_for(settings, "worker") == "sourcing"
    assert service_name_for(settings, "api") == "sourcing-api"


def test_disabled_telemetry_builds_no_provider() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), component="api")

    assert runtime.enabled is False
    assert runtime.provider is None


def test_job_span_attributes() -> None:
    assert job_span_attributes(job_id="j1", name="auctions", queue="scraping", attempt=2) == {
        "job.id": "j1",
        "job.name": "auctions",
        "job.queue": "scraping",
        "job.attempt": 2,
    }


def test_lease_and_schedule_settings_reach_queue_consumers_and_scheduler() -> None:
    settings = Settings(
        storage_backend="memory",
        job_lease_seconds=45,
        lease_reap_interval_seconds=5.0,
        schedule_liquidations_interval_seconds=0,
    )
    services = build_services(settings)

    assert services.queue.lease_seconds == 45
    assert {consumer.reap_interval_seconds for consumer in services.consumers()} == {5.0}
    assert [schedule.name for schedule in services.scheduler.schedules] == [
        "auctions",
        "notary-listings",
        "energy-diagnostics",
        "deceases-discovery",
    ]
