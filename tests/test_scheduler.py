from __future__ import annotations

import asyncio
from datetime import date

import httpx
import pytest

from sourcing_worker.bootstrap import build_services
from sourcing_worker.core.config import Settings
from sourcing_worker.core.http import RateLimitedFetcher
from sourcing_worker.jobs.scheduler import PlannedJob, Schedule, SourcingScheduler, build_schedules
from sourcing_worker.queue.memory import InMemoryJobQueue
from sourcing_worker.repositories.scraped_files import InMemoryScrapedFileLedger
from sourcing_worker.services.insee_files import INSEE_DECEASES_SOURCE, InseeFileDiscovery

TODAY = date(2026, 10, 19)
INSEE_PAGE = """
<ul>
  <li><a href="/fichiers/deces-2026-m08.zip">Août 2026</a></li>
  <li><a href="/fichiers/deces-2026-m09.zip">Septembre 2026</a></li>
  <li><a href="/fichiers/deces-2025.zip">Année 2025</a></li>
</ul>
"""


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _no_sleep(_: float) -> None:
    return None


def _settings(**overrides: object) -> Settings:
    values = {"storage_backend": "memory", "schedule_department_ids": [22, 35]}
    values.update(overrides)
    return Settings(**values)


def _scheduler(
    settings: Settings,
    queue: InMemoryJobQueue,
    clock: Clock,
    *,
    schedules: list[Schedule] | None = None,
    discovery: InseeFileDiscovery | None = None,
) -> SourcingScheduler:
    return SourcingScheduler(
        queue,
        schedules if schedules is not None else build_schedules(settings, discovery=discovery),
        route=build_services(settings).queue_for_job,
        today=lambda: TODAY,
        monotonic=clock,
    )


def test_due_schedules_enqueue_one_job_per_period_and_department() -> None:
    settings = _settings()
    queue = InMemoryJobQueue()
    scheduler = _scheduler(settings, queue, Clock())

    enqueued = asyncio.run(scheduler.run_due())

    assert sorted((job.queue, job.id) for job in enqueued) == [
        ("scraping", "auctions-2026-10-19"),
        ("scraping", "notary-listings-2026-10-19"),
        ("source-energy-diagnostics", "energy-diagnostics-22-2026-10-18"),
        ("source-energy-diagnostics", "energy-diagnostics-35-2026-10-18"),
        ("source-liquidations", "liquidations-22-2026-10-18"),
        ("source-liquidations", "liquidations-35-2026-10-18"),
    ]
    energy = asyncio.run(queue.get_job("source-energy-diagnostics", "energy-diagnostics-35-2026-10-18"))
    assert energy.name == "energy-diagnostics"
    assert energy.data == {"departmentId": 35, "sinceDate": "2026-10-18"}
    notary = asyncio.run(queue.get_job("scraping", "notary-listings-2026-10-19"))
    assert notary.data == {"startPage": 1, "endPage": 50}


def test_schedule_waits_for_its_interval_before_running_again() -> None:
    settings = _settings(schedule_department_ids=[35])
    clock = Clock()
    scheduler = _scheduler(settings, InMemoryJobQueue(), clock)

    assert len(asyncio.run(scheduler.run_due())) == 4
    clock.now += 3600
    assert asyncio.run(scheduler.run_due()) == []
    clock.now += 86400
    # Same day, so every id already exists.
    assert asyncio.run(scheduler.run_due()) == []


def test_existing_job_is_left_alone_unless_it_failed() -> None:
    settings = _settings(
        schedule_notary_listings_interval_seconds=0,
        schedule_energy_diagnostics_interval_seconds=0,
        schedule_liquidations_interval_seconds=0,
    )
    queue = InMemoryJobQueue(default_max_attempts=1)
    scheduler = _scheduler(settings, queue, Clock())

    async def scenario() -> list[str]:
        await queue.enqueue("scraping", "auctions", {"sinceDate": "2026-10-19"}, job_id="auctions-2026-10-19")
        assert await scheduler.run_schedule(scheduler.schedules[0]) == []

        job = await queue.claim_next("scraping")
        await queue.fail(job, "boom")
        return [item.id for item in await scheduler.run_schedule(scheduler.schedules[0])]

    assert [schedule.name for schedule in scheduler.schedules] == ["auctions"]
    assert asyncio.run(scenario()) == ["auctions-2026-10-19"]
    assert asyncio.run(queue.get_job("scraping", "auctions-2026-10-19")).state == "waiting"


def test_failing_schedule_is_logged_and_retried_while_others_run(caplog: pytest.LogCaptureFixture) -> None:
    calls: list[str] = []

    async def broken(today: date) -> list[PlannedJob]:
        calls.append("broken")
        raise RuntimeError("source page unavailable")

    async def auctions(today: date) -> list[PlannedJob]:
        calls.append("auctions")
        return [PlannedJob("auctions", f"auctions-{today}", {"sinceDate": today.isoformat()})]

    schedules = [Schedule("broken", 600, broken), Schedule("auctions", 600, auctions)]
    scheduler = _scheduler(_settings(), InMemoryJobQueue(), Clock(), schedules=schedules)

    with caplog.at_level("ERROR", logger="sourcing_worker.jobs.scheduler"):
        first = asyncio.run(scheduler.run_due())
        second = asyncio.run(scheduler.run_due())

    assert [job.id for job in first] == ["auctions-2026-10-19"]
    assert second == []
    assert calls == ["broken", "auctions", "broken"]
    assert "scheduled enqueue failed schedule=broken" in caplog.text


def test_disabled_schedules_are_dropped() -> None:
    settings = _settings(schedule_auctions_interval_seconds=0, schedule_liquidations_interval_seconds=-1)
    scheduler = _scheduler(settings, InMemoryJobQueue(), Clock())

    assert [schedule.name for schedule in scheduler.schedules] == ["notary-listings", "energy-diagnostics"]


def test_discovery_schedule_enqueues_each_new_insee_file() -> None:
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        return httpx.Response(200, text=INSEE_PAGE)

    ledger = InMemoryScrapedFileLedger()
    asyncio.run(ledger.record(INSEE_DECEASES_SOURCE, "deces-2026-m08.zip"))
    fetcher = RateLimitedFetcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=_no_sleep)
    discovery = InseeFileDiscovery(fetcher=fetcher, page_url="https://insee.test/fr/information/4190491", ledger=ledger)
    settings = _settings(
        schedule_auctions_interval_seconds=0,
        schedule_notary_listings_interval_seconds=0,
        schedule_energy_diagnostics_interval_seconds=0,
        schedule_liquidations_interval_seconds=0,
    )
    queue = InMemoryJobQueue()
    scheduler = _scheduler(settings, queue, Clock(), discovery=discovery)

    enqueued = asyncio.run(scheduler.run_due())

    assert requests == ["https://insee.test/fr/information/4190491"]
    assert [(job.queue, job.id, job.name) for job in enqueued] == [
        ("source-deceases", "deceases-deces-2026-m09.zip", "deceases")
    ]
    assert enqueued[0].data == {"sourceFile": "https://insee.test/fichiers/deces-2026-m09.zip"}


def test_run_stops_once_the_stop_event_is_set() -> None:
    passes: list[date] = []

    async def scenario() -> None:
        stop_event = asyncio.Event()

        async def plan(today: date) -> list[PlannedJob]:
            passes.append(today)
            stop_event.set()
            return []

        scheduler = _scheduler(_settings(), InMemoryJobQueue(), Clock(), schedules=[Schedule("once", 60, plan)])
        await asyncio.wait_for(scheduler.run(stop_event), timeout=5)

    asyncio.run(scenario())

    assert passes == [TODAY]
