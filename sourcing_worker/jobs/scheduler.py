from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from opentelemetry import trace

from sourcing_worker.core.config import Settings
from sourcing_worker.queue.models import JobQueue, QueueJob
from sourcing_worker.schemas.jobs import (
    JOB_NAME_AUCTIONS,
    JOB_NAME_DECEASES,
    JOB_NAME_ENERGY_DIAGNOSTICS,
    JOB_NAME_LIQUIDATIONS,
    JOB_NAME_NOTARY_LISTINGS,
    JOB_PAYLOAD_MODELS,
)
from sourcing_worker.services.insee_files import InseeFileDiscovery

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class PlannedJob:
    name: str
    job_id: str
    data: dict[str, Any] = field(default_factory=dict)


PlanBuilder = Callable[[date], Awaitable[list[PlannedJob]]]


@dataclass(slots=True)
class Schedule:
    name: str
    interval_seconds: float
    plan: PlanBuilder

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0


class SourcingScheduler:
    """Enqueues the recurring sourcing jobs on fixed intervals.

    Job ids embed the period they cover (``energy-diagnostics-22-2026-10-18``)
    and an id that already exists and has not failed is left alone, so a
    restart inside the same period does not enqueue the work twice.
    """

    def __init__(
        self,
        queue: JobQueue,
        schedules: Iterable[Schedule],
        *,
        route: Callable[[str], str],
        check_interval_seconds: float = 60.0,
        timezone: str = "Europe/Paris",
        today: Callable[[], date] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.schedules = [schedule for schedule in schedules if schedule.enabled]
        self.route = route
        self.check_interval_seconds = max(1.0, check_interval_seconds)
        self.timezone = timezone
        self._today = today
        self._monotonic = monotonic
        self._last_run_at: dict[str, float] = {}

    def local_today(self) -> date:
        if self._today is not None:
            return self._today()
        return datetime.now(ZoneInfo(self.timezone)).date()

    async def run_due(self) -> list[QueueJob]:
        enqueued: list[QueueJob] = []
        for schedule in self.schedules:
            now = self._monotonic()
            last = self._last_run_at.get(schedule.name)
            if last is not None and now - last < schedule.interval_seconds:
                continue
            try:
                enqueued.extend(await self.run_schedule(schedule))
            except Exception:
                # Retried at the next check; other schedules still run.
                logger.exception("scheduled enqueue failed schedule=%s", schedule.name)
                continue
            self._last_run_at[schedule.name] = now
        return enqueued

    async def run_schedule(self, schedule: Schedule) -> list[QueueJob]:
        today = self.local_today()
        with tracer.start_as_current_span("scheduler.enqueue") as span:
            span.set_attribute("schedule.name", schedule.name)
            planned = await schedule.plan(today)
            enqueued = []
            skipped = 0
            for item in planned:
                job = await self._enqueue(item)
                if job is None:
                    skipped += 1
                else:
                    enqueued.append(job)
            span.set_attribute("schedule.enqueued", len(enqueued))

        logger.info(
            "schedule ran schedule=%s day=%s planned=%s enqueued=%s already_scheduled=%s",
            schedule.name,
            today,
            len(planned),
            len(enqueued),
            skipped,
        )
        return enqueued

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("scheduler started schedules=%s", ",".join(schedule.name for schedule in self.schedules))
        while not stop_event.is_set():
            await self.run_due()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler stopped")

    async def _enqueue(self, item: PlannedJob) -> QueueJob | None:
        data = JOB_PAYLOAD_MODELS[item.name].model_validate(item.data).to_job_data()
        queue_name = self.route(item.name)
        existing = await self.queue.get_job(queue_name, item.job_id)
        if existing is not None and existing.state != "failed":
            return None
        job = await self.queue.enqueue(queue_name, item.name, data, job_id=item.job_id)
        logger.debug("scheduled job enqueued id=%s name=%s queue=%s", job.id, item.name, queue_name)
        return job


def build_schedules(settings: Settings, *, discovery: InseeFileDiscovery | None = None) -> list[Schedule]:
    departments = [department for department in settings.schedule_department_ids if 1 <= department <= 98]

    async def auctions(today: date) -> list[PlannedJob]:
        # Upcoming sales only; past lots were picked up on earlier days.
        return [PlannedJob(JOB_NAME_AUCTIONS, f"auctions-{today}", {"sinceDate": today.isoformat()})]

    async def notary_listings(today: date) -> list[PlannedJob]:
        data = {"startPage": settings.notary_default_start_page, "endPage": settings.notary_default_end_page}
        return [PlannedJob(JOB_NAME_NOTARY_LISTINGS, f"notary-listings-{today}", data)]

    async def energy_diagnostics(today: date) -> list[PlannedJob]:
        since = today - timedelta(days=1)
        return [
            PlannedJob(
                JOB_NAME_ENERGY_DIAGNOSTICS,
                f"energy-diagnostics-{department:02d}-{since}",
                {"departmentId": department, "sinceDate": since.isoformat()},
            )
            for department in departments
        ]

    async def liquidations(today: date) -> list[PlannedJob]:
        since = today - timedelta(days=1)
        return [
            PlannedJob(
                JOB_NAME_LIQUIDATIONS,
                f"liquidations-{department:02d}-{since}",
                {"departmentId": department, "sinceDate": since.isoformat()},
            )
            for department in departments
        ]

    schedules = [
        Schedule("auctions", settings.schedule_auctions_interval_seconds, auctions),
        Schedule("notary-listings", settings.schedule_notary_listings_interval_seconds, notary_listings),
        Schedule("energy-diagnostics", settings.schedule_energy_diagnostics_interval_seconds, energy_diagnostics),
        Schedule("liquidations", settings.schedule_liquidations_interval_seconds, liquidations),
    ]

    if discovery is not None:

        async def deceases(today: date) -> list[PlannedJob]:
            return [
                PlannedJob(JOB_NAME_DECEASES, f"deceases-{item.file_name}", {"sourceFile": item.url})
                for item in await discovery.new_files()
            ]

        schedules.append(Schedule("deceases-discovery", settings.schedule_deceases_discovery_interval_seconds, deceases))
    return schedules
