from __future__ import annotations

import logging
import re
import time
from typing import Protocol

from opentelemetry import trace

from sourcing_worker.queue.models import JobQueue, QueueError, QueueJob
from sourcing_worker.repositories.postgres import Database
from sourcing_worker.schemas.jobs import JOB_NAME_REFRESH

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REFRESH_JOB_ID = "refresh-all-opportunities"
_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?$")


class RefreshTrigger(Protocol):
    async def trigger_refresh(self) -> QueueJob: ...


class MaterializedViewRefreshTrigger:
    """Debounced request for a view refresh.

    Uses one fixed job id: a pending refresh is removed and re-added with a
    fresh delay, so a burst of scrapes produces a single refresh once the
    burst has been quiet for ``delay_seconds``. A refresh that is already
    running is left alone and the new request is absorbed by it.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        queue_name: str,
        delay_seconds: int = 300,
        job_id: str = REFRESH_JOB_ID,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.delay_seconds = delay_seconds
        self.job_id = job_id

    async def trigger_refresh(self) -> QueueJob:
        existing = await self.queue.get_job(self.queue_name, self.job_id)
        if existing is not None and existing.is_pending:
            try:
                await self.queue.remove_job(self.queue_name, self.job_id)
                logger.info("pending refresh rescheduled job_id=%s delay_seconds=%s", self.job_id, self.delay_seconds)
            except QueueError:
                logger.info("refresh started before it could be rescheduled job_id=%s", self.job_id)

        job = await self.queue.enqueue(
            self.queue_name,
            JOB_NAME_REFRESH,
            {},
            job_id=self.job_id,
            delay_seconds=self.delay_seconds,
        )
        logger.info("refresh scheduled job_id=%s state=%s run_at=%s", job.id, job.state, job.run_at)
        return job


class ViewRefresher(Protocol):
    async def refresh(self, view_name: str) -> None: ...


class PostgresViewRefresher:
    def __init__(self, database: Database) -> None:
        self.database = database

    async def refresh(self, view_name: str) -> None:
        if not _IDENTIFIER_RE.match(view_name):
            raise ValueError(f"invalid view name: {view_name!r}")
        pool = await self.database.get_pool()
        await pool.execute(f"refresh materialized view {view_name}")


class InMemoryViewRefresher:
    def __init__(self) -> None:
        self.refreshed: list[str] = []

    async def refresh(self, view_name: str) -> None:
        self.refreshed.append(view_name)


class RefreshProcessor:
    def __init__(self, refresher: ViewRefresher, *, view_name: str = "all_opportunities") -> None:
        self.refresher = refresher
        self.view_name = view_name

    async def __call__(self, job: QueueJob) -> None:
        with tracer.start_as_current_span("refresh.materialized_view") as span:
            span.set_attribute("db.view", self.view_name)
            started = time.perf_counter()
            logger.info("refresh started id=%s view=%s", job.id, self.view_name)
            try:
                await self.refresher.refresh(self.view_name)
            except Exception:
                logger.exception("refresh failed id=%s view=%s", job.id, self.view_name)
                raise
            duration_ms = (time.perf_counter() - started) * 1000
            span.set_attribute("refresh.duration_ms", duration_ms)
            logger.info("refresh completed id=%s view=%s duration_ms=%.0f", job.id, self.view_name, duration_ms)
