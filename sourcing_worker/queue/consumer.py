from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable

from opentelemetry import trace

from sourcing_worker.core.telemetry import job_span_attributes
from sourcing_worker.queue.models import JobQueue, QueueJob

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobProcessor = Callable[[QueueJob], Awaitable[None]]


class QueueConsumer:
    """Single-concurrency consumer: one job is claimed, processed and settled before the next.

    While a job runs its lease is renewed every third of ``queue.lease_seconds``.
    Every ``reap_interval_seconds`` the loop hands back jobs whose lease ran out
    (a worker died mid-job) so they are retried instead of staying ``active``.
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        processor: JobProcessor,
        *,
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 15.0,
        reap_interval_seconds: float = 60.0,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.processor = processor
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max(max_backoff_seconds, poll_interval_seconds)
        self.reap_interval_seconds = max(0.0, reap_interval_seconds)
        self._last_reap_at: float | None = None

    async def run_once(self) -> QueueJob | None:
        job = await self.queue.claim_next(self.queue_name)
        if job is None:
            return None

        attributes = job_span_attributes(job_id=job.id, name=job.name, queue=job.queue, attempt=job.attempts_made)
        with tracer.start_as_current_span("worker.process_job", attributes=attributes) as job_span:
            heartbeat = asyncio.create_task(self._keep_lease(job))
            try:
                await self.processor(job)
            except Exception as exc:
                settled = await self.queue.fail(job, str(exc) or exc.__class__.__name__)
                job_span.record_exception(exc)
                logger.warning(
                    "job attempt failed id=%s name=%s queue=%s attempt=%s/%s next_state=%s",
                    job.id,
                    job.name,
                    job.queue,
                    settled.attempts_made,
                    settled.max_attempts,
                    settled.state,
                )
                return settled
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

            return await self.queue.complete(job)

    async def reap_expired_leases(self) -> list[QueueJob]:
        self._last_reap_at = time.monotonic()
        recovered = await self.queue.requeue_expired(self.queue_name)
        for job in recovered:
            logger.warning(
                "lease expired id=%s name=%s queue=%s attempt=%s/%s next_state=%s",
                job.id,
                job.name,
                job.queue,
                job.attempts_made,
                job.max_attempts,
                job.state,
            )
        return recovered

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("consumer started queue=%s", self.queue_name)
        backoff = self.poll_interval_seconds
        while not stop_event.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as cycle_span:
                    cycle_span.set_attribute("job.queue", self.queue_name)
                    if self._reap_due():
                        await self.reap_expired_leases()
                    job = await self.run_once()
                backoff = self.poll_interval_seconds
                if job is None:
                    await self._wait(stop_event, self.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("consumer iteration failed queue=%s: %s; retry in %.1fs", self.queue_name, exc, sleep_for)
                await self._wait(stop_event, sleep_for)
                backoff = sleep_for
        logger.info("consumer stopped queue=%s", self.queue_name)

    def _reap_due(self) -> bool:
        if self._last_reap_at is None:
            return True
        return time.monotonic() - self._last_reap_at >= self.reap_interval_seconds

    async def _keep_lease(self, job: QueueJob) -> None:
        interval = max(self.queue.lease_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.extend_lease(job)
            except Exception:
                logger.warning("lease renewal failed id=%s queue=%s", job.id, job.queue, exc_info=True)

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
