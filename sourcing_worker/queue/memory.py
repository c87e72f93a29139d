from __future__ import annotations

import itertools
import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from sourcing_worker.queue.models import (
    LEASE_EXPIRED_ERROR,
    JobNotFoundError,
    JobQueue,
    QueueError,
    QueueJob,
    lease_expired,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobQueue(JobQueue):
    """Process-local queue used by tests and local runs without Postgres."""

    def __init__(
        self,
        *,
        default_max_attempts: int = 3,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 600,
        lease_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(
            default_max_attempts=default_max_attempts,
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            lease_seconds=lease_seconds,
        )
        self.clock = clock
        self._jobs: dict[tuple[str, str], QueueJob] = {}
        self._sequence: dict[tuple[str, str], int] = {}
        self._counter = itertools.count()

    async def enqueue(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        *,
        job_id: str | None = None,
        delay_seconds: float = 0,
        max_attempts: int | None = None,
    ) -> QueueJob:
        key = (queue, job_id or uuid.uuid4().hex)
        existing = self._jobs.get(key)
        if existing is not None and not existing.is_terminal:
            return replace(existing)

        job = QueueJob(
            id=key[1],
            queue=queue,
            name=name,
            data=dict(data),
            state="delayed" if delay_seconds > 0 else "waiting",
            max_attempts=max(1, max_attempts or self.default_max_attempts),
            run_at=self.clock() + timedelta(seconds=max(0.0, delay_seconds)),
        )
        self._jobs[key] = job
        self._sequence[key] = next(self._counter)
        return replace(job)

    async def claim_next(self, queue: str) -> QueueJob | None:
        now = self.clock()
        due = [
            (job.run_at, self._sequence[key], key)
            for key, job in self._jobs.items()
            if key[0] == queue and job.is_pending and job.run_at is not None and job.run_at <= now
        ]
        if not due:
            return None
        _, _, key = min(due)
        job = self._jobs[key]
        job.state = "active"
        job.attempts_made += 1
        job.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
        return replace(job)

    async def extend_lease(self, job: QueueJob) -> None:
        stored = self._require(job.queue, job.id)
        if stored.state == "active":
            stored.lease_expires_at = self.clock() + timedelta(seconds=self.lease_seconds)

    async def requeue_expired(self, queue: str, *, limit: int = 100) -> list[QueueJob]:
        now = self.clock()
        expired = sorted(
            (job for key, job in self._jobs.items() if key[0] == queue and lease_expired(job, now)),
            key=lambda job: job.lease_expires_at or now,
        )[: max(1, limit)]
        for job in expired:
            job.lease_expires_at = None
            job.last_error = LEASE_EXPIRED_ERROR
            if job.attempts_made < job.max_attempts:
                job.state = "waiting"
                job.run_at = now
            else:
                job.state = "failed"
        return [replace(job) for job in expired]

    async def complete(self, job: QueueJob) -> QueueJob:
        stored = self._require(job.queue, job.id)
        stored.state = "completed"
        stored.last_error = None
        stored.lease_expires_at = None
        return replace(stored)

    async def fail(self, job: QueueJob, error: str) -> QueueJob:
        stored = self._require(job.queue, job.id)
        stored.last_error = error
        stored.lease_expires_at = None
        if stored.attempts_made < stored.max_attempts:
            stored.state = "delayed"
            stored.run_at = self.clock() + timedelta(seconds=self.retry_delay_seconds(stored.attempts_made))
        else:
            stored.state = "failed"
        return replace(stored)

    async def get_job(self, queue: str, job_id: str) -> QueueJob | None:
        job = self._jobs.get((queue, job_id))
        return replace(job) if job is not None else None

    async def remove_job(self, queue: str, job_id: str) -> bool:
        job = self._jobs.get((queue, job_id))
        if job is None:
            return False
        if job.state == "active":
            raise QueueError(f"job {job_id} is active and cannot be removed")
        del self._jobs[(queue, job_id)]
        self._sequence.pop((queue, job_id), None)
        return True

    async def list_jobs(self, queue: str, states: Iterable[str] | None = None) -> list[QueueJob]:
        wanted = set(states) if states is not None else None
        jobs = [
            (job.run_at, self._sequence[key], job)
            for key, job in self._jobs.items()
            if key[0] == queue and (wanted is None or job.state in wanted)
        ]
        return [replace(job) for _, _, job in sorted(jobs, key=lambda item: (item[0], item[1]))]

    def _require(self, queue: str, job_id: str) -> QueueJob:
        job = self._jobs.get((queue, job_id))
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found in queue {queue}")
        return job
