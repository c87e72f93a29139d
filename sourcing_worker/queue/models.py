from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

JOB_STATES = {"waiting", "delayed", "active", "completed", "failed"}
PENDING_STATES = {"waiting", "delayed"}
TERMINAL_STATES = {"completed", "failed"}
LEASE_EXPIRED_ERROR = "lease expired"


class QueueError(Exception):
    """Base queue error."""


class JobNotFoundError(QueueError):
    """Raised when a job id is unknown to the queue."""


@dataclass(slots=True)
class QueueJob:
    id: str
    queue: str
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    state: str = "waiting"
    attempts_made: int = 0
    max_attempts: int = 3
    run_at: datetime | None = None
    last_error: str | None = None
    lease_expires_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def lease_expired(job: QueueJob, now: datetime) -> bool:
    return job.state == "active" and job.lease_expires_at is not None and job.lease_expires_at <= now


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


class JobQueue(ABC):
    """Named, delay-aware job queue with per-job retry and exponential backoff."""

    def __init__(
        self,
        *,
        default_max_attempts: int = 3,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 600,
        lease_seconds: int = 300,
    ) -> None:
        self.default_max_attempts = max(1, default_max_attempts)
        self.lease_seconds = max(1, lease_seconds)
        self.retry_base_seconds = max(0, retry_base_seconds)
        self.retry_max_seconds = max(0, retry_max_seconds)

    def retry_delay_seconds(self, attempt: int) -> int:
        return compute_retry_delay_seconds(
            attempt=attempt,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
        )

    @abstractmethod
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
        """Add a job; re-using the id of a job that is not finished returns that job unchanged."""

    @abstractmethod
    async def claim_next(self, queue: str) -> QueueJob | None:
        """Move the oldest due job to ``active``, count the attempt and start its lease."""

    @abstractmethod
    async def extend_lease(self, job: QueueJob) -> None:
        """Push the lease of a job that is still running ``lease_seconds`` into the future."""

    @abstractmethod
    async def requeue_expired(self, queue: str, *, limit: int = 100) -> list[QueueJob]:
        """Recover ``active`` jobs whose lease ran out, as left behind by a crashed worker.

        A job with attempts left goes back to ``waiting``; otherwise it becomes
        ``failed``. Either way ``last_error`` records the expired lease.
        """

    @abstractmethod
    async def complete(self, job: QueueJob) -> QueueJob:
        ...

    @abstractmethod
    async def fail(self, job: QueueJob, error: str) -> QueueJob:
        """Schedule a retry with backoff, or mark the job ``failed`` when attempts are exhausted."""

    @abstractmethod
    async def get_job(self, queue: str, job_id: str) -> QueueJob | None:
        ...

    @abstractmethod
    async def remove_job(self, queue: str, job_id: str) -> bool:
        """Delete a job that is not running; returns False if it does not exist."""

    @abstractmethod
    async def list_jobs(self, queue: str, states: Iterable[str] | None = None) -> list[QueueJob]:
        ...

    async def close(self) -> None:
        return None
