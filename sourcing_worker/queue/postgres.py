from __future__ import annotations

import json
import uuid
from collections.abc import Iterable
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from sourcing_worker.queue.models import LEASE_EXPIRED_ERROR, JobNotFoundError, JobQueue, QueueError, QueueJob
from sourcing_worker.repositories.postgres import Database

_JOB_COLUMNS = "queue, id, name, data, state, attempts_made, max_attempts, run_at, last_error, lease_expires_at"


class PostgresJobQueue(JobQueue):
    """Durable queue over the ``queue_jobs`` table; claims use ``for update skip locked``."""

    def __init__(
        self,
        database: Database,
        *,
        default_max_attempts: int = 3,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 600,
        lease_seconds: int = 300,
    ) -> None:
        super().__init__(
            default_max_attempts=default_max_attempts,
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            lease_seconds=lease_seconds,
        )
        self.database = database

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
        resolved_id = job_id or uuid.uuid4().hex
        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into queue_jobs (queue, id, name, data, state, max_attempts, run_at)
                    values ($1, $2, $3, $4::jsonb, $5, $6, now() + ($7::double precision * interval '1 second'))
                    on conflict (queue, id) do update
                    set
                      name = excluded.name,
                      data = excluded.data,
                      state = excluded.state,
                      attempts_made = 0,
                      max_attempts = excluded.max_attempts,
                      run_at = excluded.run_at,
                      last_error = null,
                      lease_expires_at = null,
                      created_at = now(),
                      updated_at = now()
                    where queue_jobs.state in ('completed', 'failed')
                    returning {_JOB_COLUMNS}
                    """,
                    queue,
                    resolved_id,
                    name,
                    json.dumps(data),
                    "delayed" if delay_seconds > 0 else "waiting",
                    max(1, max_attempts or self.default_max_attempts),
                    max(0.0, float(delay_seconds)),
                )
                if row is None:
                    row = await conn.fetchrow(
                        f"select {_JOB_COLUMNS} from queue_jobs where queue = $1 and id = $2",
                        queue,
                        resolved_id,
                    )
        if row is None:
            raise QueueError(f"job {resolved_id} vanished while enqueueing")
        return self._row_to_job(row)

    async def claim_next(self, queue: str) -> QueueJob | None:
        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    with next_job as (
                      select queue, id
                      from queue_jobs
                      where queue = $1
                        and state in ('waiting', 'delayed')
                        and run_at <= now()
                      order by run_at asc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update queue_jobs j
                    set
                      state = 'active',
                      attempts_made = j.attempts_made + 1,
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      updated_at = now()
                    from next_job
                    where j.queue = next_job.queue
                      and j.id = next_job.id
                    returning j.queue, j.id, j.name, j.data, j.state, j.attempts_made, j.max_attempts, j.run_at,
                      j.last_error, j.lease_expires_at
                    """,
                    queue,
                    self.lease_seconds,
                )
        return self._row_to_job(row) if row is not None else None

    async def extend_lease(self, job: QueueJob) -> None:
        pool = await self.database.get_pool()
        await pool.execute(
            """
            update queue_jobs
            set lease_expires_at = now() + ($3::int * interval '1 second'), updated_at = now()
            where queue = $1 and id = $2 and state = 'active'
            """,
            job.queue,
            job.id,
            self.lease_seconds,
        )

    async def requeue_expired(self, queue: str, *, limit: int = 100) -> list[QueueJob]:
        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select queue, id
                      from queue_jobs
                      where queue = $1
                        and state = 'active'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $2
                      for update skip locked
                    )
                    update queue_jobs j
                    set
                      state = case when j.attempts_made < j.max_attempts then 'waiting' else 'failed' end,
                      run_at = case when j.attempts_made < j.max_attempts then now() else j.run_at end,
                      last_error = $3,
                      lease_expires_at = null,
                      updated_at = now()
                    from expired e
                    where j.queue = e.queue
                      and j.id = e.id
                    returning j.queue, j.id, j.name, j.data, j.state, j.attempts_made, j.max_attempts, j.run_at,
                      j.last_error, j.lease_expires_at
                    """,
                    queue,
                    max(1, min(limit, 1000)),
                    LEASE_EXPIRED_ERROR,
                )
        return [self._row_to_job(row) for row in rows]

    async def complete(self, job: QueueJob) -> QueueJob:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"""
            update queue_jobs
            set state = 'completed', last_error = null, lease_expires_at = null, updated_at = now()
            where queue = $1 and id = $2
            returning {_JOB_COLUMNS}
            """,
            job.queue,
            job.id,
        )
        if row is None:
            raise JobNotFoundError(f"job {job.id} not found in queue {job.queue}")
        return self._row_to_job(row)

    async def fail(self, job: QueueJob, error: str) -> QueueJob:
        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select attempts_made, max_attempts from queue_jobs where queue = $1 and id = $2 for update",
                    job.queue,
                    job.id,
                )
                if current is None:
                    raise JobNotFoundError(f"job {job.id} not found in queue {job.queue}")

                attempts_made = int(current["attempts_made"])
                if attempts_made < int(current["max_attempts"]):
                    next_state = "delayed"
                    delay_seconds = self.retry_delay_seconds(attempts_made)
                else:
                    next_state = "failed"
                    delay_seconds = 0

                row = await conn.fetchrow(
                    f"""
                    update queue_jobs
                    set
                      state = $3,
                      last_error = $4,
                      lease_expires_at = null,
                      run_at = case when $3 = 'delayed' then now() + ($5::int * interval '1 second') else run_at end,
                      updated_at = now()
                    where queue = $1 and id = $2
                    returning {_JOB_COLUMNS}
                    """,
                    job.queue,
                    job.id,
                    next_state,
                    error,
                    delay_seconds,
                )
        return self._row_to_job(row)

    async def get_job(self, queue: str, job_id: str) -> QueueJob | None:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"select {_JOB_COLUMNS} from queue_jobs where queue = $1 and id = $2",
            queue,
            job_id,
        )
        return self._row_to_job(row) if row is not None else None

    async def remove_job(self, queue: str, job_id: str) -> bool:
        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                state = await conn.fetchval(
                    "select state from queue_jobs where queue = $1 and id = $2 for update",
                    queue,
                    job_id,
                )
                if state is None:
                    return False
                if state == "active":
                    raise QueueError(f"job {job_id} is active and cannot be removed")
                await conn.execute("delete from queue_jobs where queue = $1 and id = $2", queue, job_id)
        return True

    async def list_jobs(self, queue: str, states: Iterable[str] | None = None) -> list[QueueJob]:
        pool = await self.database.get_pool()
        state_filter = sorted(set(states)) if states is not None else None
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from queue_jobs
            where queue = $1
              and ($2::text[] is null or state = any($2::text[]))
            order by run_at asc, created_at asc
            limit 500
            """,
            queue,
            state_filter,
        )
        return [self._row_to_job(row) for row in rows]

    @staticmethod
    def _row_to_job(row: asyncpg.Record) -> QueueJob:
        data = row["data"]
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                data = {}
        return QueueJob(
            id=row["id"],
            queue=row["queue"],
            name=row["name"],
            data=data if isinstance(data, dict) else {},
            state=row["state"],
            attempts_made=int(row["attempts_made"]),
            max_attempts=int(row["max_attempts"]),
            run_at=row["run_at"],
            last_error=row["last_error"],
            lease_expires_at=row["lease_expires_at"],
        )
