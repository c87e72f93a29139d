from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from typing import Generic, TypeVar

from sourcing_worker.schemas.opportunities import InsertResult, RawOpportunity

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

RecordT = TypeVar("RecordT", bound=RawOpportunity)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryBatchError(RepositoryError):
    """Raised when one chunk of a batched insert fails.

    Chunks before ``batch_start`` are already committed and stay committed.
    """

    def __init__(self, message: str, *, batch_start: int, batch_size: int, inserted_before: int) -> None:
        super().__init__(message)
        self.batch_start = batch_start
        self.batch_size = batch_size
        self.inserted_before = inserted_before


def chunked(records: Sequence[RecordT], size: int) -> Iterator[tuple[int, Sequence[RecordT]]]:
    if size < 1:
        raise ValueError("batch size must be at least 1")
    for start in range(0, len(records), size):
        yield start, records[start : start + size]


class OpportunityRepository(ABC, Generic[RecordT]):
    """Idempotent, chunked writer for one opportunity domain.

    Every chunk is its own transaction with "do nothing on conflict" on
    ``external_id``; a failing chunk propagates after earlier chunks have been
    committed. ``insert_opportunities`` returns the number of rows attempted
    across the chunks that succeeded, while ``last_insert_result`` also
    records how many of them were actually new.
    """

    table: str

    def __init__(self, *, batch_size: int = DEFAULT_BATCH_SIZE, max_batch_size: int | None = None) -> None:
        self.max_batch_size = max_batch_size
        self.batch_size = self.clamp_batch_size(batch_size)
        self.last_insert_result = InsertResult()

    def clamp_batch_size(self, requested: int) -> int:
        size = max(1, requested)
        if self.max_batch_size is not None:
            size = min(size, self.max_batch_size)
        return size

    @abstractmethod
    async def get_all_external_ids(self) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def _insert_chunk(self, chunk: Sequence[RecordT]) -> int:
        """Insert one chunk atomically and return how many rows were new."""
        raise NotImplementedError

    async def insert_opportunities(self, records: Sequence[RecordT], batch_size: int | None = None) -> int:
        size = self.clamp_batch_size(batch_size or self.batch_size)
        result = InsertResult()
        self.last_insert_result = result

        for batch_start, chunk in chunked(records, size):
            try:
                inserted = await self._insert_chunk(chunk)
            except RepositoryUnavailableError:
                raise
            except Exception as exc:
                logger.error(
                    "batch insert failed table=%s batch_start=%s batch_size=%s attempted_before=%s error=%s",
                    self.table,
                    batch_start,
                    len(chunk),
                    result.attempted,
                    exc,
                )
                raise RepositoryBatchError(
                    f"insert into {self.table} failed for batch starting at {batch_start}",
                    batch_start=batch_start,
                    batch_size=len(chunk),
                    inserted_before=result.attempted,
                ) from exc
            result.attempted += len(chunk)
            result.inserted += inserted
            logger.debug(
                "batch inserted table=%s batch_start=%s batch_size=%s new_rows=%s",
                self.table,
                batch_start,
                len(chunk),
                inserted,
            )

        logger.info(
            "insert completed table=%s attempted=%s inserted=%s skipped=%s",
            self.table,
            result.attempted,
            result.inserted,
            result.skipped,
        )
        return result.attempted
