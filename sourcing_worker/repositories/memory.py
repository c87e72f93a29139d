from __future__ import annotations

from collections.abc import Sequence

from sourcing_worker.repositories.base import DEFAULT_BATCH_SIZE, OpportunityRepository, RecordT


class SimulatedChunkFailure(RuntimeError):
    pass


class InMemoryOpportunityRepository(OpportunityRepository[RecordT]):
    """Dict-backed repository with the same chunk and conflict semantics.

    ``fail_at_chunk`` (1-based, counted over the repository lifetime) makes
    that chunk raise before anything from it is stored.
    """

    def __init__(
        self,
        table: str = "memory",
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batch_size: int | None = None,
        fail_at_chunk: int | None = None,
    ) -> None:
        super().__init__(batch_size=batch_size, max_batch_size=max_batch_size)
        self.table = table
        self.fail_at_chunk = fail_at_chunk
        self.rows: dict[str, RecordT] = {}
        self.chunk_sizes: list[int] = []
        self.external_id_reads = 0

    async def get_all_external_ids(self) -> list[str]:
        self.external_id_reads += 1
        return list(self.rows)

    async def _insert_chunk(self, chunk: Sequence[RecordT]) -> int:
        self.chunk_sizes.append(len(chunk))
        if self.fail_at_chunk is not None and len(self.chunk_sizes) == self.fail_at_chunk:
            raise SimulatedChunkFailure(f"simulated failure on chunk {self.fail_at_chunk}")

        inserted = 0
        for record in chunk:
            if record.external_id in self.rows:
                continue
            self.rows[record.external_id] = record
            inserted += 1
        return inserted
