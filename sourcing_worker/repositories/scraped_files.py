from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from sourcing_worker.repositories.postgres import Database

logger = logging.getLogger(__name__)

SCRAPED_FILES_TABLE = "scraped_files"


class ScrapedFileLedger(ABC):
    """Names of source files already ingested, so periodic discovery only enqueues new ones."""

    @abstractmethod
    async def known_files(self, source: str) -> set[str]:
        raise NotImplementedError

    @abstractmethod
    async def record(self, source: str, file_name: str) -> bool:
        """Returns False when the file was already recorded."""
        raise NotImplementedError


class InMemoryScrapedFileLedger(ScrapedFileLedger):
    def __init__(self) -> None:
        self._files: dict[str, set[str]] = {}

    async def known_files(self, source: str) -> set[str]:
        return set(self._files.get(source, set()))

    async def record(self, source: str, file_name: str) -> bool:
        files = self._files.setdefault(source, set())
        if file_name in files:
            return False
        files.add(file_name)
        return True


class PostgresScrapedFileLedger(ScrapedFileLedger):
    def __init__(self, database: Database) -> None:
        self.database = database

    async def known_files(self, source: str) -> set[str]:
        pool = await self.database.get_pool()
        rows = await pool.fetch(f"select file_name from {SCRAPED_FILES_TABLE} where source = $1", source)
        return {row["file_name"] for row in rows}

    async def record(self, source: str, file_name: str) -> bool:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"""
            insert into {SCRAPED_FILES_TABLE} (source, file_name)
            values ($1, $2)
            on conflict (source, file_name) do nothing
            returning file_name
            """,
            source,
            file_name,
        )
        if row is not None:
            logger.info("scraped file recorded source=%s file_name=%s", source, file_name)
        return row is not None
