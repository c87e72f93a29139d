from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from dataclasses import replace
from pathlib import Path
from typing import Any

from sourcing_worker.core.http import RateLimitedFetcher
from sourcing_worker.extractors.common import ExtractionError
from sourcing_worker.extractors.deceases import extract_succession, parse_insee_csv, succession_external_id
from sourcing_worker.repositories.scraped_files import ScrapedFileLedger
from sourcing_worker.schemas.jobs import DeceasesJobData
from sourcing_worker.schemas.opportunities import ScrapingStats, SuccessionOpportunity
from sourcing_worker.services.communes import CommuneDirectory
from sourcing_worker.services.insee_files import INSEE_DECEASES_SOURCE, file_name_from_source
from sourcing_worker.services.scraping import CollectedRecords, ScrapingService

logger = logging.getLogger(__name__)


class DeceasesSourcingService(ScrapingService[DeceasesJobData, SuccessionOpportunity]):
    """Successions from an INSEE death file, located through the commune directory."""

    domain = "deceases"

    def __init__(
        self,
        *,
        fetcher: RateLimitedFetcher,
        communes: CommuneDirectory,
        min_age: int = 50,
        ledger: ScrapedFileLedger | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.fetcher = fetcher
        self.communes = communes
        self.min_age = min_age
        self.ledger = ledger

    async def scrape(self, payload: DeceasesJobData, *, job_id: str) -> ScrapingStats:
        stats = await super().scrape(payload, job_id=job_id)
        # Only a fully ingested file is recorded; a failed run is retried and rediscovered.
        if self.ledger is not None:
            await self.ledger.record(INSEE_DECEASES_SOURCE, file_name_from_source(payload.source_file))
        return stats

    async def collect(self, payload: DeceasesJobData, existing_ids: set[str]) -> CollectedRecords[SuccessionOpportunity]:
        content = await self.load_source(payload.source_file)
        rows, parse_stats = parse_insee_csv(content, min_age=self.min_age)
        logger.info(
            "insee file parsed source=%s total=%s accepted=%s filtered_by_age=%s malformed=%s",
            payload.source_file,
            parse_stats.total_records,
            parse_stats.accepted,
            parse_stats.filtered_by_age,
            parse_stats.malformed,
        )

        self.communes.clear()
        collected: CollectedRecords[SuccessionOpportunity] = CollectedRecords(failed=parse_stats.malformed)
        for row in rows:
            if succession_external_id(row) in existing_ids:
                collected.skipped_existing += 1
                continue
            try:
                succession = extract_succession(row)
            except ExtractionError as exc:
                collected.failed += 1
                logger.debug("insee row skipped error=%s", exc)
                continue
            collected.records.append(await self._locate(succession, row.lieudeces))
        return collected

    async def _locate(self, succession: SuccessionOpportunity, insee_code: str) -> SuccessionOpportunity:
        commune = await self.communes.lookup(insee_code)
        if commune is None:
            return succession
        located = replace(
            succession,
            address=commune.name,
            city=commune.name,
            zip_code=commune.postal_code,
            mairie_contact=commune.mairie_contact,
        )
        if commune.coordinates is not None:
            located = located.with_coordinates(commune.coordinates)
        return located

    async def load_source(self, source_file: str) -> str:
        if source_file.startswith(("http://", "https://")):
            raw = await self.fetcher.get_bytes(source_file)
        else:
            raw = await asyncio.to_thread(Path(source_file).read_bytes)
        if zipfile.is_zipfile(io.BytesIO(raw)):
            raw = _read_csv_member(raw, source_file)
        return raw.decode("utf-8", errors="replace")


def _read_csv_member(raw: bytes, source_file: str) -> bytes:
    with zipfile.ZipFile(io.BytesIO(raw)) as archive:
        members = [name for name in archive.namelist() if name.lower().endswith((".csv", ".txt"))]
        if not members:
            raise ExtractionError(f"archive {source_file} holds no CSV file")
        return archive.read(members[0])
