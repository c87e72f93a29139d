from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sourcing_worker.jobs.refresh import RefreshTrigger
from sourcing_worker.repositories.base import OpportunityRepository
from sourcing_worker.schemas.jobs import JobPayload
from sourcing_worker.schemas.opportunities import RawOpportunity, ScrapingStats
from sourcing_worker.services.geocoding import GeocodingFailure, GeocodingService

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=JobPayload)
RecordT = TypeVar("RecordT", bound=RawOpportunity)


@dataclass(slots=True)
class CollectedRecords(Generic[RecordT]):
    records: list[RecordT] = field(default_factory=list)
    skipped_existing: int = 0
    failed: int = 0


class ScrapingService(ABC, Generic[PayloadT, RecordT]):
    """One scrape run for one domain: collect, geocode, insert, refresh.

    Known external ids are loaded once per run; subclasses check them before
    any per-record request so existing records cost no detail fetch and no
    geocoding call. Records that cannot be geocoded are still inserted.
    """

    domain: str

    def __init__(
        self,
        *,
        repository: OpportunityRepository[RecordT],
        geocoder: GeocodingService | None = None,
        refresh_trigger: RefreshTrigger | None = None,
    ) -> None:
        self.repository = repository
        self.geocoder = geocoder
        self.refresh_trigger = refresh_trigger

    async def scrape(self, payload: PayloadT, *, job_id: str) -> ScrapingStats:
        existing_ids = set(await self.repository.get_all_external_ids())
        logger.info("scrape started domain=%s job_id=%s known_ids=%s", self.domain, job_id, len(existing_ids))

        collected = await self.collect(payload, existing_ids)
        records: list[RecordT] = []
        for record in collected.records:
            records.append(await self._ensure_coordinates(record))

        stats = ScrapingStats.from_records(
            records,
            skipped_existing=collected.skipped_existing,
            failed=collected.failed,
        )
        logger.info(
            "scrape collected domain=%s job_id=%s found=%s geocoded=%s with_media=%s skipped_existing=%s failed=%s",
            self.domain,
            job_id,
            stats.found,
            stats.geocoded,
            stats.with_media,
            stats.skipped_existing,
            stats.failed,
        )
        if stats.failed_geocoding:
            logger.warning(
                "records kept without coordinates domain=%s job_id=%s count=%s",
                self.domain,
                job_id,
                stats.failed_geocoding,
            )

        if not records:
            logger.info("nothing to insert domain=%s job_id=%s", self.domain, job_id)
            return stats

        stats.inserted = await self.repository.insert_opportunities(records)
        if self.refresh_trigger is not None:
            await self.refresh_trigger.trigger_refresh()
        return stats

    @abstractmethod
    async def collect(self, payload: PayloadT, existing_ids: set[str]) -> CollectedRecords[RecordT]:
        raise NotImplementedError

    def geocoding_query(self, record: RecordT) -> str:
        # Addresses often already carry the postcode and city.
        query = ""
        for part in (record.address, record.zip_code, record.city):
            if part and part.lower() not in query.lower():
                query = f"{query} {part}".strip()
        return query

    async def _ensure_coordinates(self, record: RecordT) -> RecordT:
        if record.is_geocoded or self.geocoder is None:
            return record
        result = await self.geocoder.geocode(self.geocoding_query(record))
        if isinstance(result, GeocodingFailure):
            logger.debug(
                "geocoding skipped domain=%s external_id=%s reason=%s",
                self.domain,
                record.external_id,
                result.reason,
            )
            return record
        return record.with_coordinates(result)
