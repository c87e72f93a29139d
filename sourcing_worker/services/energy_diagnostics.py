from __future__ import annotations

import logging
from typing import Any

from sourcing_worker.core.http import FetchError, RateLimitedFetcher
from sourcing_worker.extractors.common import ExtractionError
from sourcing_worker.extractors.energy_diagnostics import (
    build_ademe_params,
    dpe_external_id,
    extract_energy_diagnostic,
)
from sourcing_worker.schemas.jobs import EnergyDiagnosticsJobData
from sourcing_worker.schemas.opportunities import EnergyDiagnosticOpportunity
from sourcing_worker.services.scraping import CollectedRecords, ScrapingService

logger = logging.getLogger(__name__)


class EnergyDiagnosticsSourcingService(ScrapingService[EnergyDiagnosticsJobData, EnergyDiagnosticOpportunity]):
    """Poorly rated housing from the ADEME DPE dataset."""

    domain = "energy-diagnostics"

    def __init__(
        self,
        *,
        fetcher: RateLimitedFetcher,
        base_url: str,
        page_size: int = 1000,
        default_energy_classes: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.page_size = max(1, page_size)
        self.default_energy_classes = default_energy_classes or ["F", "G"]

    async def collect(
        self, payload: EnergyDiagnosticsJobData, existing_ids: set[str]
    ) -> CollectedRecords[EnergyDiagnosticOpportunity]:
        collected: CollectedRecords[EnergyDiagnosticOpportunity] = CollectedRecords()
        department = f"{payload.department_id:02d}"
        energy_classes = payload.energy_classes or self.default_energy_classes
        fetched = 0
        page = 1

        while True:
            params = build_ademe_params(
                department=department,
                since_date=payload.since_date,
                before_date=payload.before_date,
                energy_classes=energy_classes,
                page=page,
                size=self.page_size,
            )
            try:
                body = await self.fetcher.get_json(f"{self.base_url}/lines", params=params)
            except FetchError as exc:
                # Data Fair refuses deep pages with a 400 once its window is exceeded.
                if fetched and exc.status_code == 400:
                    logger.warning("ademe pagination limit reached page=%s fetched=%s", page, fetched)
                    break
                raise

            results = body.get("results") if isinstance(body, dict) else None
            if not isinstance(results, list):
                raise FetchError("ADEME response has no results list", url=f"{self.base_url}/lines")

            fetched += len(results)
            for record in results:
                if not isinstance(record, dict):
                    collected.failed += 1
                    continue
                if dpe_external_id(record) in existing_ids:
                    collected.skipped_existing += 1
                    continue
                try:
                    collected.records.append(extract_energy_diagnostic(record))
                except ExtractionError as exc:
                    collected.failed += 1
                    logger.debug("ademe record skipped error=%s", exc)

            logger.info("ademe page fetched page=%s results=%s total=%s", page, len(results), body.get("total"))
            if len(results) < self.page_size:
                break
            page += 1

        return collected
