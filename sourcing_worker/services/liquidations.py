from __future__ import annotations

import logging
from typing import Any

from sourcing_worker.core.http import FetchError, RateLimitedFetcher
from sourcing_worker.extractors.common import ExtractionError, clean_text
from sourcing_worker.extractors.liquidations import (
    build_bodacc_params,
    company_establishments,
    company_for_siren,
    extract_liquidation,
    parse_bodacc_csv,
    unique_notices,
)
from sourcing_worker.schemas.jobs import LiquidationsJobData
from sourcing_worker.schemas.opportunities import LiquidationOpportunity
from sourcing_worker.services.scraping import CollectedRecords, ScrapingService

logger = logging.getLogger(__name__)


class LiquidationsSourcingService(ScrapingService[LiquidationsJobData, LiquidationOpportunity]):
    """Buildings of companies under collective proceedings.

    BODACC notices give the SIRENs; the company search API gives every
    establishment (one opportunity per SIRET) with its address and, usually,
    its coordinates.
    """

    domain = "liquidations"

    def __init__(
        self,
        *,
        fetcher: RateLimitedFetcher,
        companies_fetcher: RateLimitedFetcher | None = None,
        bodacc_export_url: str,
        companies_search_url: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.fetcher = fetcher
        self.companies_fetcher = companies_fetcher or fetcher
        self.bodacc_export_url = bodacc_export_url
        self.companies_search_url = companies_search_url

    async def collect(
        self, payload: LiquidationsJobData, existing_ids: set[str]
    ) -> CollectedRecords[LiquidationOpportunity]:
        department = f"{payload.department_id:02d}"
        content = await self.fetcher.get_text(
            self.bodacc_export_url,
            params=build_bodacc_params(department=department, since_date=payload.since_date),
        )
        rows = parse_bodacc_csv(content)
        notices, unreadable = unique_notices(rows)
        logger.info(
            "bodacc notices fetched department=%s since=%s rows=%s companies=%s unreadable=%s",
            department,
            payload.since_date,
            len(rows),
            len(notices),
            unreadable,
        )

        collected: CollectedRecords[LiquidationOpportunity] = CollectedRecords(failed=unreadable)
        for notice in notices:
            try:
                body = await self.companies_fetcher.get_json(self.companies_search_url, params={"q": notice.siren})
            except FetchError as exc:
                collected.failed += 1
                logger.warning("company lookup failed siren=%s error=%s", notice.siren, exc)
                continue

            company = company_for_siren(body, notice.siren)
            establishments = company_establishments(company) if company is not None else []
            if company is None or not establishments:
                collected.failed += 1
                logger.info("no establishment found siren=%s", notice.siren)
                continue

            for establishment in establishments:
                if clean_text(establishment.get("siret")) in existing_ids:
                    collected.skipped_existing += 1
                    continue
                try:
                    collected.records.append(extract_liquidation(establishment, company, notice))
                except ExtractionError as exc:
                    collected.failed += 1
                    logger.debug("establishment skipped error=%s", exc)
        return collected
