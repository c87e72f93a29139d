from __future__ import annotations

import logging
from typing import Any

from sourcing_worker.core.http import FetchError, RateLimitedFetcher
from sourcing_worker.extractors.common import ExtractionError
from sourcing_worker.extractors.listings import (
    extract_listing,
    extract_listing_urls,
    listing_external_id,
    listing_id_from_url,
)
from sourcing_worker.schemas.jobs import NotaryListingsJobData
from sourcing_worker.schemas.opportunities import ListingOpportunity
from sourcing_worker.services.scraping import CollectedRecords, ScrapingService

logger = logging.getLogger(__name__)

LISTING_PATH = "/fr/annonces-immobilieres-liste"
LISTING_FILTERS = {"typeBien": "APP,MAI", "typeTransaction": "VENTE,VNI,VAE"}


class NotaryListingsScrapingService(ScrapingService[NotaryListingsJobData, ListingOpportunity]):
    """Houses and flats for sale from immobilier.notaires.fr."""

    domain = "notary-listings"

    def __init__(self, *, fetcher: RateLimitedFetcher, base_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")

    async def collect(
        self, payload: NotaryListingsJobData, existing_ids: set[str]
    ) -> CollectedRecords[ListingOpportunity]:
        collected: CollectedRecords[ListingOpportunity] = CollectedRecords()
        for url in await self._collect_listing_urls(payload.start_page, payload.end_page):
            listing_id = listing_id_from_url(url)
            if listing_id is None:
                continue
            if listing_external_id(listing_id) in existing_ids:
                collected.skipped_existing += 1
                continue
            try:
                html = await self.fetcher.get_text(url)
                listing = extract_listing(html, url=url)
            except (FetchError, ExtractionError) as exc:
                collected.failed += 1
                logger.warning("notary listing skipped url=%s error=%s", url, exc)
                continue
            collected.records.append(listing)
        return collected

    def geocoding_query(self, record: ListingOpportunity) -> str:
        return " ".join(part for part in (record.city, record.department) if part)

    async def _collect_listing_urls(self, start_page: int, end_page: int) -> list[str]:
        urls: list[str] = []
        seen: set[str] = set()
        for page in range(start_page, end_page + 1):
            try:
                html = await self.fetcher.get_text(
                    f"{self.base_url}{LISTING_PATH}",
                    params={**LISTING_FILTERS, "page": page},
                )
            except FetchError:
                if page == start_page:
                    raise
                logger.warning("notary listing page failed page=%s; keeping %s urls", page, len(urls), exc_info=True)
                break

            new_urls = [url for url in extract_listing_urls(html, base_url=self.base_url) if url not in seen]
            logger.info("notary listing page scanned page=%s new_urls=%s", page, len(new_urls))
            if not new_urls:
                break
            seen.update(new_urls)
            urls.extend(new_urls)
        return urls
