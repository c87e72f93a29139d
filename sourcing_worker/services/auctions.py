from __future__ import annotations

import logging
from typing import Any

from sourcing_worker.core.http import FetchError, RateLimitedFetcher
from sourcing_worker.extractors.auctions import (
    LOT_PATH_MARKER,
    auction_external_id,
    extract_auction,
    extract_lot_urls,
    lot_id_from_url,
)
from sourcing_worker.extractors.common import ExtractionError
from sourcing_worker.schemas.jobs import AuctionsJobData
from sourcing_worker.schemas.opportunities import AuctionOpportunity
from sourcing_worker.services.scraping import CollectedRecords, ScrapingService

logger = logging.getLogger(__name__)


class AuctionsScrapingService(ScrapingService[AuctionsJobData, AuctionOpportunity]):
    """Real-estate lots from encheres-publiques.com."""

    domain = "auctions"

    def __init__(self, *, fetcher: RateLimitedFetcher, base_url: str, max_pages: int = 50, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.max_pages = max(1, max_pages)

    @property
    def listing_url(self) -> str:
        return f"{self.base_url}{LOT_PATH_MARKER.rstrip('/')}"

    async def collect(self, payload: AuctionsJobData, existing_ids: set[str]) -> CollectedRecords[AuctionOpportunity]:
        collected: CollectedRecords[AuctionOpportunity] = CollectedRecords()
        department = f"{payload.department_id:02d}" if payload.department_id is not None else None
        filtered = 0

        for url in await self._collect_lot_urls():
            lot_id = lot_id_from_url(url)
            if lot_id is None:
                continue
            if auction_external_id(lot_id) in existing_ids:
                collected.skipped_existing += 1
                continue
            try:
                html = await self.fetcher.get_text(url)
                auction = extract_auction(html, url=url, site_url=self.base_url)
            except (FetchError, ExtractionError) as exc:
                collected.failed += 1
                logger.warning("auction lot skipped url=%s error=%s", url, exc)
                continue

            if department is not None and auction.department != department:
                filtered += 1
                continue
            if payload.since_date is not None and (
                auction.opportunity_date is None or auction.opportunity_date < payload.since_date
            ):
                filtered += 1
                continue
            collected.records.append(auction)

        if filtered:
            logger.info("auction lots filtered by job parameters count=%s", filtered)
        return collected

    async def _collect_lot_urls(self) -> list[str]:
        urls: list[str] = []
        seen: set[str] = set()
        for page in range(1, self.max_pages + 1):
            try:
                html = await self.fetcher.get_text(
                    self.listing_url,
                    params={"evenements_periode": "en_cours_a_venir", "page": page},
                )
            except FetchError:
                if page == 1:
                    raise
                logger.warning("auction listing page failed page=%s; keeping %s urls", page, len(urls), exc_info=True)
                break

            new_urls = [url for url in extract_lot_urls(html, base_url=self.base_url) if url not in seen]
            if not new_urls:
                logger.info("auction listing exhausted page=%s urls=%s", page, len(urls))
                break
            seen.update(new_urls)
            urls.extend(new_urls)
        return urls
