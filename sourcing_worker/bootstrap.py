from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache

import httpx

from sourcing_worker.core.config import Settings, get_settings
from sourcing_worker.core.http import RateLimitedFetcher
from sourcing_worker.jobs.processor import ScrapingProcessor
from sourcing_worker.jobs.refresh import (
    InMemoryViewRefresher,
    MaterializedViewRefreshTrigger,
    PostgresViewRefresher,
    RefreshProcessor,
    ViewRefresher,
)
from sourcing_worker.jobs.scheduler import SourcingScheduler, build_schedules
from sourcing_worker.queue.consumer import QueueConsumer
from sourcing_worker.queue.memory import InMemoryJobQueue
from sourcing_worker.queue.models import JobQueue
from sourcing_worker.queue.postgres import PostgresJobQueue
from sourcing_worker.repositories.base import OpportunityRepository
from sourcing_worker.repositories.memory import InMemoryOpportunityRepository
from sourcing_worker.repositories.postgres import (
    AUCTION_TABLE,
    ENERGY_DIAGNOSTIC_TABLE,
    LIQUIDATION_TABLE,
    LISTING_TABLE,
    SUCCESSION_TABLE,
    Database,
    PostgresOpportunityRepository,
    TableSpec,
)
from sourcing_worker.repositories.scraped_files import (
    InMemoryScrapedFileLedger,
    PostgresScrapedFileLedger,
    ScrapedFileLedger,
)
from sourcing_worker.schemas.jobs import (
    JOB_NAME_AUCTIONS,
    JOB_NAME_DECEASES,
    JOB_NAME_ENERGY_DIAGNOSTICS,
    JOB_NAME_LIQUIDATIONS,
    JOB_NAME_NOTARY_LISTINGS,
)
from sourcing_worker.services.auctions import AuctionsScrapingService
from sourcing_worker.services.communes import CommuneDirectory
from sourcing_worker.services.deceases import DeceasesSourcingService
from sourcing_worker.services.energy_diagnostics import EnergyDiagnosticsSourcingService
from sourcing_worker.services.geocoding import GeocodingService
from sourcing_worker.services.insee_files import InseeFileDiscovery
from sourcing_worker.services.liquidations import LiquidationsSourcingService
from sourcing_worker.services.listings import NotaryListingsScrapingService

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = {"postgres", "memory"}


@dataclass(slots=True)
class SourcingServices:
    """Everything a worker or the ingress API needs, wired from one ``Settings``."""

    settings: Settings
    database: Database
    queue: JobQueue
    refresh_trigger: MaterializedViewRefreshTrigger
    scraping_processor: ScrapingProcessor
    refresh_processor: RefreshProcessor
    ledger: ScrapedFileLedger
    scheduler: SourcingScheduler
    fetchers: list[RateLimitedFetcher] = field(default_factory=list)

    def queue_for_job(self, job_name: str) -> str:
        return _queue_for_job(self.settings, job_name)

    @property
    def queue_names(self) -> list[str]:
        return [*self.settings.sourcing_queues, self.settings.refresh_queue]

    def consumers(self) -> list[QueueConsumer]:
        settings = self.settings
        consumers = [
            QueueConsumer(
                self.queue,
                queue_name,
                self.scraping_processor,
                poll_interval_seconds=settings.poll_interval_seconds,
                max_backoff_seconds=settings.max_backoff_seconds,
                reap_interval_seconds=settings.lease_reap_interval_seconds,
            )
            for queue_name in settings.sourcing_queues
        ]
        consumers.append(
            QueueConsumer(
                self.queue,
                settings.refresh_queue,
                self.refresh_processor,
                poll_interval_seconds=settings.poll_interval_seconds,
                max_backoff_seconds=settings.max_backoff_seconds,
                reap_interval_seconds=settings.lease_reap_interval_seconds,
            )
        )
        return consumers

    async def close(self) -> None:
        for fetcher in self.fetchers:
            await fetcher.aclose()
        await self.queue.close()
        await self.database.close()


def build_services(
    settings: Settings,
    *,
    queue: JobQueue | None = None,
    client: httpx.AsyncClient | None = None,
    repositories: dict[str, OpportunityRepository] | None = None,
    refresher: ViewRefresher | None = None,
) -> SourcingServices:
    if settings.storage_backend not in STORAGE_BACKENDS:
        raise ValueError(f"unknown storage backend: {settings.storage_backend!r}")
    in_memory = settings.storage_backend == "memory"

    database = Database(
        settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
    if queue is None:
        queue = _build_queue(settings, database, in_memory=in_memory)
    ledger: ScrapedFileLedger = InMemoryScrapedFileLedger() if in_memory else PostgresScrapedFileLedger(database)
    if refresher is None:
        refresher = InMemoryViewRefresher() if in_memory else PostgresViewRefresher(database)
    repositories = repositories or {}

    def repository(job_name: str, table_spec: TableSpec) -> OpportunityRepository:
        if job_name in repositories:
            return repositories[job_name]
        if in_memory:
            return InMemoryOpportunityRepository(table_spec.table, batch_size=settings.insert_batch_size)
        return PostgresOpportunityRepository(database, table_spec, batch_size=settings.insert_batch_size)

    def fetcher(min_interval_seconds: float) -> RateLimitedFetcher:
        return RateLimitedFetcher(
            client=client,
            min_interval_seconds=min_interval_seconds,
            max_retries=settings.http_max_retries,
            retry_delay_seconds=settings.http_retry_delay_seconds,
            timeout_seconds=settings.http_timeout_seconds,
            user_agent=settings.http_user_agent,
        )

    scrape_fetcher = fetcher(settings.scrape_min_request_interval_seconds)
    open_data_fetcher = fetcher(settings.geocoding_min_request_interval_seconds)
    ademe_fetcher = fetcher(settings.ademe_min_request_interval_seconds)
    companies_fetcher = fetcher(settings.recherche_entreprises_min_request_interval_seconds)

    refresh_trigger = MaterializedViewRefreshTrigger(
        queue,
        queue_name=settings.refresh_queue,
        delay_seconds=settings.refresh_delay_seconds,
    )
    geocoder = GeocodingService(
        fetcher=open_data_fetcher,
        base_url=settings.geocoding_base_url,
        min_score=settings.geocoding_min_score,
    )
    communes = CommuneDirectory(
        fetcher=open_data_fetcher,
        geo_api_base_url=settings.geo_api_base_url,
        annuaire_base_url=settings.annuaire_api_base_url,
    )

    scraping_processor = ScrapingProcessor(
        {
            JOB_NAME_AUCTIONS: AuctionsScrapingService(
                fetcher=scrape_fetcher,
                base_url=settings.auctions_base_url,
                max_pages=settings.auctions_max_pages,
                repository=repository(JOB_NAME_AUCTIONS, AUCTION_TABLE),
                geocoder=geocoder,
                refresh_trigger=refresh_trigger,
            ),
            JOB_NAME_NOTARY_LISTINGS: NotaryListingsScrapingService(
                fetcher=scrape_fetcher,
                base_url=settings.notary_base_url,
                repository=repository(JOB_NAME_NOTARY_LISTINGS, LISTING_TABLE),
                geocoder=geocoder,
                refresh_trigger=refresh_trigger,
            ),
            JOB_NAME_DECEASES: DeceasesSourcingService(
                fetcher=open_data_fetcher,
                communes=communes,
                min_age=settings.deceases_min_age,
                ledger=ledger,
                repository=repository(JOB_NAME_DECEASES, SUCCESSION_TABLE),
                refresh_trigger=refresh_trigger,
            ),
            JOB_NAME_ENERGY_DIAGNOSTICS: EnergyDiagnosticsSourcingService(
                fetcher=ademe_fetcher,
                base_url=settings.ademe_api_base_url,
                page_size=settings.ademe_page_size,
                default_energy_classes=settings.default_energy_classes,
                repository=repository(JOB_NAME_ENERGY_DIAGNOSTICS, ENERGY_DIAGNOSTIC_TABLE),
                geocoder=geocoder,
                refresh_trigger=refresh_trigger,
            ),
            JOB_NAME_LIQUIDATIONS: LiquidationsSourcingService(
                fetcher=open_data_fetcher,
                companies_fetcher=companies_fetcher,
                bodacc_export_url=settings.bodacc_export_url,
                companies_search_url=settings.recherche_entreprises_url,
                repository=repository(JOB_NAME_LIQUIDATIONS, LIQUIDATION_TABLE),
                geocoder=geocoder,
                refresh_trigger=refresh_trigger,
            ),
        }
    )

    discovery = InseeFileDiscovery(fetcher=open_data_fetcher, page_url=settings.insee_deceases_page_url, ledger=ledger)
    scheduler = SourcingScheduler(
        queue,
        build_schedules(settings, discovery=discovery),
        route=lambda job_name: _queue_for_job(settings, job_name),
        check_interval_seconds=settings.scheduler_check_interval_seconds,
        timezone=settings.schedule_timezone,
    )

    logger.info("services built storage_backend=%s environment=%s", settings.storage_backend, settings.environment)
    return SourcingServices(
        settings=settings,
        database=database,
        queue=queue,
        refresh_trigger=refresh_trigger,
        scraping_processor=scraping_processor,
        refresh_processor=RefreshProcessor(refresher, view_name=settings.refresh_view_name),
        ledger=ledger,
        scheduler=scheduler,
        fetchers=[scrape_fetcher, open_data_fetcher, ademe_fetcher, companies_fetcher],
    )


def _queue_for_job(settings: Settings, job_name: str) -> str:
    routes = {
        JOB_NAME_AUCTIONS: settings.scraping_queue,
        JOB_NAME_NOTARY_LISTINGS: settings.scraping_queue,
        JOB_NAME_DECEASES: settings.deceases_queue,
        JOB_NAME_ENERGY_DIAGNOSTICS: settings.energy_diagnostics_queue,
        JOB_NAME_LIQUIDATIONS: settings.liquidations_queue,
    }
    return routes[job_name]


def _build_queue(settings: Settings, database: Database, *, in_memory: bool) -> JobQueue:
    if in_memory:
        return InMemoryJobQueue(
            default_max_attempts=settings.job_max_attempts,
            retry_base_seconds=settings.job_retry_base_seconds,
            retry_max_seconds=settings.job_retry_max_seconds,
            lease_seconds=settings.job_lease_seconds,
        )
    return PostgresJobQueue(
        database,
        default_max_attempts=settings.job_max_attempts,
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        lease_seconds=settings.job_lease_seconds,
    )


@lru_cache
def get_services() -> SourcingServices:
    return build_services(get_settings())
