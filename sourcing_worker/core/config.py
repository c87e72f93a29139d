from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "opportunity-sourcing"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    storage_backend: str = "postgres"
    scraping_queue: str = "scraping"
    deceases_queue: str = "source-deceases"
    energy_diagnostics_queue: str = "source-energy-diagnostics"
    liquidations_queue: str = "source-liquidations"
    refresh_queue: str = "refresh-materialized-view"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 5
    job_retry_max_seconds: int = 600
    job_lease_seconds: int = 300
    lease_reap_interval_seconds: float = 60.0
    refresh_delay_seconds: int = 300
    refresh_view_name: str = "all_opportunities"
    insert_batch_size: int = 500
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 3
    http_retry_delay_seconds: float = 1.0
    http_user_agent: str = "opportunity-sourcing/1.0"
    scrape_min_request_interval_seconds: float = 2.0
    geocoding_base_url: str = "https://api-adresse.data.gouv.fr/search/"
    geocoding_min_score: float = 0.5
    geocoding_min_request_interval_seconds: float = 0.025
    geo_api_base_url: str = "https://geo.api.gouv.fr"
    annuaire_api_base_url: str = (
        "https://api-lannuaire.service-public.fr/api/explore/v2.1/catalog/datasets/api-lannuaire-administration"
    )
    ademe_api_base_url: str = "https://data.ademe.fr/data-fair/api/v1/datasets/dpe03existant"
    ademe_page_size: int = 1000
    ademe_min_request_interval_seconds: float = 0.1
    auctions_base_url: str = "https://www.encheres-publiques.com"
    auctions_max_pages: int = 50
    notary_base_url: str = "https://www.immobilier.notaires.fr"
    notary_default_start_page: int = 1
    notary_default_end_page: int = 50
    default_energy_classes: list[str] = ["F", "G"]
    deceases_min_age: int = 50
    insee_deceases_page_url: str = "https://www.insee.fr/fr/information/4190491"
    bodacc_export_url: str = (
        "https://bodacc-datadila.opendatasoft.com/api/explore/v2.1/catalog/datasets/annonces-commerciales/exports/csv"
    )
    recherche_entreprises_url: str = "https://recherche-entreprises.api.gouv.fr/search"
    recherche_entreprises_min_request_interval_seconds: float = 0.1
    scheduler_enabled: bool = True
    scheduler_check_interval_seconds: float = 60.0
    schedule_auctions_interval_seconds: float = 86400.0
    schedule_notary_listings_interval_seconds: float = 86400.0
    schedule_energy_diagnostics_interval_seconds: float = 86400.0
    schedule_liquidations_interval_seconds: float = 86400.0
    schedule_deceases_discovery_interval_seconds: float = 86400.0
    schedule_department_ids: list[int] = Field(default_factory=lambda: list(range(1, 96)))
    schedule_timezone: str = "Europe/Paris"
    otel_enabled: bool = True
    otel_service_name: str = "opportunity-sourcing-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SW_", extra="ignore")

    @property
    def sourcing_queues(self) -> list[str]:
        return [self.scraping_queue, self.deceases_queue, self.energy_diagnostics_queue, self.liquidations_queue]


@lru_cache
def get_settings() -> Settings:
    return Settings()
