from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

JOB_NAME_AUCTIONS = "auctions"
JOB_NAME_NOTARY_LISTINGS = "notary-listings"
JOB_NAME_DECEASES = "deceases"
JOB_NAME_ENERGY_DIAGNOSTICS = "energy-diagnostics"
JOB_NAME_LIQUIDATIONS = "liquidations"
JOB_NAME_REFRESH = "refresh-all-opportunities"
SCRAPING_JOB_NAMES = {
    JOB_NAME_AUCTIONS,
    JOB_NAME_NOTARY_LISTINGS,
    JOB_NAME_DECEASES,
    JOB_NAME_ENERGY_DIAGNOSTICS,
    JOB_NAME_LIQUIDATIONS,
}
MAX_NOTARY_PAGE_SPAN = 100


class JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_job_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AuctionsJobData(JobPayload):
    department_id: int | None = Field(default=None, alias="departmentId", ge=1, le=98)
    since_date: date | None = Field(default=None, alias="sinceDate")


class NotaryListingsJobData(JobPayload):
    start_page: int = Field(default=1, alias="startPage", ge=1)
    end_page: int = Field(default=50, alias="endPage", ge=1)

    @model_validator(mode="after")
    def _check_page_range(self) -> NotaryListingsJobData:
        if self.start_page > self.end_page:
            raise ValueError("startPage must be less than or equal to endPage")
        span = self.end_page - self.start_page + 1
        if span > MAX_NOTARY_PAGE_SPAN:
            raise ValueError(f"page range cannot exceed {MAX_NOTARY_PAGE_SPAN} pages (current range: {span})")
        return self


class DeceasesJobData(JobPayload):
    source_file: str = Field(alias="sourceFile", min_length=1)


class EnergyDiagnosticsJobData(JobPayload):
    department_id: int = Field(alias="departmentId", ge=1, le=98)
    since_date: date = Field(alias="sinceDate")
    before_date: date | None = Field(default=None, alias="beforeDate")
    energy_classes: list[str] | None = Field(default=None, alias="energyClasses")

    @field_validator("energy_classes")
    @classmethod
    def _normalize_energy_classes(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized = sorted({item.strip().upper() for item in value if item.strip()})
        invalid = [item for item in normalized if item not in {"A", "B", "C", "D", "E", "F", "G"}]
        if invalid:
            raise ValueError(f"unknown energy classes: {', '.join(invalid)}")
        if not normalized:
            raise ValueError("energyClasses must not be empty")
        return normalized


class LiquidationsJobData(JobPayload):
    department_id: int = Field(alias="departmentId", ge=1, le=98)
    since_date: date = Field(alias="sinceDate")


JOB_PAYLOAD_MODELS: dict[str, type[JobPayload]] = {
    JOB_NAME_AUCTIONS: AuctionsJobData,
    JOB_NAME_NOTARY_LISTINGS: NotaryListingsJobData,
    JOB_NAME_DECEASES: DeceasesJobData,
    JOB_NAME_ENERGY_DIAGNOSTICS: EnergyDiagnosticsJobData,
    JOB_NAME_LIQUIDATIONS: LiquidationsJobData,
}


class EnqueuedJobOut(BaseModel):
    job_id: str = Field(serialization_alias="jobId")
    queue: str
    name: str
    message: str = "Job enqueued successfully"


class QueueJobOut(BaseModel):
    id: str
    queue: str
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    state: str
    attempts_made: int
    max_attempts: int
    run_at: datetime | None = None
    last_error: str | None = None
    lease_expires_at: datetime | None = None
