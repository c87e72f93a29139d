from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any

SOURCE_ENCHERES_PUBLIQUES = "encheres-publiques"
SOURCE_NOTAIRES = "notaires"
SOURCE_INSEE = "insee"
SOURCE_ADEME = "ademe"
SOURCE_BODACC = "bodacc"

PROPERTY_TYPES = {"house", "flat", "land", "other"}
OCCUPATION_STATUSES = {"occupied_by_owner", "rented", "free", "unknown"}
ENERGY_CLASSES = {"A", "B", "C", "D", "E", "F", "G"}
UNKNOWN_ENERGY_CLASS = "unknown"


@dataclass(slots=True, frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    postcode: str | None = None


@dataclass(slots=True, kw_only=True)
class RawOpportunity:
    """Fields shared by every opportunity domain.

    ``latitude``/``longitude`` stay ``None`` until the record is geocoded;
    ``external_id`` is the upsert conflict target and must be stable per
    source record.
    """

    external_id: str
    source: str
    label: str
    address: str | None = None
    city: str | None = None
    zip_code: str | None = None
    department: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    opportunity_date: date | None = None
    main_picture: str | None = None
    pictures: list[str] = field(default_factory=list)

    @property
    def is_geocoded(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def has_media(self) -> bool:
        return bool(self.main_picture or self.pictures)

    def with_coordinates(self, coordinates: Coordinates):
        return replace(
            self,
            latitude=coordinates.latitude,
            longitude=coordinates.longitude,
            zip_code=self.zip_code or coordinates.postcode,
        )


@dataclass(slots=True, kw_only=True)
class AuctionOpportunity(RawOpportunity):
    url: str
    property_type: str = "other"
    description: str | None = None
    current_price: float | None = None
    lower_estimate: float | None = None
    upper_estimate: float | None = None
    reserve_price: float | None = None
    energy_class: str = UNKNOWN_ENERGY_CLASS
    square_footage: float | None = None
    rooms: int | None = None
    auction_venue: str | None = None
    occupation_status: str = "unknown"


@dataclass(slots=True, kw_only=True)
class ListingOpportunity(RawOpportunity):
    url: str
    transaction_type: str = "VENTE"
    property_type: str = "other"
    description: str | None = None
    price: float | None = None
    price_type: str | None = None
    square_footage: float | None = None
    land_area: float | None = None
    rooms: int | None = None
    bedrooms: int | None = None
    construction_year: int | None = None
    parking: bool | None = None
    energy_class: str = UNKNOWN_ENERGY_CLASS
    notary_office: dict[str, Any] | None = None


@dataclass(slots=True, kw_only=True)
class SuccessionOpportunity(RawOpportunity):
    first_name: str
    last_name: str
    birth_date: date | None = None
    mairie_contact: dict[str, Any] | None = None


@dataclass(slots=True, kw_only=True)
class EnergyDiagnosticOpportunity(RawOpportunity):
    energy_class: str
    ges_class: str | None = None
    building_type: str | None = None
    construction_year: int | None = None
    square_footage: float | None = None


@dataclass(slots=True, kw_only=True)
class LiquidationOpportunity(RawOpportunity):
    siret: str
    company_contact: dict[str, Any] | None = None


@dataclass(slots=True)
class ScrapingStats:
    """Per-run counters; logged, never persisted."""

    found: int = 0
    skipped_existing: int = 0
    failed: int = 0
    geocoded: int = 0
    with_media: int = 0
    inserted: int = 0

    @property
    def failed_geocoding(self) -> int:
        return self.found - self.geocoded

    @classmethod
    def from_records(cls, records: list[RawOpportunity], *, skipped_existing: int = 0, failed: int = 0) -> ScrapingStats:
        return cls(
            found=len(records),
            skipped_existing=skipped_existing,
            failed=failed,
            geocoded=sum(1 for record in records if record.is_geocoded),
            with_media=sum(1 for record in records if record.has_media),
        )


@dataclass(slots=True)
class InsertResult:
    attempted: int = 0
    inserted: int = 0

    @property
    def skipped(self) -> int:
        return self.attempted - self.inserted
