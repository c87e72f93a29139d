from __future__ import annotations

from datetime import date
from typing import Any

from sourcing_worker.extractors.common import (
    SOURCE_VALUE_ERRORS,
    ExtractionError,
    clean_text,
    normalize_department,
    parse_date,
    parse_int,
    parse_number,
)
from sourcing_worker.schemas.opportunities import ENERGY_CLASSES, SOURCE_ADEME, EnergyDiagnosticOpportunity

SELECT_FIELDS = (
    "numero_dpe",
    "adresse_ban",
    "code_postal_ban",
    "nom_commune_ban",
    "code_departement_ban",
    "etiquette_dpe",
    "etiquette_ges",
    "_geopoint",
    "date_etablissement_dpe",
    "date_reception_dpe",
    "type_batiment",
    "annee_construction",
    "surface_habitable_logement",
)


def build_ademe_query(
    *,
    department: str,
    since_date: date,
    energy_classes: list[str],
    before_date: date | None = None,
) -> str:
    """Data Fair ``qs`` filter: department AND energy classes AND date range."""
    date_filter = f"date_etablissement_dpe:>={since_date.isoformat()}"
    if before_date is not None:
        date_filter += f" AND date_etablissement_dpe:<={before_date.isoformat()}"
    classes = " OR ".join(energy_classes)
    return f'code_departement_ban:"{department}" AND etiquette_dpe:({classes}) AND {date_filter}'


def build_ademe_params(
    *,
    department: str,
    since_date: date,
    energy_classes: list[str],
    page: int,
    size: int,
    before_date: date | None = None,
) -> dict[str, Any]:
    return {
        "size": size,
        "page": page,
        "select": ",".join(SELECT_FIELDS),
        "qs": build_ademe_query(
            department=department,
            since_date=since_date,
            energy_classes=energy_classes,
            before_date=before_date,
        ),
    }


def dpe_external_id(record: dict[str, Any]) -> str:
    return clean_text(record.get("numero_dpe"))


def extract_energy_diagnostic(record: dict[str, Any]) -> EnergyDiagnosticOpportunity:
    try:
        return _build_energy_diagnostic(record)
    except SOURCE_VALUE_ERRORS as exc:
        raise ExtractionError(f"unexpected DPE data numero_dpe={record.get('numero_dpe')!r}: {exc}") from exc


def _build_energy_diagnostic(record: dict[str, Any]) -> EnergyDiagnosticOpportunity:
    external_id = dpe_external_id(record)
    if not external_id:
        raise ExtractionError("DPE record has no numero_dpe")

    energy_class = clean_text(record.get("etiquette_dpe")).upper()
    if energy_class not in ENERGY_CLASSES:
        raise ExtractionError(f"DPE record {external_id} has no valid energy class: {energy_class!r}")

    opportunity_date = parse_date(record.get("date_etablissement_dpe")) or parse_date(record.get("date_reception_dpe"))
    if opportunity_date is None:
        raise ExtractionError(f"DPE record {external_id} has no date")

    latitude, longitude = _parse_geopoint(record.get("_geopoint"))
    address = clean_text(record.get("adresse_ban")) or None
    city = clean_text(record.get("nom_commune_ban")) or None

    return EnergyDiagnosticOpportunity(
        external_id=external_id,
        source=SOURCE_ADEME,
        label=address or city or "Unknown",
        address=address,
        city=city,
        zip_code=clean_text(record.get("code_postal_ban")) or None,
        department=normalize_department(clean_text(record.get("code_departement_ban"))),
        latitude=latitude,
        longitude=longitude,
        opportunity_date=opportunity_date,
        energy_class=energy_class,
        ges_class=clean_text(record.get("etiquette_ges")).upper() or None,
        building_type=clean_text(record.get("type_batiment")) or None,
        construction_year=parse_int(record.get("annee_construction")),
        square_footage=parse_number(record.get("surface_habitable_logement")),
    )


def _parse_geopoint(raw: Any) -> tuple[float | None, float | None]:
    if not isinstance(raw, str) or "," not in raw:
        return None, None
    lat_text, _, lon_text = raw.partition(",")
    try:
        return float(lat_text), float(lon_text)
    except ValueError:
        return None, None
