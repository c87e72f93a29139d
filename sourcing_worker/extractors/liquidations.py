from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any

from sourcing_worker.extractors.common import (
    SOURCE_VALUE_ERRORS,
    ExtractionError,
    clean_text,
    normalize_department,
    parse_date,
)
from sourcing_worker.schemas.opportunities import SOURCE_BODACC, LiquidationOpportunity

logger = logging.getLogger(__name__)

BODACC_FIELDS = (
    "numerodepartement",
    "departement_nom_officiel",
    "familleavis_lib",
    "typeavis_lib",
    "dateparution",
    "commercant",
    "ville",
    "cp",
    "listepersonnes",
    "jugement",
)
_SIREN_RE = re.compile(r"\b\d{9}\b")


@dataclass(slots=True)
class BodaccNotice:
    """One collective-proceedings notice, reduced to what the company lookup needs."""

    siren: str
    published_on: date | None
    company_name: str
    judgment: str | None = None


def build_bodacc_params(*, department: str, since_date: date) -> dict[str, Any]:
    return {
        "where": (
            f'familleavis:"collective" AND numerodepartement:"{department}" '
            f'AND dateparution>="{since_date.isoformat()}"'
        ),
        "select": ",".join(BODACC_FIELDS),
        "limit": -1,
        "delimiter": ";",
    }


def parse_bodacc_csv(content: str) -> list[dict[str, str]]:
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")), delimiter=";")
    rows = []
    for raw in reader:
        row = {clean_text(key): clean_text(value) for key, value in raw.items() if key}
        if any(row.values()):
            rows.append(row)
    return rows


def extract_siren(row: dict[str, str]) -> str | None:
    """SIREN of the first person in ``listepersonnes`` carrying a valid registration number.

    ``listepersonnes`` is JSON holding one person or a list of them; when it is
    not valid JSON the first 9-digit run is taken instead.
    """
    raw = row.get("listepersonnes") or ""
    if not raw:
        return None
    try:
        persons = json.loads(raw)
    except json.JSONDecodeError as exc:
        match = _SIREN_RE.search(raw)
        if match:
            return match.group(0)
        raise ExtractionError(f"listepersonnes is not valid JSON: {exc}") from exc

    if isinstance(persons, dict):
        persons = [persons]
    if not isinstance(persons, list):
        return None
    for entry in persons:
        person = entry.get("personne") if isinstance(entry, dict) else None
        registration = person.get("numeroImmatriculation") if isinstance(person, dict) else None
        number = registration.get("numeroIdentification") if isinstance(registration, dict) else None
        if not number:
            continue
        siren = re.sub(r"\s", "", str(number))
        if len(siren) == 9 and siren.isdigit():
            return siren
        logger.debug("invalid siren format value=%s", siren)
    return None


def unique_notices(rows: list[dict[str, str]]) -> tuple[list[BodaccNotice], int]:
    """First notice per SIREN, plus the number of rows whose persons could not be read."""
    notices: dict[str, BodaccNotice] = {}
    failed = 0
    for index, row in enumerate(rows):
        try:
            siren = extract_siren(row)
        except ExtractionError as exc:
            failed += 1
            logger.debug("bodacc row skipped row=%s error=%s", index + 1, exc)
            continue
        if siren is None or siren in notices:
            continue
        notices[siren] = BodaccNotice(
            siren=siren,
            published_on=parse_date(row.get("dateparution")),
            company_name=row.get("commercant") or "",
            judgment=judgment_nature(row.get("jugement")),
        )
    return list(notices.values()), failed


def judgment_nature(raw: str | None) -> str | None:
    if not raw:
        return None
    try:
        judgment = json.loads(raw)
    except json.JSONDecodeError:
        return clean_text(raw) or None
    if isinstance(judgment, dict):
        return clean_text(judgment.get("nature")) or None
    return None


def company_for_siren(body: Any, siren: str) -> dict[str, Any] | None:
    """The search result whose SIREN matches; full-text search can rank another company first."""
    results = body.get("results") if isinstance(body, dict) else None
    if not isinstance(results, list):
        return None
    for result in results:
        if isinstance(result, dict) and clean_text(result.get("siren")) == siren:
            return result
    return None


def company_establishments(company: dict[str, Any]) -> list[dict[str, Any]]:
    """Head office first, then the matching establishments, one entry per SIRET."""
    candidates = [company.get("siege"), *(company.get("matching_etablissements") or [])]
    establishments: dict[str, dict[str, Any]] = {}
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        siret = clean_text(candidate.get("siret"))
        if siret and siret not in establishments:
            establishments[siret] = candidate
    return list(establishments.values())


def department_from_postcode(postcode: str) -> str | None:
    postcode = clean_text(postcode)
    if len(postcode) != 5 or not postcode.isdigit():
        return None
    if postcode.startswith("97"):
        return postcode[:3]
    if postcode.startswith("20"):
        return "2A" if postcode < "20200" else "2B"
    return postcode[:2]


def extract_liquidation(
    establishment: dict[str, Any], company: dict[str, Any], notice: BodaccNotice
) -> LiquidationOpportunity:
    try:
        return _build_liquidation(establishment, company, notice)
    except SOURCE_VALUE_ERRORS as exc:
        raise ExtractionError(f"unexpected establishment data siren={notice.siren}: {exc}") from exc


def _build_liquidation(
    establishment: dict[str, Any], company: dict[str, Any], notice: BodaccNotice
) -> LiquidationOpportunity:
    siret = clean_text(establishment.get("siret"))
    if not siret:
        raise ExtractionError(f"establishment without siret siren={notice.siren}")

    name = clean_text(company.get("nom_complet")) or clean_text(company.get("nom_raison_sociale")) or notice.company_name
    if not name:
        raise ExtractionError(f"company without name siren={notice.siren}")

    zip_code = clean_text(establishment.get("code_postal")) or None
    department = normalize_department(establishment.get("departement"))
    if department is None and zip_code:
        department = department_from_postcode(zip_code)

    latitude = _coordinate(establishment.get("latitude"))
    longitude = _coordinate(establishment.get("longitude"))
    if latitude is None or longitude is None:
        latitude = longitude = None

    return LiquidationOpportunity(
        external_id=siret,
        source=SOURCE_BODACC,
        label=name,
        address=clean_text(establishment.get("adresse")) or None,
        city=clean_text(establishment.get("libelle_commune")) or None,
        zip_code=zip_code,
        department=department,
        latitude=latitude,
        longitude=longitude,
        opportunity_date=notice.published_on,
        siret=siret,
        company_contact={
            "name": name,
            "legalRepresentative": _legal_representative(company.get("dirigeants")),
            "judgment": notice.judgment,
        },
    )


def _legal_representative(executives: Any) -> str | None:
    if not isinstance(executives, list):
        return None
    for executive in executives:
        if not isinstance(executive, dict):
            continue
        person = " ".join(part for part in (clean_text(executive.get("prenoms")), clean_text(executive.get("nom"))) if part)
        name = person or clean_text(executive.get("denomination"))
        if name:
            return name
    return None


def _coordinate(value: Any) -> float | None:
    text = clean_text(value)
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None
