from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import date

from sourcing_worker.extractors.common import SOURCE_VALUE_ERRORS, ExtractionError
from sourcing_worker.schemas.opportunities import SOURCE_INSEE, SuccessionOpportunity

logger = logging.getLogger(__name__)

INSEE_COLUMNS = (
    "nomprenom",
    "sexe",
    "datenaiss",
    "lieunaiss",
    "commnaiss",
    "paysnaiss",
    "datedeces",
    "lieudeces",
    "actedeces",
)
OVERSEAS_PREFIXES = ("971", "972", "973", "974", "976")


@dataclass(slots=True)
class InseeDeathRow:
    nomprenom: str
    sexe: str
    datenaiss: str
    lieunaiss: str
    commnaiss: str
    paysnaiss: str
    datedeces: str
    lieudeces: str
    actedeces: str


@dataclass(slots=True)
class CsvParseStats:
    total_records: int = 0
    accepted: int = 0
    filtered_by_age: int = 0
    malformed: int = 0


def parse_insee_csv(content: str, *, min_age: int) -> tuple[list[InseeDeathRow], CsvParseStats]:
    """Parse an INSEE death file (``;``-separated, 9 columns, optional header).

    Rows with a wrong column count or missing name/dates/place are dropped as
    malformed; rows whose age at death is below ``min_age`` are filtered.
    """
    rows: list[InseeDeathRow] = []
    stats = CsvParseStats()
    reader = csv.reader(io.StringIO(content), delimiter=";", quotechar='"')

    for index, raw in enumerate(reader):
        if not raw or all(not cell.strip() for cell in raw):
            continue
        if index == 0 and "nomprenom" in raw[0].lower():
            continue
        stats.total_records += 1
        if len(raw) != len(INSEE_COLUMNS):
            stats.malformed += 1
            logger.debug("insee row has wrong column count expected=%s actual=%s", len(INSEE_COLUMNS), len(raw))
            continue

        row = InseeDeathRow(*(cell.strip() for cell in raw))
        if not row.nomprenom or not row.datenaiss or not row.datedeces or not row.lieudeces:
            stats.malformed += 1
            continue
        if age_at_death(row.datenaiss, row.datedeces) < min_age:
            stats.filtered_by_age += 1
            continue
        rows.append(row)
        stats.accepted += 1

    return rows, stats


def age_at_death(birth: str, death: str) -> int:
    if len(birth) != 8 or len(death) != 8 or not birth.isdigit() or not death.isdigit():
        return 0
    birth_year, birth_month, birth_day = int(birth[:4]), int(birth[4:6]), int(birth[6:])
    death_year, death_month, death_day = int(death[:4]), int(death[4:6]), int(death[6:])
    age = death_year - birth_year
    if (death_month, death_day) < (birth_month, birth_day):
        age -= 1
    return max(0, age)


def split_person_name(nomprenom: str) -> tuple[str, str]:
    """``"DUPONT*JEAN PIERRE/"`` -> ``("Jean Pierre", "Dupont")``."""
    last, _, first = nomprenom.rstrip("/").partition("*")
    return first.strip().title(), last.strip().title()


def department_from_insee_code(code: str) -> str | None:
    code = code.strip().upper()
    if len(code) < 2:
        return None
    if code.startswith(OVERSEAS_PREFIXES):
        return code[:3]
    if code.startswith(("2A", "2B")):
        return code[:2]
    prefix = code[:2]
    return prefix if prefix.isdigit() else None


def parse_insee_date(value: str) -> date:
    if len(value) != 8 or not value.isdigit():
        raise ExtractionError(f"invalid INSEE date: {value!r}")
    try:
        return date(int(value[:4]), int(value[4:6]), int(value[6:]))
    except ValueError as exc:
        raise ExtractionError(f"invalid INSEE date: {value!r}") from exc


def succession_external_id(row: InseeDeathRow) -> str:
    return f"{row.lieudeces}_{row.datedeces}_{row.actedeces}"


def extract_succession(row: InseeDeathRow) -> SuccessionOpportunity:
    try:
        return _build_succession(row)
    except SOURCE_VALUE_ERRORS as exc:
        raise ExtractionError(f"unexpected INSEE row id={succession_external_id(row)}: {exc}") from exc


def _build_succession(row: InseeDeathRow) -> SuccessionOpportunity:
    department = department_from_insee_code(row.lieudeces)
    if department is None:
        raise ExtractionError(f"invalid INSEE commune code: {row.lieudeces!r}")
    first_name, last_name = split_person_name(row.nomprenom)
    try:
        birth_date: date | None = parse_insee_date(row.datenaiss)
    except ExtractionError:
        # Birth dates often carry 00 for an unknown month or day.
        birth_date = None

    return SuccessionOpportunity(
        external_id=succession_external_id(row),
        source=SOURCE_INSEE,
        label=f"{first_name} {last_name}".strip(),
        department=department,
        opportunity_date=parse_insee_date(row.datedeces),
        first_name=first_name,
        last_name=last_name,
        birth_date=birth_date,
    )
