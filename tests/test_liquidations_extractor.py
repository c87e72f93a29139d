from __future__ import annotations

import json
from datetime import date

import pytest

from sourcing_worker.extractors.common import ExtractionError
from sourcing_worker.extractors.liquidations import (
    BodaccNotice,
    build_bodacc_params,
    company_establishments,
    company_for_siren,
    department_from_postcode,
    extract_liquidation,
    extract_siren,
    judgment_nature,
    parse_bodacc_csv,
    unique_notices,
)

NOTICE = BodaccNotice(siren="123456789", published_on=date(2026, 10, 18), company_name="ACME", judgment="Liquidation")


def _person(number: object) -> str:
    return json.dumps({"personne": {"numeroImmatriculation": {"numeroIdentification": number}}})


def test_build_bodacc_params_filters_collective_proceedings_by_department_and_date() -> None:
    params = build_bodacc_params(department="2A", since_date=date(2026, 10, 1))

    assert params["where"] == (
        'familleavis:"collective" AND numerodepartement:"2A" AND dateparution>="2026-10-01"'
    )
    assert params["delimiter"] == ";"
    assert params["limit"] == -1
    assert "listepersonnes" in params["select"].split(",")


def test_parse_bodacc_csv_strips_bom_and_blank_rows() -> None:
    content = "\ufeffdateparution;commercant\n2026-10-18; ACME  SARL \n;\n"

    assert parse_bodacc_csv(content) == [{"dateparution": "2026-10-18", "commercant": "ACME SARL"}]


@pytest.mark.parametrize(
    ("listepersonnes", "expected"),
    [
        (_person("123 456 789"), "123456789"),
        (json.dumps([{"personne": {}}, json.loads(_person(987654321))]), "987654321"),
        (_person("12345"), None),
        ("RCS Rennes 123456789", "123456789"),
        ("", None),
        ("[1, 2]", None),
    ],
)
def test_extract_siren(listepersonnes: str, expected: str | None) -> None:
    assert extract_siren({"listepersonnes": listepersonnes}) == expected


def test_unique_notices_keeps_first_notice_per_siren_and_counts_unreadable_rows() -> None:
    rows = [
        {"listepersonnes": _person("123456789"), "dateparution": "2026-10-18", "commercant": "ACME", "jugement": '{"nature": "Liquidation"}'},
        {"listepersonnes": _person("123456789"), "dateparution": "2026-10-17", "commercant": "ACME", "jugement": ""},
        {"listepersonnes": "not json", "dateparution": "2026-10-17", "commercant": "X", "jugement": ""},
    ]

    notices, unreadable = unique_notices(rows)

    assert notices == [NOTICE]
    assert unreadable == 1


def test_judgment_nature_reads_json_or_keeps_text() -> None:
    assert judgment_nature('{"nature": "Jugement de clôture"}') == "Jugement de clôture"
    assert judgment_nature("Jugement  prononçant") == "Jugement prononçant"
    assert judgment_nature("[]") is None
    assert judgment_nature(None) is None


def test_company_lookup_matches_siren_and_deduplicates_establishments() -> None:
    body = {
        "results": [
            {"siren": "999999999"},
            {
                "siren": "123456789",
                "siege": {"siret": "12345678900011"},
                "matching_etablissements": [{"siret": "12345678900011"}, {"siret": "12345678900029"}, "broken"],
            },
        ]
    }

    company = company_for_siren(body, "123456789")

    assert company is not None
    assert [item["siret"] for item in company_establishments(company)] == ["12345678900011", "12345678900029"]
    assert company_for_siren(body, "111111111") is None
    assert company_for_siren({"results": None}, "123456789") is None


@pytest.mark.parametrize(
    ("postcode", "expected"),
    [("35000", "35"), ("97411", "974"), ("20090", "2A"), ("20600", "2B"), ("3500", None), ("ABCDE", None)],
)
def test_department_from_postcode(postcode: str, expected: str | None) -> None:
    assert department_from_postcode(postcode) == expected


def test_extract_liquidation_builds_opportunity_from_establishment() -> None:
    establishment = {
        "siret": "12345678900011",
        "adresse": "1 rue de la Forge 35000 Rennes",
        "code_postal": "35000",
        "libelle_commune": "RENNES",
        "latitude": "48.11",
        "longitude": "-1.68",
    }
    company = {"nom_complet": "ACME SARL", "dirigeants": [{"denomination": "HOLDING SAS"}]}

    opportunity = extract_liquidation(establishment, company, NOTICE)

    assert opportunity.external_id == opportunity.siret == "12345678900011"
    assert opportunity.source == "bodacc"
    assert opportunity.department == "35"
    assert opportunity.opportunity_date == date(2026, 10, 18)
    assert (opportunity.latitude, opportunity.longitude) == (48.11, -1.68)
    assert opportunity.company_contact == {"name": "ACME SARL", "legalRepresentative": "HOLDING SAS", "judgment": "Liquidation"}


def test_extract_liquidation_without_both_coordinates_needs_geocoding() -> None:
    opportunity = extract_liquidation({"siret": "12345678900011", "latitude": "48.11"}, {}, NOTICE)

    assert opportunity.label == "ACME"
    assert opportunity.is_geocoded is False


def test_extract_liquidation_rejects_establishment_without_siret() -> None:
    with pytest.raises(ExtractionError, match="without siret"):
        extract_liquidation({"adresse": "1 rue"}, {"nom_complet": "ACME"}, NOTICE)


def test_extract_liquidation_turns_unexpected_values_into_extraction_error() -> None:
    with pytest.raises(ExtractionError, match="unexpected establishment data"):
        extract_liquidation({"siret": "12345678900011"}, ["ACME SARL"], NOTICE)  # type: ignore[arg-type]
