from __future__ import annotations

import json
from datetime import date, datetime, timezone

import pytest

from sourcing_worker.extractors.auctions import (
    auction_external_id,
    extract_auction,
    extract_lot_urls,
    lot_id_from_url,
)
from sourcing_worker.extractors.common import ExtractionError

SITE_URL = "https://www.encheres-publiques.com"
LOT_URL = f"{SITE_URL}/encheres/immobilier/maisons/paris-75/maison-de-4-pieces_123456"


def _lot_page(lot_overrides: dict | None = None, *, with_address: bool = True) -> str:
    lot = {
        "__typename": "Lot",
        "nom": "Maison de 4 pièces situé à Paris 15e",
        "description": "Belle maison avec jardin",
        "offre_actuelle": 150000,
        "estimation_basse": 140000,
        "estimation_haute": "180 000 €",
        "prix_plancher": 0,
        "critere_consommation_energetique": "E",
        "critere_surface_habitable": "92,5",
        "critere_nombre_de_pieces": 4,
        "critere_occupation_du_bien": "Loué",
        "fermeture_reelle_date": None,
        "encheres_fermeture_date": 1767225600,
        "photo": "/images/main.jpg",
        "photos": [{"src": "/images/main.jpg"}, {"src": "/images/kitchen.jpg"}],
        "organisateur": {"nom": "Tribunal judiciaire de Paris"},
        "adresse_physique": {"_ref": "Adresse:1"},
    }
    lot.update(lot_overrides or {})
    apollo = {"Lot:123456": lot}
    if with_address:
        apollo["Adresse:1"] = {
            "__typename": "Adresse",
            "text": "12 rue  de Vaugirard",
            "ville": "Paris",
            "departement": "Paris (75)",
            "coords": [2.3, 48.84],
        }
    next_data = {
        "query": {"lot_id": "123456", "sous_categorie": "maisons"},
        "props": {"pageProps": {"apolloState": {"data": apollo}}},
    }
    return f'<html><body><script id="__NEXT_DATA__" type="application/json">{json.dumps(next_data)}</script></body></html>'


def test_extract_lot_urls_keeps_unique_lot_links_only() -> None:
    html = """
    <a href="/encheres/immobilier/maisons/paris-75/maison_101">one</a>
    <a href="/encheres/immobilier/maisons/paris-75/maison_101">dup</a>
    <a href="/encheres/immobilier/appartements/lyon-69/appartement_202/">two</a>
    <a href="/encheres/immobilier/maisons/paris-75/">category</a>
    <a href="/encheres/vehicules/voiture_303">vehicle</a>
    """

    urls = extract_lot_urls(html, base_url=SITE_URL)

    assert urls == [
        f"{SITE_URL}/encheres/immobilier/maisons/paris-75/maison_101",
        f"{SITE_URL}/encheres/immobilier/appartements/lyon-69/appartement_202/",
    ]
    assert [lot_id_from_url(url) for url in urls] == ["101", "202"]


def test_extract_auction_reads_lot_and_address_from_next_data() -> None:
    auction = extract_auction(_lot_page(), url=LOT_URL, site_url=SITE_URL)

    assert auction.external_id == auction_external_id("123456") == "encheres-publiques-123456"
    assert auction.label == "Maison de 4 pièces"
    assert auction.address == "12 rue de Vaugirard"
    assert auction.city == "Paris"
    assert auction.department == "75"
    assert (auction.latitude, auction.longitude) == (48.84, 2.3)
    assert auction.opportunity_date == date(2026, 1, 1)
    assert auction.property_type == "house"
    assert auction.current_price == 150000
    assert auction.upper_estimate == 180000
    assert auction.reserve_price is None
    assert auction.square_footage == 92.5
    assert auction.rooms == 4
    assert auction.energy_class == "E"
    assert auction.occupation_status == "rented"
    assert auction.auction_venue == "Tribunal judiciaire de Paris"
    assert auction.main_picture == f"{SITE_URL}/images/main.jpg"
    assert auction.pictures == [f"{SITE_URL}/images/kitchen.jpg"]


def test_extract_auction_falls_back_to_url_location_without_address() -> None:
    auction = extract_auction(
        _lot_page({"adresse_physique": None, "encheres_fermeture_date": None}, with_address=False),
        url=LOT_URL,
        site_url=SITE_URL,
    )

    assert auction.city == "paris"
    assert auction.department == "75"
    assert auction.address == "paris 15e"
    assert auction.is_geocoded is False
    assert auction.opportunity_date == datetime.now(timezone.utc).date()


def test_extract_auction_rejects_page_without_next_data() -> None:
    with pytest.raises(ExtractionError):
        extract_auction("<html><body>maintenance</body></html>", url=LOT_URL, site_url=SITE_URL)


def test_extract_auction_rejects_unknown_lot() -> None:
    html = _lot_page().replace('"lot_id": "123456"', '"lot_id": "999"')
    with pytest.raises(ExtractionError, match="no lot data"):
        extract_auction(html, url=LOT_URL, site_url=SITE_URL)


def test_extract_auction_turns_unexpected_lot_values_into_extraction_error() -> None:
    with pytest.raises(ExtractionError, match="unexpected lot data"):
        extract_auction(_lot_page({"nom": 42}), url=LOT_URL, site_url=SITE_URL)


@pytest.mark.parametrize("coords", [[None, None], ["2.3"], "2.3,48.84", [2.3, "north"]])
def test_extract_auction_keeps_lot_with_unusable_coordinates(coords: object) -> None:
    html = _lot_page().replace('"coords": [2.3, 48.84]', f'"coords": {json.dumps(coords)}')

    auction = extract_auction(html, url=LOT_URL, site_url=SITE_URL)

    assert auction.external_id == auction_external_id("123456")
    assert auction.is_geocoded is False
    assert auction.city == "Paris"
