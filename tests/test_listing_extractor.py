from __future__ import annotations

from datetime import date

import pytest

from sourcing_worker.extractors.common import ExtractionError
from sourcing_worker.extractors.listings import (
    extract_listing,
    extract_listing_urls,
    listing_id_from_url,
    parse_title,
)

BASE_URL = "https://www.immobilier.notaires.fr"
LISTING_URL = f"{BASE_URL}/fr/annonce-immo-vente-maison-guingamp-22/1598765"

LISTING_HTML = """
<html><body>
  <h1 data-titre-annonce>Vente Maison 10 pièces - Guingamp - Côtes-d'Armor (22)</h1>
  <div data-prix-prioritaire>245 000 €</div>
  <div data-description-contenu><p>Grande   maison de caractère</p></div>
  <span data-description-maj>Mise à jour le 14/03/2025</span>
  <span id="data-description-nbPieces.texte">10 pièces</span>
  <span id="data-description-nbChambres">6</span>
  <span id="data-description-surfaceHabitable">210 m²</span>
  <span data-description-surfaceterrain>1 200 m²</span>
  <span data-description-epoqueconstruction>Construit en 1910</span>
  <span data-description-stationnement>Oui</span>
  <ng-image-slider>
    <div class="custom-image-main"><img src="https://media.example/1.jpg"></div>
    <div class="custom-image-main"><img src="data:image/gif;base64,AAAA"></div>
    <div class="custom-image-main"><img src="https://media.example/2.jpg"></div>
  </ng-image-slider>
  <div class="container_dpe_ges_nouveau dpe_f"></div>
  <div data-nom-office><a href="/office">Office notarial du Trégor</a></div>
  <div data-adresse-office>1 place du Centre 22200 Guingamp</div>
  <div data-contact-nom>Maître Le Goff</div>
  <a data-contact-tel data-phone="02 96 00 00 00">Appeler</a>
</body></html>
"""


def test_extract_listing_urls_matches_announcement_links() -> None:
    html = f"""
    <a href="/fr/annonce-immo-vente-maison-guingamp-22/1598765">a</a>
    <a href="{BASE_URL}/fr/annonce-immo-vente-appartement-rennes-35/1600001/">b</a>
    <a href="/fr/annonces-immobilieres-liste?page=2">next</a>
    <a href="/fr/annonce-immo-vente-maison-guingamp-22/1598765">dup</a>
    """

    urls = extract_listing_urls(html, base_url=BASE_URL)

    assert urls == [
        LISTING_URL,
        f"{BASE_URL}/fr/annonce-immo-vente-appartement-rennes-35/1600001",
    ]
    assert listing_id_from_url(urls[1]) == "1600001"


def test_parse_title_reads_transaction_type_city_and_department() -> None:
    info = parse_title("Vente Maison 10 pièces - Guingamp - Côtes-d'Armor (22)")

    assert info == {
        "transaction_type": "VENTE",
        "property_type": "house",
        "city": "Guingamp",
        "department": "22",
    }


def test_extract_listing_reads_detail_page() -> None:
    listing = extract_listing(LISTING_HTML, url=LISTING_URL)

    assert listing.external_id == "notary-1598765"
    assert listing.label == "Vente Maison 10 pièces - Guingamp - Côtes-d'Armor (22)"
    assert listing.city == "Guingamp"
    assert listing.department == "22"
    assert listing.zip_code is None
    assert listing.price == 245000
    assert listing.description == "Grande maison de caractère"
    assert listing.opportunity_date == date(2025, 3, 14)
    assert listing.rooms == 10
    assert listing.bedrooms == 6
    assert listing.square_footage == 210
    assert listing.land_area == 1200
    assert listing.construction_year == 1910
    assert listing.parking is True
    assert listing.energy_class == "F"
    assert listing.main_picture == "https://media.example/1.jpg"
    assert listing.pictures == ["https://media.example/2.jpg"]
    assert listing.notary_office == {
        "name": "Office notarial du Trégor",
        "address": "1 place du Centre 22200 Guingamp",
        "contact": "Maître Le Goff",
        "phone": "02 96 00 00 00",
    }


def test_extract_listing_without_location_in_title_is_rejected() -> None:
    html = '<h1 data-titre-annonce>Vente Maison</h1>'
    with pytest.raises(ExtractionError):
        extract_listing(html, url=LISTING_URL)


def test_extract_listing_turns_unexpected_page_values_into_extraction_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_title(title: str) -> dict[str, str]:
        raise TypeError("title is not text")

    monkeypatch.setattr("sourcing_worker.extractors.listings.parse_title", broken_title)

    with pytest.raises(ExtractionError, match="unexpected listing data"):
        extract_listing(LISTING_HTML, url=LISTING_URL)
