from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from sourcing_worker.extractors.common import (
    SOURCE_VALUE_ERRORS,
    ExtractionError,
    clean_text,
    normalize_department,
    parse_date,
    parse_int,
    parse_number,
)
from sourcing_worker.schemas.opportunities import SOURCE_NOTAIRES, UNKNOWN_ENERGY_CLASS, ListingOpportunity

_LISTING_URL_RE = re.compile(r"/fr/annonce[^?#]*/(\d+)/?$")
# "Vente Maison 10 pièces - Guingamp - Côtes-d'Armor (22)"
_TITLE_LOCATION_RE = re.compile(r"\s-\s(?P<city>.+?)\s-\s(?P<region>[^(]+?)\s*\((?P<department>\w{2,3})\)\s*$")
_DPE_CLASS_RE = re.compile(r"\bdpe_([a-g])\b", re.IGNORECASE)
_YEAR_RE = re.compile(r"(\d{4})")
_PROPERTY_TYPES = (("maison", "house"), ("appartement", "flat"), ("terrain", "land"))
_TRUTHY = {"oui", "yes", "true", "1"}
_FALSY = {"non", "no", "false", "0"}


def extract_listing_urls(html: str, *, base_url: str) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    urls: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        url = urljoin(base_url, anchor["href"]).rstrip("/")
        if not _LISTING_URL_RE.search(url) or url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


def listing_id_from_url(url: str) -> str | None:
    match = _LISTING_URL_RE.search(url.rstrip("/"))
    return match.group(1) if match else None


def listing_external_id(listing_id: str) -> str:
    return f"notary-{listing_id}"


def extract_listing(html: str, *, url: str) -> ListingOpportunity:
    try:
        return _build_listing(html, url=url)
    except SOURCE_VALUE_ERRORS as exc:
        raise ExtractionError(f"unexpected listing data url={url}: {exc}") from exc


def _build_listing(html: str, *, url: str) -> ListingOpportunity:
    listing_id = listing_id_from_url(url)
    if listing_id is None:
        raise ExtractionError(f"cannot derive listing id from url={url}")

    soup = BeautifulSoup(html, "html.parser")
    title = _text(soup.select_one("[data-titre-annonce]"))
    title_info = parse_title(title)
    if not title or not title_info["city"] or not title_info["department"]:
        raise ExtractionError(f"missing title, city or department for url={url}")

    pictures = _extract_images(soup)
    description_node = soup.select_one("[data-description-contenu] p") or soup.select_one("[data-description-contenu]")
    construction = _YEAR_RE.search(_text(soup.select_one("[data-description-epoqueconstruction]")))

    return ListingOpportunity(
        external_id=listing_external_id(listing_id),
        source=SOURCE_NOTAIRES,
        url=url,
        label=title,
        address=title_info["city"],
        city=title_info["city"],
        department=title_info["department"],
        opportunity_date=parse_date(_text(soup.select_one("[data-description-maj]")))
        or datetime.now(timezone.utc).date(),
        main_picture=pictures[0] if pictures else None,
        pictures=pictures[1:],
        transaction_type=title_info["transaction_type"],
        property_type=title_info["property_type"],
        description=_text(description_node) or None,
        price=parse_number(_text(soup.select_one("[data-prix-prioritaire]"))),
        price_type="FAI",
        square_footage=parse_number(_text(soup.find(id="data-description-surfaceHabitable"))),
        land_area=parse_number(_text(soup.select_one("[data-description-surfaceterrain]"))),
        rooms=parse_int(_text(soup.find(id="data-description-nbPieces.texte"))),
        bedrooms=parse_int(_text(soup.find(id="data-description-nbChambres"))),
        construction_year=int(construction.group(1)) if construction else None,
        parking=_parse_bool(_text(soup.select_one("[data-description-stationnement]"))),
        energy_class=_extract_dpe(soup),
        notary_office=_extract_notary_office(soup),
    )


def parse_title(title: str) -> dict[str, str]:
    words = title.split()
    info = {
        "transaction_type": words[0].upper() if words else "VENTE",
        "property_type": "other",
        "city": "",
        "department": "",
    }
    if len(words) > 1:
        lowered = words[1].lower()
        for marker, property_type in _PROPERTY_TYPES:
            if marker in lowered:
                info["property_type"] = property_type
                break

    match = _TITLE_LOCATION_RE.search(title)
    if match:
        info["city"] = clean_text(match.group("city"))
        info["department"] = normalize_department(match.group("department")) or ""
    return info


def _text(node: Tag | None) -> str:
    if node is None:
        return ""
    return clean_text(node.get_text(" "))


def _parse_bool(text: str) -> bool | None:
    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    return None


def _extract_images(soup: BeautifulSoup) -> list[str]:
    images: list[str] = []
    for img in soup.select("ng-image-slider .custom-image-main img"):
        src = img.get("src")
        if src and not src.startswith("data:image") and src not in images:
            images.append(src)
    return images


def _extract_dpe(soup: BeautifulSoup) -> str:
    container = soup.select_one(".container_dpe_ges_nouveau")
    if container is None:
        return UNKNOWN_ENERGY_CLASS
    match = _DPE_CLASS_RE.search(" ".join(container.get("class") or []))
    if match:
        return match.group(1).upper()
    letter = container.select_one(".lettres[letter]")
    if letter is not None and letter.get("letter"):
        return str(letter["letter"]).upper()
    return UNKNOWN_ENERGY_CLASS


def _extract_notary_office(soup: BeautifulSoup) -> dict[str, Any] | None:
    office: dict[str, Any] = {}
    name = _text(soup.select_one("[data-nom-office] a"))
    if name:
        office["name"] = name
    address = _text(soup.select_one("[data-adresse-office]"))
    if address:
        office["address"] = address
    contact = _text(soup.select_one("[data-contact-nom]"))
    if contact:
        office["contact"] = contact
    phone_node = soup.select_one("[data-contact-tel]")
    if phone_node is not None:
        phone = clean_text(phone_node.get("data-phone")) or _text(phone_node)
        if phone:
            office["phone"] = phone
    return office or None
