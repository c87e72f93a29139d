from __future__ import annotations

import json
import re
from datetime import date, datetime, timezone
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from sourcing_worker.extractors.common import (
    SOURCE_VALUE_ERRORS,
    ExtractionError,
    clean_text,
    normalize_department,
    parse_int,
    parse_number,
)
from sourcing_worker.schemas.opportunities import (
    SOURCE_ENCHERES_PUBLIQUES,
    UNKNOWN_ENERGY_CLASS,
    AuctionOpportunity,
)

LOT_PATH_MARKER = "/encheres/immobilier/"
_LOT_ID_RE = re.compile(r"_(\d+)/?(?:[?#].*)?$")
_URL_LOCATION_RE = re.compile(r"/([a-z-]+)-(\d{2,3}|2a|2b)/")
_DEPARTMENT_RE = re.compile(r"\b(2[AB]|97\d|\d{2})\b")
_DATE_FIELDS = ("fermeture_reelle_date", "encheres_fermeture_date", "fermeture_date")
_OCCUPATION_STATUSES = {
    "Occupé": "occupied_by_owner",
    "Loué": "rented",
    "Libre de toute occupation": "free",
}


def extract_lot_urls(html: str, *, base_url: str) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    urls: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        url = urljoin(base_url, anchor["href"])
        if LOT_PATH_MARKER not in url or lot_id_from_url(url) is None:
            continue
        if url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


def lot_id_from_url(url: str) -> str | None:
    match = _LOT_ID_RE.search(url)
    return match.group(1) if match else None


def auction_external_id(lot_id: str) -> str:
    return f"{SOURCE_ENCHERES_PUBLIQUES}-{lot_id}"


def parse_next_data(html: str) -> dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None or not script.string:
        raise ExtractionError("no __NEXT_DATA__ found on page")
    try:
        payload = json.loads(script.string)
    except json.JSONDecodeError as exc:
        raise ExtractionError("__NEXT_DATA__ is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ExtractionError("__NEXT_DATA__ is not an object")
    return payload


def extract_auction(html: str, *, url: str, site_url: str) -> AuctionOpportunity:
    try:
        return _build_auction(html, url=url, site_url=site_url)
    except SOURCE_VALUE_ERRORS as exc:
        raise ExtractionError(f"unexpected lot data url={url}: {exc}") from exc


def _build_auction(html: str, *, url: str, site_url: str) -> AuctionOpportunity:
    next_data = parse_next_data(html)
    query = next_data.get("query") or {}
    lot_id = query.get("lot_id")
    if not lot_id:
        raise ExtractionError("no lot_id found in query parameters")

    apollo_state = (((next_data.get("props") or {}).get("pageProps") or {}).get("apolloState") or {}).get("data") or {}
    lot = apollo_state.get(f"Lot:{lot_id}")
    if not isinstance(lot, dict) or lot.get("__typename") != "Lot":
        raise ExtractionError(f"no lot data found for id={lot_id}")

    location = _extract_location(lot, apollo_state, url)
    main_picture, pictures = _extract_pictures(lot, site_url)
    organiser = lot.get("organisateur") or {}

    return AuctionOpportunity(
        external_id=auction_external_id(str(lot_id)),
        source=SOURCE_ENCHERES_PUBLIQUES,
        url=url,
        label=_title_from_name(lot.get("nom") or ""),
        address=location["address"],
        city=location["city"],
        department=location["department"],
        latitude=location["latitude"],
        longitude=location["longitude"],
        opportunity_date=_auction_date(lot),
        main_picture=main_picture,
        pictures=pictures,
        property_type=_property_type(query.get("sous_categorie") or ""),
        description=lot.get("description") or None,
        current_price=parse_number(lot.get("offre_actuelle")),
        lower_estimate=parse_number(lot.get("estimation_basse")),
        upper_estimate=parse_number(lot.get("estimation_haute")),
        reserve_price=parse_number(lot.get("prix_plancher")),
        energy_class=(lot.get("critere_consommation_energetique") or UNKNOWN_ENERGY_CLASS),
        square_footage=parse_number(lot.get("critere_surface_habitable")),
        rooms=parse_int(lot.get("critere_nombre_de_pieces")),
        auction_venue=organiser.get("nom") or None,
        occupation_status=_OCCUPATION_STATUSES.get(lot.get("critere_occupation_du_bien") or "", "unknown"),
    )


def _title_from_name(name: str) -> str:
    if not name:
        return "Bien immobilier"
    index = name.lower().find("situé")
    if index > 0:
        return name[:index].strip()
    return name.strip()


def _auction_date(lot: dict[str, Any]) -> date:
    for field_name in _DATE_FIELDS:
        raw = lot.get(field_name)
        if not raw:
            continue
        try:
            return datetime.fromtimestamp(float(raw), tz=timezone.utc).date()
        except (TypeError, ValueError, OverflowError, OSError):
            continue
    return datetime.now(timezone.utc).date()


def _property_type(category: str) -> str:
    lowered = category.lower()
    if "maison" in lowered:
        return "house"
    if "appartement" in lowered:
        return "flat"
    if "terrain" in lowered:
        return "land"
    return "other"


def _extract_pictures(lot: dict[str, Any], site_url: str) -> tuple[str | None, list[str]]:
    main = lot.get("photo") or None
    sources = [photo.get("src") for photo in lot.get("photos") or [] if isinstance(photo, dict)]
    pictures = [urljoin(site_url, src) for src in sources if src and src != main]
    return (urljoin(site_url, main) if main else None), pictures


def _extract_location(lot: dict[str, Any], apollo_state: dict[str, Any], url: str) -> dict[str, Any]:
    reference = (lot.get("adresse_physique") or {}).get("_ref") or (lot.get("adresse") or {}).get("_ref")
    address = apollo_state.get(reference) if reference else None
    url_city, url_department = _location_from_url(url)

    if isinstance(address, dict) and address.get("__typename") == "Adresse":
        longitude, latitude = _coordinates(address.get("coords"))
        department_match = _DEPARTMENT_RE.search(str(address.get("departement") or ""))
        return {
            "address": clean_text(address.get("text")) or None,
            "city": clean_text(address.get("ville")) or url_city,
            "department": normalize_department(department_match.group(1)) if department_match else url_department,
            "latitude": latitude,
            "longitude": longitude,
        }

    return {
        "address": _address_from_name(lot.get("nom") or ""),
        "city": url_city,
        "department": url_department,
        "latitude": None,
        "longitude": None,
    }


def _coordinates(coords: Any) -> tuple[float | None, float | None]:
    """``[lon, lat]`` as published; anything else yields no coordinates."""
    if not isinstance(coords, list) or len(coords) != 2:
        return None, None
    try:
        longitude, latitude = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        return None, None
    return longitude, latitude


def _location_from_url(url: str) -> tuple[str | None, str | None]:
    match = _URL_LOCATION_RE.search(url)
    if not match:
        return None, None
    return match.group(1).replace("-", " "), normalize_department(match.group(2))


def _address_from_name(name: str) -> str | None:
    lowered = name.lower()
    for separator in ("située à", "situé à", "située au", "situé au", "situées", "située", "situés", "situé"):
        index = lowered.find(separator)
        if index > 0:
            text = lowered[index + len(separator) :].replace("-", " ").replace(".", "")
            return clean_text(text.replace(" à ", " ")) or None
    return None
