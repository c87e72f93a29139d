from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sourcing_worker.core.http import FetchError, RateLimitedFetcher
from sourcing_worker.schemas.opportunities import Coordinates

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommuneInfo:
    insee_code: str
    name: str | None
    postal_code: str | None
    coordinates: Coordinates | None
    mairie_contact: dict[str, Any] | None


class CommuneDirectory:
    """Commune centre, postal code and town-hall contact, keyed by INSEE code.

    Lookups are cached for the lifetime of the directory, failures included,
    so a death file touching the same commune thousands of times costs at
    most two requests per commune.
    """

    def __init__(self, *, fetcher: RateLimitedFetcher, geo_api_base_url: str, annuaire_base_url: str) -> None:
        self.fetcher = fetcher
        self.geo_api_base_url = geo_api_base_url.rstrip("/")
        self.annuaire_base_url = annuaire_base_url.rstrip("/")
        self._cache: dict[str, CommuneInfo | None] = {}

    def clear(self) -> None:
        self._cache.clear()

    async def lookup(self, insee_code: str) -> CommuneInfo | None:
        if insee_code in self._cache:
            return self._cache[insee_code]

        info: CommuneInfo | None = None
        try:
            commune = await self.fetcher.get_json(
                f"{self.geo_api_base_url}/communes/{insee_code}",
                params={"fields": "nom,centre,codesPostaux"},
            )
        except FetchError as exc:
            logger.warning("commune lookup failed insee_code=%s error=%s", insee_code, exc)
        else:
            if not isinstance(commune, dict):
                logger.warning("commune lookup returned unexpected payload insee_code=%s", insee_code)
                self._cache[insee_code] = None
                return None
            info = CommuneInfo(
                insee_code=insee_code,
                name=commune.get("nom"),
                postal_code=next(iter(commune.get("codesPostaux") or []), None),
                coordinates=_centre_coordinates(commune.get("centre")),
                mairie_contact=await self._fetch_mairie_contact(insee_code),
            )

        self._cache[insee_code] = info
        return info

    async def _fetch_mairie_contact(self, insee_code: str) -> dict[str, Any] | None:
        try:
            payload = await self.fetcher.get_json(
                f"{self.annuaire_base_url}/records",
                params={
                    "where": f"code_insee_commune='{insee_code}' AND pivot LIKE 'mairie%'",
                    "limit": 1,
                },
            )
        except FetchError as exc:
            logger.warning("mairie lookup failed insee_code=%s error=%s", insee_code, exc)
            return None

        results = payload.get("results") if isinstance(payload, dict) else None
        if not results:
            logger.info("no mairie found insee_code=%s", insee_code)
            return None
        mairie = results[0]
        return {
            "name": mairie.get("nom") or "Mairie",
            "phone": mairie.get("telephone") or mairie.get("telephone_accueil") or "",
            "email": mairie.get("email") or mairie.get("adresse_courriel") or "",
        }


def _centre_coordinates(centre: Any) -> Coordinates | None:
    if not isinstance(centre, dict):
        return None
    coordinates = centre.get("coordinates")
    if not isinstance(coordinates, list) or len(coordinates) < 2:
        return None
    longitude, latitude = coordinates[:2]
    return Coordinates(latitude=float(latitude), longitude=float(longitude))
