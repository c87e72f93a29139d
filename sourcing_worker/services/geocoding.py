from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sourcing_worker.core.http import FetchError, InvalidResponseError, RateLimitedFetcher
from sourcing_worker.schemas.opportunities import Coordinates

logger = logging.getLogger(__name__)

GEOCODING_FAILURE_REASONS = {
    "empty_address",
    "network_error",
    "http_error",
    "no_results",
    "low_score",
    "malformed_response",
}


@dataclass(slots=True, frozen=True)
class GeocodingFailure:
    reason: str
    detail: str | None = None


class GeocodingService:
    """Resolves free-text French addresses through the BAN search API.

    ``geocode`` never raises: every failure is returned as a
    ``GeocodingFailure`` so callers can keep the record ungeocoded.
    """

    def __init__(self, *, fetcher: RateLimitedFetcher, base_url: str, min_score: float = 0.5) -> None:
        self.fetcher = fetcher
        self.base_url = base_url
        self.min_score = min_score

    async def geocode(self, address: str | None) -> Coordinates | GeocodingFailure:
        query = (address or "").strip()
        if not query:
            return GeocodingFailure("empty_address")

        try:
            payload = await self.fetcher.get_json(self.base_url, params={"q": query, "limit": 5})
        except InvalidResponseError as exc:
            logger.warning("geocoding response is not JSON address=%s", query)
            return GeocodingFailure("malformed_response", str(exc))
        except FetchError as exc:
            reason = "network_error" if exc.status_code is None else "http_error"
            logger.warning("geocoding request failed address=%s reason=%s error=%s", query, reason, exc)
            return GeocodingFailure(reason, str(exc))

        return self._select_best(query, payload)

    def _select_best(self, query: str, payload: Any) -> Coordinates | GeocodingFailure:
        features = payload.get("features") if isinstance(payload, dict) else None
        if not isinstance(features, list):
            logger.warning("geocoding response has no feature list address=%s", query)
            return GeocodingFailure("malformed_response")
        if not features:
            logger.warning("geocoding found no results address=%s", query)
            return GeocodingFailure("no_results")

        try:
            best = max(features, key=lambda feature: float(feature["properties"]["score"]))
            score = float(best["properties"]["score"])
            longitude, latitude = best["geometry"]["coordinates"][:2]
            coordinates = Coordinates(
                latitude=float(latitude),
                longitude=float(longitude),
                postcode=best["properties"].get("postcode"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("geocoding response is malformed address=%s error=%s", query, exc)
            return GeocodingFailure("malformed_response", str(exc))

        if score < self.min_score:
            logger.warning("geocoding confidence too low address=%s score=%.2f", query, score)
            return GeocodingFailure("low_score", f"score={score:.2f}")

        logger.debug("geocoded address=%s lat=%s lon=%s score=%.2f", query, coordinates.latitude, coordinates.longitude, score)
        return coordinates
