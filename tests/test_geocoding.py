from __future__ import annotations

import asyncio

import httpx

from sourcing_worker.core.http import RateLimitedFetcher
from sourcing_worker.schemas.opportunities import Coordinates
from sourcing_worker.services.geocoding import GeocodingFailure, GeocodingService

BASE_URL = "https://api-adresse.test/search/"


async def _no_sleep(_: float) -> None:
    return None


def _service(handler, *, min_score: float = 0.5, max_retries: int = 3) -> GeocodingService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = RateLimitedFetcher(client=client, max_retries=max_retries, sleep=_no_sleep)
    return GeocodingService(fetcher=fetcher, base_url=BASE_URL, min_score=min_score)


def _feature(score: float, lon: float, lat: float, postcode: str = "75011") -> dict:
    return {
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": {"score": score, "postcode": postcode},
    }


def test_geocode_picks_highest_scoring_feature() -> None:
    seen_queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_queries.append(request.url.params["q"])
        return httpx.Response(
            200,
            json={"features": [_feature(0.61, 2.0, 48.0, "75001"), _feature(0.93, 2.38, 48.85, "75011")]},
        )

    result = asyncio.run(_service(handler).geocode("  5 rue des Lilas Paris "))

    assert result == Coordinates(latitude=48.85, longitude=2.38, postcode="75011")
    assert seen_queries == ["5 rue des Lilas Paris"]


def test_geocode_rejects_low_confidence_match() -> None:
    handler = lambda request: httpx.Response(200, json={"features": [_feature(0.31, 2.0, 48.0)]})

    result = asyncio.run(_service(handler).geocode("quelque part"))

    assert isinstance(result, GeocodingFailure)
    assert result.reason == "low_score"


def test_geocode_reports_no_results() -> None:
    result = asyncio.run(_service(lambda request: httpx.Response(200, json={"features": []})).geocode("nowhere"))

    assert result == GeocodingFailure("no_results")


def test_geocode_skips_empty_address_without_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert asyncio.run(_service(handler).geocode("   ")) == GeocodingFailure("empty_address")
    assert asyncio.run(_service(handler).geocode(None)) == GeocodingFailure("empty_address")


def test_geocode_maps_network_and_http_errors() -> None:
    def network_down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    network = asyncio.run(_service(network_down, max_retries=2).geocode("Paris"))
    http = asyncio.run(_service(lambda request: httpx.Response(400)).geocode("Paris"))

    assert isinstance(network, GeocodingFailure) and network.reason == "network_error"
    assert isinstance(http, GeocodingFailure) and http.reason == "http_error"


def test_geocode_reports_malformed_payloads() -> None:
    not_json = asyncio.run(_service(lambda request: httpx.Response(200, text="<html>")).geocode("Paris"))
    no_features = asyncio.run(_service(lambda request: httpx.Response(200, json={"type": "x"})).geocode("Paris"))

    assert isinstance(not_json, GeocodingFailure) and not_json.reason == "malformed_response"
    assert isinstance(no_features, GeocodingFailure) and no_features.reason == "malformed_response"
