from __future__ import annotations

import asyncio

import httpx

from sourcing_worker.core.http import RateLimitedFetcher
from sourcing_worker.services.communes import CommuneDirectory


async def _no_sleep(_: float) -> None:
    return None


def _directory(handler) -> CommuneDirectory:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = RateLimitedFetcher(client=client, sleep=_no_sleep)
    return CommuneDirectory(
        fetcher=fetcher,
        geo_api_base_url="https://geo.test",
        annuaire_base_url="https://annuaire.test/api/",
    )


def test_lookup_combines_commune_centre_and_mairie_contact_and_caches() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.host == "geo.test":
            return httpx.Response(
                200,
                json={
                    "nom": "Guingamp",
                    "codesPostaux": ["22200"],
                    "centre": {"type": "Point", "coordinates": [-3.15, 48.56]},
                },
            )
        return httpx.Response(
            200,
            json={"results": [{"nom": "Mairie - Guingamp", "telephone": "02 96 40 64 40", "adresse_courriel": "m@g.fr"}]},
        )

    directory = _directory(handler)

    async def lookup_twice():
        return await directory.lookup("22070"), await directory.lookup("22070")

    first, second = asyncio.run(lookup_twice())

    assert first is second
    assert first is not None
    assert first.name == "Guingamp"
    assert first.postal_code == "22200"
    assert first.coordinates is not None
    assert (first.coordinates.latitude, first.coordinates.longitude) == (48.56, -3.15)
    assert first.mairie_contact == {"name": "Mairie - Guingamp", "phone": "02 96 40 64 40", "email": "m@g.fr"}
    assert len(requests) == 2
    assert requests[0].url.path == "/communes/22070"
    assert requests[1].url.path == "/api/records"
    assert "code_insee_commune='22070'" in requests[1].url.params["where"]


def test_failed_lookup_is_cached_as_missing() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404)

    directory = _directory(handler)

    async def lookup_twice():
        return await directory.lookup("99999"), await directory.lookup("99999")

    assert asyncio.run(lookup_twice()) == (None, None)
    assert calls == 1

    directory.clear()
    assert asyncio.run(directory.lookup("99999")) is None
    assert calls == 2


def test_commune_without_mairie_keeps_location() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "geo.test":
            return httpx.Response(200, json={"nom": "Ile-Molène", "codesPostaux": [], "centre": None})
        return httpx.Response(200, json={"results": []})

    info = asyncio.run(_directory(handler).lookup("29084"))

    assert info is not None
    assert info.name == "Ile-Molène"
    assert info.postal_code is None
    assert info.coordinates is None
    assert info.mairie_contact is None
