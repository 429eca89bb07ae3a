from __future__ import annotations

import asyncio
from datetime import date
from typing import Any

import httpx
import pytest

from timeboxd.pipeline.models import ReleaseType
from timeboxd.services.tmdb_client import (
    TmdbClient,
    TransportError,
    UpstreamRateLimited,
    UpstreamRejectedError,
)


class CountingLimiter:
    def __init__(self) -> None:
        self.permits = 0

    async def acquire(self) -> None:
        self.permits += 1


def _run_with_client(handler, call, limiter: CountingLimiter | None = None, max_retries: int = 2) -> Any:
    async def run() -> Any:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as http:
            client = TmdbClient(
                http,
                api_key="test-key",
                base_url="https://api.example.test/3/",
                limiter=limiter or CountingLimiter(),
                max_retries=max_retries,
                retry_backoff_seconds=0.0,
            )
            return await call(client)

    return asyncio.run(run())


def test_search_movie_parses_candidates() -> None:
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "results": [
                    {"id": 1064213, "title": "Anora", "release_date": "2024-10-18", "poster_path": "/anora.jpg"},
                    {"id": 2, "title": "", "original_title": "Anora (short)", "release_date": ""},
                    {"title": "missing id"},
                ]
            },
            request=request,
        )

    candidates = _run_with_client(handler, lambda client: client.search_movie("Anora", 2024))

    assert seen["path"] == "/3/search/movie"
    assert seen["params"]["query"] == "Anora"
    assert seen["params"]["year"] == "2024"
    assert seen["params"]["api_key"] == "test-key"
    assert [(c.catalog_id, c.title, c.year, c.poster_path) for c in candidates] == [
        (1064213, "Anora", 2024, "/anora.jpg"),
        (2, "Anora (short)", None, None),
    ]


def test_get_release_dates_returns_every_country() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/3/movie/42/release_dates"
        return httpx.Response(
            200,
            json={
                "results": [
                    {
                        "iso_3166_1": "us",
                        "release_dates": [
                            {"release_date": "2026-05-01T00:00:00.000Z", "type": 3, "note": "  "},
                            {"release_date": "2026-06-15T00:00:00.000Z", "type": 4, "note": "VOD"},
                            {"release_date": "2026-06-20T00:00:00.000Z", "type": 9},
                            {"release_date": "not-a-date", "type": 3},
                        ],
                    },
                    {"iso_3166_1": "FR", "release_dates": [{"release_date": "2026-05-20", "type": 1}]},
                ]
            },
            request=request,
        )

    table = _run_with_client(handler, lambda client: client.get_release_dates(42))

    assert sorted(table) == ["FR", "US"]
    assert [(r.release_date, r.release_type, r.note) for r in table["US"]] == [
        (date(2026, 5, 1), ReleaseType.THEATRICAL, None),
        (date(2026, 6, 15), ReleaseType.DIGITAL, "VOD"),
    ]
    assert table["FR"][0].release_type == ReleaseType.PREMIERE


def test_get_release_dates_treats_404_as_no_releases() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"status_code": 34}, request=request)

    assert _run_with_client(handler, lambda client: client.get_release_dates(9)) == {}


def test_retries_server_errors_and_takes_a_permit_per_attempt() -> None:
    limiter = CountingLimiter()
    attempts = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(502, request=request)
        return httpx.Response(200, json={"results": []}, request=request)

    assert _run_with_client(handler, lambda client: client.search_movie("Anora"), limiter=limiter) == []
    assert attempts["count"] == 2
    assert limiter.permits == 2


def test_persistent_server_errors_raise_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    with pytest.raises(TransportError):
        _run_with_client(handler, lambda client: client.get_release_dates(1), max_retries=1)


def test_timeouts_raise_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(TransportError, match="timed out"):
        _run_with_client(handler, lambda client: client.search_movie("Anora"), max_retries=0)


def test_upstream_rate_limit_surfaces_as_transport_error_after_retries() -> None:
    attempts = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(429, headers={"Retry-After": "0"}, request=request)

    with pytest.raises(UpstreamRateLimited) as exc_info:
        _run_with_client(handler, lambda client: client.search_movie("Anora"), max_retries=2)

    assert isinstance(exc_info.value, TransportError)
    assert attempts["count"] == 3


def test_client_errors_are_not_retried() -> None:
    attempts = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(401, json={"status_message": "Invalid API key"}, request=request)

    with pytest.raises(UpstreamRejectedError):
        _run_with_client(handler, lambda client: client.search_movie("Anora"))

    assert attempts["count"] == 1


def test_malformed_payload_is_rejected() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>", request=request)

    with pytest.raises(UpstreamRejectedError):
        _run_with_client(handler, lambda client: client.search_movie("Anora"))


def test_negative_retry_budget_still_makes_one_attempt() -> None:
    attempts = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(502, request=request)

    with pytest.raises(TransportError, match="upstream status 502"):
        _run_with_client(handler, lambda client: client.search_movie("Anora"), max_retries=-3)

    assert attempts["count"] == 1


def test_exhausted_attempts_raise_transport_error_instead_of_returning() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def call(client: TmdbClient) -> Any:
        client.max_retries = -1
        return await client.search_movie("Anora")

    with pytest.raises(TransportError, match="no attempt made"):
        _run_with_client(handler, call)
