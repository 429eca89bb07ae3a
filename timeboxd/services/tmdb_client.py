from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx
from opentelemetry import trace

from timeboxd.pipeline.models import ReleaseType
from timeboxd.services.rate_limiter import Limiter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RETRYABLE_STATUS_CODES = {500, 502, 503, 504}


class UpstreamError(Exception):
    """Base error for catalog API calls."""


class TransportError(UpstreamError):
    """Network failure, timeout or 5xx; retryable at the call site."""


class UpstreamRateLimited(TransportError):
    """The catalog answered 429 despite the local limiter."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamRejectedError(UpstreamError):
    """Permanent 4xx or a payload that could not be parsed."""


@dataclass(frozen=True, slots=True)
class SearchCandidate:
    catalog_id: int
    title: str
    year: int | None = None
    poster_path: str | None = None


@dataclass(frozen=True, slots=True)
class UpstreamRelease:
    release_date: date
    release_type: ReleaseType
    note: str | None = None


class TmdbClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str,
        limiter: Limiter,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self.timeout_seconds = timeout_seconds

    async def search_movie(self, title: str, year: int | None = None) -> list[SearchCandidate]:
        params: dict[str, Any] = {"query": title, "include_adult": "false"}
        if year is not None:
            params["year"] = year

        with tracer.start_as_current_span("tmdb.search") as span:
            span.set_attribute("tmdb.query", title)
            payload = await self._get_json("/search/movie", params=params)

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise UpstreamRejectedError("search response is missing results")

        candidates: list[SearchCandidate] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            catalog_id = item.get("id")
            if not isinstance(catalog_id, int):
                continue
            candidates.append(
                SearchCandidate(
                    catalog_id=catalog_id,
                    title=_as_text(item.get("title")) or _as_text(item.get("original_title")) or title,
                    year=_year_from_date(item.get("release_date")),
                    poster_path=_as_text(item.get("poster_path")),
                )
            )
        return candidates

    async def get_release_dates(self, catalog_id: int) -> dict[str, list[UpstreamRelease]]:
        """Return every country's release table for a film in one call.

        A 404 means the catalog has no such film; that is reported as an empty table.
        """
        with tracer.start_as_current_span("tmdb.release_dates") as span:
            span.set_attribute("tmdb.id", catalog_id)
            payload = await self._get_json(f"/movie/{catalog_id}/release_dates", not_found_ok=True)

        if payload is None:
            return {}
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise UpstreamRejectedError(f"release response for {catalog_id} is missing results")

        table: dict[str, list[UpstreamRelease]] = {}
        for country_block in results:
            if not isinstance(country_block, dict):
                continue
            country = _as_text(country_block.get("iso_3166_1"))
            if not country:
                continue
            releases = table.setdefault(country.upper(), [])
            for raw in country_block.get("release_dates") or []:
                parsed = _parse_release(raw)
                if parsed is not None:
                    releases.append(parsed)
        return table

    async def _get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        not_found_ok: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        query = {"api_key": self.api_key, **(params or {})}
        delay = self.retry_backoff_seconds
        last_error: TransportError | None = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                wait_for = delay
                if isinstance(last_error, UpstreamRateLimited) and last_error.retry_after is not None:
                    wait_for = max(wait_for, last_error.retry_after)
                logger.info("retrying %s in %.2fs after: %s", path, wait_for, last_error)
                await asyncio.sleep(wait_for)
                delay *= 2

            await self.limiter.acquire()
            try:
                response = await self.http.get(url, params=query, timeout=self.timeout_seconds)
            except httpx.TimeoutException as exc:
                last_error = TransportError(f"timed out calling {path}")
                last_error.__cause__ = exc
                continue
            except httpx.HTTPError as exc:
                last_error = TransportError(f"network error calling {path}: {exc}")
                last_error.__cause__ = exc
                continue

            if response.status_code == 429:
                last_error = UpstreamRateLimited(
                    f"rate limited calling {path}",
                    retry_after=_parse_retry_after(response.headers.get("retry-after")),
                )
                continue
            if response.status_code in RETRYABLE_STATUS_CODES:
                last_error = TransportError(f"upstream status {response.status_code} calling {path}")
                continue
            if response.status_code == 404 and not_found_ok:
                return None
            if response.status_code >= 400:
                raise UpstreamRejectedError(f"upstream status {response.status_code} calling {path}")

            try:
                return response.json()
            except ValueError as exc:
                raise UpstreamRejectedError(f"malformed JSON from {path}") from exc

        if last_error is None:
            raise TransportError(f"no attempt made calling {path}")
        raise last_error


def _parse_release(raw: Any) -> UpstreamRelease | None:
    if not isinstance(raw, dict):
        return None
    release_type = ReleaseType.from_code(raw.get("type"))
    if release_type is None:
        return None
    raw_date = _as_text(raw.get("release_date"))
    if not raw_date:
        return None
    try:
        release_date = date.fromisoformat(raw_date[:10])
    except ValueError:
        return None
    return UpstreamRelease(release_date=release_date, release_type=release_type, note=_as_text(raw.get("note")))


def _year_from_date(value: Any) -> int | None:
    text = _as_text(value)
    if not text or len(text) < 4 or not text[:4].isdigit():
        return None
    return int(text[:4])


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
