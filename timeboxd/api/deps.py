from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

import httpx

from timeboxd.core.config import get_settings
from timeboxd.pipeline.orchestrator import Pipeline
from timeboxd.pipeline.releases import ReleaseFetcher
from timeboxd.pipeline.resolver import Resolver
from timeboxd.pipeline.tracker import ReleaseTracker
from timeboxd.services.letterboxd import LetterboxdClient
from timeboxd.services.rate_limiter import build_limiter
from timeboxd.services.repository import get_repository
from timeboxd.services.tmdb_client import TmdbClient


@lru_cache
def get_http_clients() -> tuple[httpx.AsyncClient, httpx.AsyncClient]:
    settings = get_settings()
    headers = {"User-Agent": settings.user_agent}
    tmdb_http = httpx.AsyncClient(timeout=settings.tmdb_timeout_seconds, headers=headers)
    letterboxd_http = httpx.AsyncClient(
        timeout=settings.letterboxd_timeout_seconds,
        headers=headers,
        follow_redirects=True,
    )
    return tmdb_http, letterboxd_http


@lru_cache
def get_tracker() -> ReleaseTracker:
    settings = get_settings()
    repository = get_repository()
    tmdb_http, letterboxd_http = get_http_clients()

    tmdb = TmdbClient(
        tmdb_http,
        api_key=settings.tmdb_api_key,
        base_url=settings.tmdb_base_url,
        limiter=build_limiter(settings.tmdb_rate_per_second, settings.tmdb_burst),
        max_retries=settings.tmdb_max_retries,
        retry_backoff_seconds=settings.tmdb_retry_backoff_seconds,
        timeout_seconds=settings.tmdb_timeout_seconds,
    )
    watchlist = LetterboxdClient(
        letterboxd_http,
        base_url=settings.letterboxd_base_url,
        delay_ms=settings.letterboxd_delay_ms,
        max_pages=settings.letterboxd_max_pages,
    )
    pipeline = Pipeline(
        Resolver(
            repository,
            tmdb,
            film_ttl=timedelta(hours=settings.film_ttl_hours),
            film_links=watchlist if settings.letterboxd_film_links else None,
        ),
        ReleaseFetcher(
            repository,
            tmdb,
            release_ttl=timedelta(hours=settings.release_ttl_hours),
            fallback_countries=settings.fallback_countries,
        ),
        max_concurrent=settings.max_concurrent,
    )
    return ReleaseTracker(
        watchlist,
        pipeline,
        recency_window_days=settings.recency_window_days,
        watchlist_max_age_years=settings.watchlist_max_age_years,
    )


async def close_http_clients() -> None:
    if get_http_clients.cache_info().currsize == 0:
        return
    for client in get_http_clients():
        await client.aclose()
    get_http_clients.cache_clear()
    get_tracker.cache_clear()
