from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Protocol

from rapidfuzz import fuzz

from timeboxd.core.freshness import is_fresh, utc_now
from timeboxd.pipeline.models import FilmIdentity, WatchlistEntry
from timeboxd.services.letterboxd import WatchlistError
from timeboxd.services.repository import CacheRepository
from timeboxd.services.tmdb_client import SearchCandidate

logger = logging.getLogger(__name__)


class CatalogSearch(Protocol):
    async def search_movie(self, title: str, year: int | None = None) -> list[SearchCandidate]: ...


class FilmLinkSource(Protocol):
    async def fetch_film_catalog_id(self, source_slug: str) -> int | None: ...


def select_candidate(
    candidates: Sequence[SearchCandidate],
    title: str,
    year: int | None,
) -> SearchCandidate | None:
    """Exact year match first, then closest title, then lowest catalog id."""
    if not candidates:
        return None
    wanted = title.casefold()

    def rank(candidate: SearchCandidate) -> tuple[int, float, int]:
        year_miss = 0 if year is not None and candidate.year == year else 1
        similarity = fuzz.token_set_ratio(wanted, candidate.title.casefold())
        return (year_miss, -similarity, candidate.catalog_id)

    return min(candidates, key=rank)


class Resolver:
    def __init__(
        self,
        repository: CacheRepository,
        catalog: CatalogSearch,
        *,
        film_ttl: timedelta,
        film_links: FilmLinkSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.film_ttl = film_ttl
        self.film_links = film_links
        self.clock = clock

    async def resolve(self, entry: WatchlistEntry) -> FilmIdentity:
        """Return the cached, linked or searched identity for a watchlist entry.

        A catalog id linked from the film page wins over a title search. An
        identity with ``catalog_id=None`` is the negative-cache outcome. Only
        upstream transport and parse errors propagate.
        """
        cached = await self.repository.get_film(entry.source_slug)
        if cached is not None and is_fresh(cached.updated_at, self.film_ttl, self.clock()):
            return cached

        linked_id = await self._linked_catalog_id(entry)
        if linked_id is not None:
            identity = FilmIdentity(
                source_slug=entry.source_slug,
                catalog_id=linked_id,
                title=entry.title_hint,
                year=entry.year_hint,
                poster_path=cached.poster_path if cached is not None and cached.catalog_id == linked_id else None,
            )
        else:
            identity = await self._search(entry)
        return await self.repository.upsert_film(identity, updated_at=self.clock())

    async def _linked_catalog_id(self, entry: WatchlistEntry) -> int | None:
        if self.film_links is None:
            return None
        try:
            return await self.film_links.fetch_film_catalog_id(entry.source_slug)
        except WatchlistError as exc:
            logger.warning("film page lookup failed slug=%s, searching instead: %s", entry.source_slug, exc)
            return None

    async def _search(self, entry: WatchlistEntry) -> FilmIdentity:
        candidates = await self.catalog.search_movie(entry.title_hint, entry.year_hint)
        if not candidates and entry.year_hint is not None:
            candidates = await self.catalog.search_movie(entry.title_hint, None)

        best = select_candidate(candidates, entry.title_hint, entry.year_hint)
        if best is None:
            logger.info("no catalog match slug=%s title=%r year=%s", entry.source_slug, entry.title_hint, entry.year_hint)
            return FilmIdentity(
                source_slug=entry.source_slug,
                catalog_id=None,
                title=entry.title_hint,
                year=entry.year_hint,
            )
        return FilmIdentity(
            source_slug=entry.source_slug,
            catalog_id=best.catalog_id,
            title=best.title,
            year=best.year if best.year is not None else entry.year_hint,
            poster_path=best.poster_path,
        )
