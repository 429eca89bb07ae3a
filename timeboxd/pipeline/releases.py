from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Protocol

from timeboxd.core.freshness import is_fresh, utc_now
from timeboxd.pipeline.models import ReleaseEvent
from timeboxd.services.repository import CacheRepository
from timeboxd.services.tmdb_client import UpstreamRelease

logger = logging.getLogger(__name__)


class CatalogReleases(Protocol):
    async def get_release_dates(self, catalog_id: int) -> dict[str, list[UpstreamRelease]]: ...


class ReleaseFetcher:
    """Cache-first release lookup with a per-pair refresh ledger and country fallback.

    One upstream call returns every country's table; all of them are written
    back, plus an empty entry for the requested country when it is missing, so
    the requested pair is marked fresh whatever the fallback outcome.
    """

    def __init__(
        self,
        repository: CacheRepository,
        catalog: CatalogReleases,
        *,
        release_ttl: timedelta,
        fallback_countries: Sequence[str] = ("US",),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.release_ttl = release_ttl
        self.fallback_countries = tuple(country.upper() for country in fallback_countries)
        self.clock = clock
        self._refresh_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    async def fetch_releases(self, catalog_id: int, country: str) -> list[ReleaseEvent]:
        country = country.upper()
        ledger, events = await self.repository.read_snapshot(catalog_id, country)
        if ledger is not None and is_fresh(ledger.cached_at, self.release_ttl, self.clock()):
            if events:
                return events
            return await self._cached_fallback(catalog_id, country)

        lock = self._refresh_locks.get(catalog_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[catalog_id] = lock

        async with lock:
            # Another task may have refreshed this film while we waited.
            ledger, events = await self.repository.read_snapshot(catalog_id, country)
            if ledger is not None and is_fresh(ledger.cached_at, self.release_ttl, self.clock()):
                if events:
                    return events
                return await self._cached_fallback(catalog_id, country)
            snapshot = await self._refresh(catalog_id, country)

        return self._select_with_fallback(snapshot, country)

    async def _refresh(self, catalog_id: int, country: str) -> dict[str, list[ReleaseEvent]]:
        table = await self.catalog.get_release_dates(catalog_id)
        cached_at = self.clock()
        snapshot = build_snapshot(catalog_id, table, cached_at)
        snapshot.setdefault(country, [])
        await self.repository.replace_releases(catalog_id, snapshot, cached_at)
        logger.debug(
            "refreshed releases id=%s requested=%s countries=%s",
            catalog_id,
            country,
            len(snapshot),
        )
        return snapshot

    def _select_with_fallback(self, snapshot: Mapping[str, Sequence[ReleaseEvent]], country: str) -> list[ReleaseEvent]:
        for candidate in self._fallback_order(country):
            events = snapshot.get(candidate)
            if events:
                if candidate != country:
                    logger.debug("country fallback requested=%s used=%s", country, candidate)
                return sorted(events, key=lambda event: (event.release_date, int(event.release_type)))
        return []

    async def _cached_fallback(self, catalog_id: int, country: str) -> list[ReleaseEvent]:
        now = self.clock()
        for candidate in self._fallback_order(country)[1:]:
            ledger, events = await self.repository.read_snapshot(catalog_id, candidate)
            if ledger is not None and events and is_fresh(ledger.cached_at, self.release_ttl, now):
                return events
        return []

    def _fallback_order(self, country: str) -> list[str]:
        order = [country]
        for candidate in self.fallback_countries:
            if candidate not in order:
                order.append(candidate)
        return order


def build_snapshot(
    catalog_id: int,
    table: Mapping[str, Sequence[UpstreamRelease]],
    cached_at: datetime,
) -> dict[str, list[ReleaseEvent]]:
    snapshot: dict[str, list[ReleaseEvent]] = {}
    for country, releases in table.items():
        seen: set[tuple[object, object]] = set()
        events: list[ReleaseEvent] = []
        for release in releases:
            key = (release.release_date, release.release_type)
            if key in seen:
                continue
            seen.add(key)
            events.append(
                ReleaseEvent(
                    catalog_id=catalog_id,
                    country=country.upper(),
                    release_date=release.release_date,
                    release_type=release.release_type,
                    note=release.note,
                    cached_at=cached_at,
                )
            )
        snapshot[country.upper()] = events
    return snapshot
