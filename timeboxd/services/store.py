from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime

from timeboxd.core.freshness import utc_now
from timeboxd.pipeline.models import FilmIdentity, RefreshLedgerEntry, ReleaseEvent
from timeboxd.services.repository import dedupe_events


class InMemoryCacheStore:
    """Process-local cache store with the same contract as the Postgres repository.

    Release rows for a pair are held as one immutable tuple that is swapped in a
    single step, so readers see either the old or the new set.
    """

    def __init__(self) -> None:
        self.films: dict[str, FilmIdentity] = {}
        self.releases: dict[tuple[int, str], tuple[ReleaseEvent, ...]] = {}
        self.ledger: dict[tuple[int, str], RefreshLedgerEntry] = {}
        self._write_locks: dict[int, asyncio.Lock] = {}

    async def ensure_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get_film(self, source_slug: str) -> FilmIdentity | None:
        identity = self.films.get(source_slug)
        return replace(identity) if identity is not None else None

    async def upsert_film(self, identity: FilmIdentity, updated_at: datetime | None = None) -> FilmIdentity:
        stored = replace(identity, updated_at=updated_at or utc_now())
        self.films[identity.source_slug] = stored
        return replace(stored)

    async def get_ledger_entry(self, catalog_id: int, country: str) -> RefreshLedgerEntry | None:
        return self.ledger.get((catalog_id, country))

    async def get_releases(self, catalog_id: int, country: str) -> list[ReleaseEvent]:
        return list(self.releases.get((catalog_id, country), ()))

    async def read_snapshot(
        self, catalog_id: int, country: str
    ) -> tuple[RefreshLedgerEntry | None, list[ReleaseEvent]]:
        key = (catalog_id, country)
        return self.ledger.get(key), list(self.releases.get(key, ()))

    async def replace_releases(
        self,
        catalog_id: int,
        snapshot: Mapping[str, Sequence[ReleaseEvent]],
        cached_at: datetime | None = None,
    ) -> None:
        stamp = cached_at or utc_now()
        lock = self._write_locks.setdefault(catalog_id, asyncio.Lock())
        async with lock:
            staged = {
                (catalog_id, country): tuple(
                    replace(event, catalog_id=catalog_id, country=country, cached_at=stamp)
                    for event in dedupe_events(events)
                )
                for country, events in snapshot.items()
            }
            for key, rows in staged.items():
                self.releases[key] = rows
                self.ledger[key] = RefreshLedgerEntry(catalog_id=key[0], country=key[1], cached_at=stamp)
