from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]

from timeboxd.core.config import get_settings
from timeboxd.core.freshness import as_utc, utc_now
from timeboxd.pipeline.models import FilmIdentity, RefreshLedgerEntry, ReleaseEvent, ReleaseType


class RepositoryError(Exception):
    """Base repository error."""


class CacheIOError(RepositoryError):
    """Raised when the cache store is unavailable or a read/write fails."""


SCHEMA_SQL = """
create table if not exists film_cache (
  source_slug text primary key,
  catalog_id integer,
  title text not null,
  year integer,
  poster_path text,
  updated_at timestamptz not null
);

create index if not exists idx_film_cache_updated_at
  on film_cache (updated_at);

create table if not exists release_cache (
  id bigserial primary key,
  catalog_id integer not null,
  country text not null,
  release_date date not null,
  release_type smallint not null,
  note text,
  cached_at timestamptz not null
);

create unique index if not exists idx_release_cache_unique
  on release_cache (catalog_id, country, release_date, release_type);

create index if not exists idx_release_cache_catalog_country
  on release_cache (catalog_id, country);

create table if not exists release_cache_meta (
  catalog_id integer not null,
  country text not null,
  cached_at timestamptz not null,
  primary key (catalog_id, country)
);
"""

DROP_SQL = """
drop table if exists release_cache_meta;
drop table if exists release_cache;
drop table if exists film_cache;
"""


class CacheRepository(Protocol):
    async def get_film(self, source_slug: str) -> FilmIdentity | None: ...

    async def upsert_film(self, identity: FilmIdentity, updated_at: datetime | None = None) -> FilmIdentity: ...

    async def get_ledger_entry(self, catalog_id: int, country: str) -> RefreshLedgerEntry | None: ...

    async def get_releases(self, catalog_id: int, country: str) -> list[ReleaseEvent]: ...

    async def read_snapshot(
        self, catalog_id: int, country: str
    ) -> tuple[RefreshLedgerEntry | None, list[ReleaseEvent]]: ...

    async def replace_releases(
        self,
        catalog_id: int,
        snapshot: Mapping[str, Sequence[ReleaseEvent]],
        cached_at: datetime | None = None,
    ) -> None: ...

    async def ensure_schema(self) -> None: ...

    async def close(self) -> None: ...


def dedupe_events(events: Sequence[ReleaseEvent]) -> list[ReleaseEvent]:
    """Keep the first event per (date, type) and order by date then type."""
    unique: dict[tuple[Any, ...], ReleaseEvent] = {}
    for event in events:
        unique.setdefault((event.release_date, event.release_type), event)
    return sorted(unique.values(), key=lambda event: (event.release_date, int(event.release_type)))


class PostgresCacheRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._schema_ready = False
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(SCHEMA_SQL)
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError("failed to create cache schema") from exc
        self._schema_ready = True

    async def get_film(self, source_slug: str) -> FilmIdentity | None:
        pool = await self._get_ready_pool()
        try:
            row = await pool.fetchrow(
                """
                select source_slug, catalog_id, title, year, poster_path, updated_at
                from film_cache
                where source_slug = $1
                """,
                source_slug,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError(f"failed to read film cache for {source_slug}") from exc
        if row is None:
            return None
        return self._film_row_to_identity(row)

    async def upsert_film(self, identity: FilmIdentity, updated_at: datetime | None = None) -> FilmIdentity:
        pool = await self._get_ready_pool()
        stamp = updated_at or utc_now()
        try:
            await pool.execute(
                """
                insert into film_cache (source_slug, catalog_id, title, year, poster_path, updated_at)
                values ($1, $2, $3, $4, $5, $6)
                on conflict (source_slug) do update
                set
                  catalog_id = excluded.catalog_id,
                  title = excluded.title,
                  year = excluded.year,
                  poster_path = excluded.poster_path,
                  updated_at = excluded.updated_at
                """,
                identity.source_slug,
                identity.catalog_id,
                identity.title,
                identity.year,
                identity.poster_path,
                stamp,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError(f"failed to write film cache for {identity.source_slug}") from exc
        identity.updated_at = stamp
        return identity

    async def get_ledger_entry(self, catalog_id: int, country: str) -> RefreshLedgerEntry | None:
        pool = await self._get_ready_pool()
        try:
            row = await pool.fetchrow(
                """
                select catalog_id, country, cached_at
                from release_cache_meta
                where catalog_id = $1 and country = $2
                """,
                catalog_id,
                country,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError(f"failed to read release ledger for {catalog_id}/{country}") from exc
        if row is None:
            return None
        return RefreshLedgerEntry(catalog_id=row["catalog_id"], country=row["country"], cached_at=as_utc(row["cached_at"]))

    async def get_releases(self, catalog_id: int, country: str) -> list[ReleaseEvent]:
        pool = await self._get_ready_pool()
        try:
            rows = await pool.fetch(_SELECT_RELEASES_SQL, catalog_id, country)
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError(f"failed to read release cache for {catalog_id}/{country}") from exc
        return self._release_rows_to_events(rows)

    async def read_snapshot(
        self, catalog_id: int, country: str
    ) -> tuple[RefreshLedgerEntry | None, list[ReleaseEvent]]:
        pool = await self._get_ready_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    meta_row = await conn.fetchrow(
                        """
                        select catalog_id, country, cached_at
                        from release_cache_meta
                        where catalog_id = $1 and country = $2
                        """,
                        catalog_id,
                        country,
                    )
                    rows = await conn.fetch(_SELECT_RELEASES_SQL, catalog_id, country)
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError(f"failed to read release cache for {catalog_id}/{country}") from exc

        ledger = None
        if meta_row is not None:
            ledger = RefreshLedgerEntry(
                catalog_id=meta_row["catalog_id"],
                country=meta_row["country"],
                cached_at=as_utc(meta_row["cached_at"]),
            )
        return ledger, self._release_rows_to_events(rows)

    async def replace_releases(
        self,
        catalog_id: int,
        snapshot: Mapping[str, Sequence[ReleaseEvent]],
        cached_at: datetime | None = None,
    ) -> None:
        pool = await self._get_ready_pool()
        stamp = cached_at or utc_now()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # Serialises concurrent refreshes of the same film so the
                    # surviving row set always comes from a single snapshot.
                    await conn.execute("select pg_advisory_xact_lock($1)", catalog_id)
                    for country, events in snapshot.items():
                        await conn.execute(
                            "delete from release_cache where catalog_id = $1 and country = $2",
                            catalog_id,
                            country,
                        )
                        rows = [
                            (catalog_id, country, event.release_date, int(event.release_type), event.note, stamp)
                            for event in dedupe_events(events)
                        ]
                        if rows:
                            await conn.executemany(
                                """
                                insert into release_cache (
                                  catalog_id, country, release_date, release_type, note, cached_at
                                )
                                values ($1, $2, $3, $4, $5, $6)
                                """,
                                rows,
                            )
                        await conn.execute(
                            """
                            insert into release_cache_meta (catalog_id, country, cached_at)
                            values ($1, $2, $3)
                            on conflict (catalog_id, country) do update
                            set cached_at = excluded.cached_at
                            """,
                            catalog_id,
                            country,
                            stamp,
                        )
        except (asyncpg.PostgresError, OSError) as exc:
            raise CacheIOError(f"failed to replace release cache for {catalog_id}") from exc

    async def _get_ready_pool(self) -> asyncpg.Pool:
        if not self._schema_ready:
            # Concurrent first callers share one DDL run.
            async with self._schema_lock:
                if not self._schema_ready:
                    await self.ensure_schema()
        return await self._get_pool()

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise CacheIOError("TIMEBOXD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=15,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise CacheIOError("database unavailable") from exc
            return self._pool

    @staticmethod
    def _film_row_to_identity(row: asyncpg.Record) -> FilmIdentity:
        return FilmIdentity(
            source_slug=row["source_slug"],
            catalog_id=row["catalog_id"],
            title=row["title"],
            year=row["year"],
            poster_path=row["poster_path"],
            updated_at=as_utc(row["updated_at"]),
        )

    @staticmethod
    def _release_rows_to_events(rows: Sequence[asyncpg.Record]) -> list[ReleaseEvent]:
        events: list[ReleaseEvent] = []
        for row in rows:
            release_type = ReleaseType.from_code(row["release_type"])
            if release_type is None:
                continue
            events.append(
                ReleaseEvent(
                    catalog_id=row["catalog_id"],
                    country=row["country"],
                    release_date=row["release_date"],
                    release_type=release_type,
                    note=row["note"],
                    cached_at=as_utc(row["cached_at"]),
                )
            )
        return events


_SELECT_RELEASES_SQL = """
select catalog_id, country, release_date, release_type, note, cached_at
from release_cache
where catalog_id = $1 and country = $2
order by release_date, release_type
"""


@lru_cache
def get_repository() -> CacheRepository:
    settings = get_settings()
    if settings.cache_backend == "memory":
        from timeboxd.services.store import InMemoryCacheStore

        return InMemoryCacheStore()
    return PostgresCacheRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
