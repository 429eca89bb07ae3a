from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta

from opentelemetry import trace

from timeboxd.pipeline.categorize import categorize
from timeboxd.pipeline.models import (
    CategorizedFilm,
    EntryFailure,
    FilmIdentity,
    PipelineResult,
    ReleaseEvent,
    WatchlistEntry,
    sort_key,
)
from timeboxd.pipeline.releases import ReleaseFetcher
from timeboxd.pipeline.resolver import Resolver
from timeboxd.services.repository import CacheIOError
from timeboxd.services.tmdb_client import UpstreamError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class _EntryOutcome:
    theatrical: list[CategorizedFilm]
    streaming: list[CategorizedFilm]


class Pipeline:
    def __init__(self, resolver: Resolver, fetcher: ReleaseFetcher, *, max_concurrent: int = 5) -> None:
        self.resolver = resolver
        self.fetcher = fetcher
        self.max_concurrent = max(1, max_concurrent)

    async def process(
        self,
        entries: Sequence[WatchlistEntry],
        country: str,
        *,
        as_of: date,
        recency_window: timedelta = timedelta(0),
    ) -> PipelineResult:
        """Resolve, fetch and categorize every entry with bounded concurrency.

        Upstream failures are recorded per entry and never abort the batch. A
        cache failure cancels the remaining entries and is re-raised.
        """
        result = PipelineResult()
        outcomes: list[_EntryOutcome] = []
        semaphore = asyncio.Semaphore(self.max_concurrent)

        with tracer.start_as_current_span("pipeline.process") as span:
            span.set_attribute("pipeline.entries", len(entries))
            span.set_attribute("pipeline.country", country)
            try:
                async with asyncio.TaskGroup() as group:
                    for entry in entries:
                        group.create_task(
                            self._run_entry(entry, country, as_of, recency_window, semaphore, result, outcomes)
                        )
            except ExceptionGroup as exc_group:
                logger.error(
                    "pipeline aborted country=%s errors=%s", country, len(exc_group.exceptions), exc_info=exc_group
                )
                cache_errors = [exc for exc in exc_group.exceptions if isinstance(exc, CacheIOError)]
                raise (cache_errors or exc_group.exceptions)[0] from exc_group

        result.theatrical = _merge(outcome.theatrical for outcome in outcomes)
        result.streaming = _merge(outcome.streaming for outcome in outcomes)
        result.failures.sort(key=lambda failure: failure.source_slug)
        result.unresolved.sort()
        logger.info(
            "pipeline finished entries=%s theatrical=%s streaming=%s unresolved=%s failed=%s",
            len(entries),
            len(result.theatrical),
            len(result.streaming),
            len(result.unresolved),
            len(result.failures),
        )
        return result

    async def _run_entry(
        self,
        entry: WatchlistEntry,
        country: str,
        as_of: date,
        recency_window: timedelta,
        semaphore: asyncio.Semaphore,
        result: PipelineResult,
        outcomes: list[_EntryOutcome],
    ) -> None:
        async with semaphore:
            with tracer.start_as_current_span("pipeline.entry") as span:
                span.set_attribute("film.slug", entry.source_slug)
                try:
                    identity = await self.resolver.resolve(entry)
                    if identity.catalog_id is None:
                        result.unresolved.append(entry.source_slug)
                        return
                    events = await self.fetcher.fetch_releases(identity.catalog_id, country)
                except UpstreamError as exc:
                    logger.warning("entry failed slug=%s title=%r: %s", entry.source_slug, entry.title_hint, exc)
                    result.failures.append(
                        EntryFailure(source_slug=entry.source_slug, title=entry.title_hint, error=str(exc))
                    )
                    return

        buckets = categorize(events, as_of, recency_window)
        if buckets.is_empty():
            return
        outcomes.append(
            _EntryOutcome(
                theatrical=[_to_film(identity, event) for event in buckets.theatrical],
                streaming=[_to_film(identity, event) for event in buckets.streaming],
            )
        )


def _to_film(identity: FilmIdentity, event: ReleaseEvent) -> CategorizedFilm:
    return CategorizedFilm(
        catalog_id=event.catalog_id,
        title=identity.title,
        year=identity.year,
        poster_path=identity.poster_path,
        release_date=event.release_date,
        release_type=event.release_type,
        country=event.country,
        note=event.note,
    )


def _merge(groups: Iterable[list[CategorizedFilm]]) -> list[CategorizedFilm]:
    """Flatten per-entry rows, keeping one row per film when two slugs share a catalog id."""
    merged: dict[int, CategorizedFilm] = {}
    for group in groups:
        for film in group:
            current = merged.get(film.catalog_id)
            if current is None or sort_key(film) < sort_key(current):
                merged[film.catalog_id] = film
    return sorted(merged.values(), key=sort_key)
