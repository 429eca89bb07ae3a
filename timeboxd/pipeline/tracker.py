from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Protocol

from timeboxd.core.freshness import utc_now
from timeboxd.pipeline.models import CategorizedFilm, EntryFailure, WatchlistEntry
from timeboxd.pipeline.orchestrator import Pipeline
from timeboxd.services.letterboxd import WatchlistError
from timeboxd.services.repository import CacheIOError

logger = logging.getLogger(__name__)

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


class WatchlistSource(Protocol):
    async def fetch_watchlist(self, username: str, cutoff_year: int | None = None) -> list[WatchlistEntry]: ...


class TrackingFailedError(Exception):
    """A batch-level failure: the watchlist or the cache was unavailable."""


@dataclass(slots=True)
class TrackResult:
    username: str
    country: str
    as_of: date
    recency_window_days: int
    theatrical: list[CategorizedFilm] = field(default_factory=list)
    streaming: list[CategorizedFilm] = field(default_factory=list)
    failures: list[EntryFailure] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


def normalize_username(raw: str) -> str:
    username = raw.strip()
    if not username:
        raise ValueError("username is required")
    return username


def normalize_country(raw: str) -> str:
    country = raw.strip().upper()
    if not _COUNTRY_RE.match(country):
        raise ValueError("country must be a 2-letter code")
    return country


class ReleaseTracker:
    def __init__(
        self,
        watchlist: WatchlistSource,
        pipeline: Pipeline,
        *,
        recency_window_days: int = 0,
        watchlist_max_age_years: int = 3,
        today: Callable[[], date] = lambda: utc_now().date(),
    ) -> None:
        self.watchlist = watchlist
        self.pipeline = pipeline
        self.recency_window_days = max(0, recency_window_days)
        self.watchlist_max_age_years = max(0, watchlist_max_age_years)
        self.today = today

    async def track(
        self,
        username: str,
        country: str,
        recency_window_days: int | None = None,
        as_of: date | None = None,
    ) -> TrackResult:
        username = normalize_username(username)
        country = normalize_country(country)
        window_days = self.recency_window_days if recency_window_days is None else max(0, recency_window_days)
        as_of = as_of or self.today()
        cutoff_year = as_of.year - self.watchlist_max_age_years

        try:
            entries = await self.watchlist.fetch_watchlist(username, cutoff_year)
            recent = [entry for entry in entries if entry.year_hint is None or entry.year_hint >= cutoff_year]
            logger.info(
                "tracking user=%s country=%s entries=%s skipped_old=%s",
                username,
                country,
                len(recent),
                len(entries) - len(recent),
            )
            result = await self.pipeline.process(
                recent,
                country,
                as_of=as_of,
                recency_window=timedelta(days=window_days),
            )
        except WatchlistError as exc:
            logger.exception("watchlist fetch failed for user=%s", username)
            raise TrackingFailedError(f"could not load watchlist for {username}: {exc}") from exc
        except CacheIOError as exc:
            logger.exception("release cache unavailable while tracking user=%s", username)
            raise TrackingFailedError(f"release cache unavailable: {exc}") from exc

        return TrackResult(
            username=username,
            country=country,
            as_of=as_of,
            recency_window_days=window_days,
            theatrical=result.theatrical,
            streaming=result.streaming,
            failures=result.failures,
            unresolved=result.unresolved,
        )
