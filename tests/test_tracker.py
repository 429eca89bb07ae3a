from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest

from timeboxd.pipeline.models import CategorizedFilm, PipelineResult, ReleaseType, WatchlistEntry
from timeboxd.pipeline.tracker import ReleaseTracker, TrackingFailedError, normalize_country
from timeboxd.services.letterboxd import WatchlistBlockedError
from timeboxd.services.repository import CacheIOError

AS_OF = date(2026, 4, 1)


class FakeWatchlist:
    def __init__(self, entries: list[WatchlistEntry] | None = None, error: Exception | None = None) -> None:
        self.entries = entries or []
        self.error = error
        self.calls: list[tuple[str, int | None]] = []

    async def fetch_watchlist(self, username: str, cutoff_year: int | None = None) -> list[WatchlistEntry]:
        self.calls.append((username, cutoff_year))
        if self.error is not None:
            raise self.error
        return list(self.entries)


class FakePipeline:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[dict] = []

    async def process(self, entries, country, *, as_of, recency_window=timedelta(0)) -> PipelineResult:
        self.calls.append({"entries": entries, "country": country, "as_of": as_of, "recency_window": recency_window})
        if self.error is not None:
            raise self.error
        film = CategorizedFilm(
            catalog_id=1,
            title="Sinners",
            year=2025,
            poster_path=None,
            release_date=as_of + timedelta(days=3),
            release_type=ReleaseType.THEATRICAL,
            country=country,
        )
        return PipelineResult(theatrical=[film], unresolved=["lost-reel"])


def test_track_filters_old_entries_and_passes_window() -> None:
    watchlist = FakeWatchlist(
        [
            WatchlistEntry("sinners", "Sinners", 2025),
            WatchlistEntry("vertigo", "Vertigo", 1958),
            WatchlistEntry("untitled", "Untitled", None),
        ]
    )
    pipeline = FakePipeline()
    tracker = ReleaseTracker(watchlist, pipeline, recency_window_days=7, watchlist_max_age_years=3)

    result = asyncio.run(tracker.track(" cinephile ", "gb", as_of=AS_OF))

    assert watchlist.calls == [("cinephile", 2023)]
    assert [entry.source_slug for entry in pipeline.calls[0]["entries"]] == ["sinners", "untitled"]
    assert pipeline.calls[0]["country"] == "GB"
    assert pipeline.calls[0]["recency_window"] == timedelta(days=7)
    assert result.country == "GB"
    assert result.recency_window_days == 7
    assert [film.title for film in result.theatrical] == ["Sinners"]
    assert result.unresolved == ["lost-reel"]


def test_track_request_window_overrides_default() -> None:
    pipeline = FakePipeline()
    tracker = ReleaseTracker(FakeWatchlist(), pipeline, recency_window_days=7)

    asyncio.run(tracker.track("cinephile", "US", recency_window_days=0, as_of=AS_OF))

    assert pipeline.calls[0]["recency_window"] == timedelta(0)


@pytest.mark.parametrize("country", ["", "USA", "U1", "  "])
def test_normalize_country_rejects_invalid_codes(country: str) -> None:
    with pytest.raises(ValueError):
        normalize_country(country)


def test_track_rejects_blank_username() -> None:
    tracker = ReleaseTracker(FakeWatchlist(), FakePipeline())
    with pytest.raises(ValueError):
        asyncio.run(tracker.track("   ", "US", as_of=AS_OF))


def test_watchlist_failure_is_a_batch_failure() -> None:
    tracker = ReleaseTracker(FakeWatchlist(error=WatchlistBlockedError("blocked")), FakePipeline())

    with pytest.raises(TrackingFailedError) as exc_info:
        asyncio.run(tracker.track("cinephile", "US", as_of=AS_OF))

    assert isinstance(exc_info.value.__cause__, WatchlistBlockedError)


def test_cache_failure_is_a_batch_failure() -> None:
    tracker = ReleaseTracker(FakeWatchlist(), FakePipeline(error=CacheIOError("database unavailable")))

    with pytest.raises(TrackingFailedError, match="release cache unavailable"):
        asyncio.run(tracker.track("cinephile", "US", as_of=AS_OF))
