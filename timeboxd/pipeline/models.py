from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import IntEnum


class ReleaseType(IntEnum):
    """Upstream release type codes, stored as-is in the cache."""

    PREMIERE = 1
    THEATRICAL_LIMITED = 2
    THEATRICAL = 3
    DIGITAL = 4
    PHYSICAL = 5
    TV = 6

    @classmethod
    def from_code(cls, code: object) -> ReleaseType | None:
        try:
            return cls(int(code))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None


THEATRICAL_TYPES = frozenset({ReleaseType.PREMIERE, ReleaseType.THEATRICAL_LIMITED, ReleaseType.THEATRICAL})


@dataclass(frozen=True, slots=True)
class WatchlistEntry:
    source_slug: str
    title_hint: str
    year_hint: int | None = None


@dataclass(slots=True)
class FilmIdentity:
    source_slug: str
    catalog_id: int | None
    title: str
    year: int | None = None
    poster_path: str | None = None
    updated_at: datetime | None = None

    @property
    def resolved(self) -> bool:
        return self.catalog_id is not None


@dataclass(frozen=True, slots=True)
class ReleaseEvent:
    catalog_id: int
    country: str
    release_date: date
    release_type: ReleaseType
    note: str | None = None
    cached_at: datetime | None = None

    @property
    def key(self) -> tuple[int, str, date, ReleaseType]:
        return (self.catalog_id, self.country, self.release_date, self.release_type)


@dataclass(frozen=True, slots=True)
class RefreshLedgerEntry:
    catalog_id: int
    country: str
    cached_at: datetime


@dataclass(frozen=True, slots=True)
class CategorizedFilm:
    catalog_id: int
    title: str
    year: int | None
    poster_path: str | None
    release_date: date
    release_type: ReleaseType
    country: str
    note: str | None = None


@dataclass(slots=True)
class CategorizedReleases:
    theatrical: list[ReleaseEvent] = field(default_factory=list)
    streaming: list[ReleaseEvent] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.theatrical and not self.streaming


@dataclass(frozen=True, slots=True)
class EntryFailure:
    source_slug: str
    title: str
    error: str


@dataclass(slots=True)
class PipelineResult:
    theatrical: list[CategorizedFilm] = field(default_factory=list)
    streaming: list[CategorizedFilm] = field(default_factory=list)
    failures: list[EntryFailure] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    @property
    def films(self) -> list[CategorizedFilm]:
        """One row per film, ordered by its earliest relevant release date."""
        earliest: dict[int, CategorizedFilm] = {}
        for item in [*self.theatrical, *self.streaming]:
            current = earliest.get(item.catalog_id)
            if current is None or item.release_date < current.release_date:
                earliest[item.catalog_id] = item
        return sorted(earliest.values(), key=sort_key)


def sort_key(item: CategorizedFilm) -> tuple[date, str, int]:
    return (item.release_date, item.title.casefold(), item.catalog_id)
