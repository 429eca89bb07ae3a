from datetime import date
from typing import Literal

from pydantic import BaseModel, Field

ReleaseTypeName = Literal["premiere", "theatrical_limited", "theatrical", "digital", "physical", "tv"]


class CategorizedFilmOut(BaseModel):
    catalog_id: int
    title: str
    year: int | None = None
    poster_path: str | None = None
    release_date: date
    release_type: ReleaseTypeName
    country: str
    note: str | None = None


class EntryFailureOut(BaseModel):
    source_slug: str
    title: str
    error: str


class TrackOut(BaseModel):
    username: str
    country: str
    as_of: date
    recency_window_days: int
    theatrical: list[CategorizedFilmOut] = Field(default_factory=list)
    streaming: list[CategorizedFilmOut] = Field(default_factory=list)
    failures: list[EntryFailureOut] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)
