from __future__ import annotations

from collections.abc import Iterable
from datetime import date, timedelta

from timeboxd.pipeline.models import THEATRICAL_TYPES, CategorizedReleases, ReleaseEvent


def categorize(events: Iterable[ReleaseEvent], as_of: date, recency_window: timedelta) -> CategorizedReleases:
    """Bucket release events into theatrical and streaming.

    Events dated before ``as_of - recency_window`` are dropped. Each bucket keeps
    one event per film: its earliest date, ties broken by the lower type code.
    Buckets are ordered by date, then catalog id.
    """
    earliest_allowed = as_of - recency_window
    theatrical: dict[int, ReleaseEvent] = {}
    streaming: dict[int, ReleaseEvent] = {}

    for event in events:
        if event.release_date < earliest_allowed:
            continue
        bucket = theatrical if event.release_type in THEATRICAL_TYPES else streaming
        current = bucket.get(event.catalog_id)
        if current is None or _event_order(event) < _event_order(current):
            bucket[event.catalog_id] = event

    return CategorizedReleases(
        theatrical=sorted(theatrical.values(), key=_bucket_order),
        streaming=sorted(streaming.values(), key=_bucket_order),
    )


def _event_order(event: ReleaseEvent) -> tuple[date, int, str, str]:
    return (event.release_date, int(event.release_type), event.country, event.note or "")


def _bucket_order(event: ReleaseEvent) -> tuple[date, int]:
    return (event.release_date, event.catalog_id)
