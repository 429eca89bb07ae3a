from fastapi import APIRouter, Depends, HTTPException, Query, status

from timeboxd.api.deps import get_tracker
from timeboxd.pipeline.models import CategorizedFilm
from timeboxd.pipeline.tracker import TrackingFailedError
from timeboxd.schemas.releases import CategorizedFilmOut, EntryFailureOut, TrackOut
from timeboxd.services.letterboxd import WatchlistNotFoundError
from timeboxd.services.repository import CacheIOError

router = APIRouter()


@router.get("", response_model=TrackOut)
async def get_releases(
    username: str = Query(min_length=1),
    country: str = Query(min_length=2, max_length=2),
    recency_window_days: int | None = Query(default=None, ge=0, le=3650),
    tracker=Depends(get_tracker),
) -> TrackOut:
    try:
        result = await tracker.track(username, country, recency_window_days)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TrackingFailedError as exc:
        if isinstance(exc.__cause__, WatchlistNotFoundError):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if isinstance(exc.__cause__, CacheIOError):
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return TrackOut(
        username=result.username,
        country=result.country,
        as_of=result.as_of,
        recency_window_days=result.recency_window_days,
        theatrical=[_film_out(film) for film in result.theatrical],
        streaming=[_film_out(film) for film in result.streaming],
        failures=[
            EntryFailureOut(source_slug=failure.source_slug, title=failure.title, error=failure.error)
            for failure in result.failures
        ],
        unresolved=result.unresolved,
    )


def _film_out(film: CategorizedFilm) -> CategorizedFilmOut:
    return CategorizedFilmOut(
        catalog_id=film.catalog_id,
        title=film.title,
        year=film.year,
        poster_path=film.poster_path,
        release_date=film.release_date,
        release_type=film.release_type.name.lower(),
        country=film.country,
        note=film.note,
    )
