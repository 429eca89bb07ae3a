from __future__ import annotations

import asyncio
import logging
import random
import re

import httpx
from bs4 import BeautifulSoup
from opentelemetry import trace

from timeboxd.pipeline.models import WatchlistEntry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_TRAILING_YEAR_RE = re.compile(r"^(?P<title>.*?)\s*\((?P<year>\d{4})\)\s*$")
_TMDB_MOVIE_URL_RE = re.compile(r"themoviedb\.org/movie/(?P<id>\d+)")
PAGE_JITTER_MS = 150


class WatchlistError(Exception):
    """Base error for watchlist fetches; fatal to the whole request."""


class WatchlistNotFoundError(WatchlistError):
    """The watchlist owner does not exist."""


class WatchlistBlockedError(WatchlistError):
    """The watchlist could not be fetched (blocked, throttled or unreachable)."""


class LetterboxdClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str = "https://letterboxd.com",
        delay_ms: int = 250,
        max_pages: int = 50,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.delay_ms = max(0, delay_ms)
        self.max_pages = max(1, max_pages)

    async def fetch_watchlist(self, username: str, cutoff_year: int | None = None) -> list[WatchlistEntry]:
        entries: list[WatchlistEntry] = []
        seen: set[str] = set()

        with tracer.start_as_current_span("watchlist.fetch") as span:
            span.set_attribute("watchlist.username", username)
            for page in range(1, self.max_pages + 1):
                html = await self._fetch_page(username, page)
                page_entries = parse_watchlist_page(html)
                logger.debug("parsed watchlist page user=%s page=%s films=%s", username, page, len(page_entries))
                if not page_entries:
                    break

                for entry in page_entries:
                    if entry.source_slug not in seen:
                        seen.add(entry.source_slug)
                        entries.append(entry)

                # Pages are ordered by release, so an all-old page ends the scan.
                if cutoff_year is not None and all(
                    entry.year_hint is not None and entry.year_hint < cutoff_year for entry in page_entries
                ):
                    break

                await asyncio.sleep((self.delay_ms + random.randint(0, PAGE_JITTER_MS)) / 1000.0)

        logger.info("fetched watchlist user=%s films=%s", username, len(entries))
        return entries

    async def fetch_film_catalog_id(self, source_slug: str) -> int | None:
        """Return the TMDB movie id linked from a film page, or None when there is no link."""
        url = f"{self.base_url}/film/{source_slug}/"
        with tracer.start_as_current_span("letterboxd.film_page") as span:
            span.set_attribute("letterboxd.slug", source_slug)
            try:
                response = await self.http.get(url, headers={"Referer": f"{self.base_url}/"})
            except httpx.HTTPError as exc:
                raise WatchlistBlockedError(f"could not reach film page {source_slug}: {exc}") from exc

            if response.status_code == 404:
                return None
            if response.status_code >= 400:
                raise WatchlistBlockedError(
                    f"film page fetch failed for {source_slug} (status {response.status_code})"
                )
            catalog_id = parse_film_catalog_id(response.text)

        logger.debug("film page slug=%s catalog_id=%s", source_slug, catalog_id)
        return catalog_id

    async def _fetch_page(self, username: str, page: int) -> str:
        url = f"{self.base_url}/{username}/watchlist/by/release/"
        if page > 1:
            url = f"{url}page/{page}/"

        try:
            response = await self.http.get(url, headers={"Referer": f"{self.base_url}/"})
        except httpx.HTTPError as exc:
            raise WatchlistBlockedError(f"could not reach watchlist for {username}: {exc}") from exc

        if response.status_code == 404:
            raise WatchlistNotFoundError(f"user {username} not found")
        if response.status_code in {403, 429}:
            raise WatchlistBlockedError(f"watchlist fetch blocked for {username} (status {response.status_code})")
        if response.status_code >= 400:
            raise WatchlistBlockedError(f"watchlist fetch failed for {username} (status {response.status_code})")
        return response.text


def parse_watchlist_page(html: str) -> list[WatchlistEntry]:
    soup = BeautifulSoup(html, "lxml")
    nodes = soup.select("li.griditem div.react-component[data-item-slug]")
    if not nodes:
        nodes = soup.select("div[data-film-slug]")

    entries: list[WatchlistEntry] = []
    for node in nodes:
        slug = node.get("data-item-slug") or node.get("data-film-slug")
        name = node.get("data-item-name") or node.get("data-film-name")
        if not isinstance(slug, str) or not slug or not isinstance(name, str):
            continue
        title, year = split_title_year(name)
        entries.append(WatchlistEntry(source_slug=slug, title_hint=title, year_hint=year))
    return entries


def parse_film_catalog_id(html: str) -> int | None:
    soup = BeautifulSoup(html, "lxml")
    body = soup.body
    if body is not None:
        raw_id = body.get("data-tmdb-id")
        raw_type = body.get("data-tmdb-type")
        if isinstance(raw_id, str) and raw_id.isdigit() and raw_type in (None, "movie"):
            return int(raw_id)

    for link in soup.select("a[href*='themoviedb.org']"):
        href = link.get("href")
        if not isinstance(href, str):
            continue
        match = _TMDB_MOVIE_URL_RE.search(href)
        if match:
            return int(match.group("id"))
    return None


def split_title_year(raw: str) -> tuple[str, int | None]:
    """Split "Title (2024)" into its parts; titles without a year pass through."""
    stripped = raw.strip()
    match = _TRAILING_YEAR_RE.match(stripped)
    if not match:
        return stripped, None
    return match.group("title").strip(), int(match.group("year"))
