# tmdb.py
"""Metadata resolution against TMDb.

Metadata is enrichment only: a failed or empty lookup always degrades to a
placeholder bundle built from the filename-derived title, never an error.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote

import requests

from config import TmdbConfig

logger = logging.getLogger(__name__)

PLACEHOLDER_POSTER = "https://placehold.co/400x600/1a1a1a/ffffff?text={text}"
PLACEHOLDER_BACKDROP = "https://placehold.co/1920x1080/1a1a1a/ffffff?text={text}"
MAX_CAST = 15


@dataclass
class MetadataBundle:
    title: str
    year: Optional[int] = None
    overview: Optional[str] = None
    poster_url: Optional[str] = None
    backdrop_url: Optional[str] = None
    cast: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    tmdb_id: Optional[int] = None
    found: bool = False


def placeholder_poster_url(title: str) -> str:
    return PLACEHOLDER_POSTER.format(text=quote(title or "Untitled"))


def placeholder_bundle(title: str, year: Optional[int] = None, file_name: Optional[str] = None) -> MetadataBundle:
    overview = f"Auto-detected from file: {file_name}" if file_name else None
    return MetadataBundle(
        title=title,
        year=year,
        overview=overview,
        poster_url=placeholder_poster_url(title),
        backdrop_url=PLACEHOLDER_BACKDROP.format(text=quote(title or "Untitled")),
    )


def _year_of(date_str: Optional[str]) -> Optional[int]:
    if date_str and len(date_str) >= 4 and date_str[:4].isdigit():
        return int(date_str[:4])
    return None


class MetadataResolver:
    """
    Looks titles up on TMDb (movie or tv search, first ranked hit) and maps
    the provider JSON into a MetadataBundle.

    A ``requests.Session`` may be injected; one is created otherwise.
    """

    def __init__(self, config: TmdbConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        if config.read_token:
            self.session.headers.update({"Authorization": f"Bearer {config.read_token}"})

    # ───────────────────────── low level ─────────────────────────
    def _get(self, path: str, **params) -> dict:
        query = {k: v for k, v in params.items() if v is not None}
        if self.config.api_key and not self.config.read_token:
            query["api_key"] = self.config.api_key
        query.setdefault("language", self.config.language)
        r = self.session.get(f"{self.config.base_url}{path}", params=query, timeout=self.config.timeout)
        r.raise_for_status()
        return r.json()

    def image_url(self, path: Optional[str], size: str = "w500") -> Optional[str]:
        if not path:
            return None
        return f"{self.config.image_base_url}/{size}{path}"

    # ───────────────────────── provider calls ─────────────────────────
    def search(self, query: str, year: Optional[int] = None, media_type: str = "movie") -> List[dict]:
        """
        Search movies (or shows for media_type="series"). Results whose title
        contains the query come first, then by popularity.
        """
        if media_type == "series":
            data = self._get("/search/tv", query=query, first_air_date_year=year, include_adult="false")
            name_key = "name"
        else:
            data = self._get("/search/movie", query=query, year=year, include_adult="false")
            name_key = "title"
        results = data.get("results") or []
        needle = query.lower()
        return sorted(
            results,
            key=lambda r: (needle not in (r.get(name_key) or "").lower(), -(r.get("popularity") or 0)),
        )

    def details(self, tmdb_id: int, media_type: str = "movie") -> dict:
        if media_type == "series":
            return self._get(f"/tv/{tmdb_id}", append_to_response="aggregate_credits,images")
        return self._get(f"/movie/{tmdb_id}", append_to_response="credits,images")

    def find_by_external_id(self, external_id: str) -> List[dict]:
        data = self._get(f"/find/{external_id}", external_source="imdb_id")
        return (data.get("movie_results") or []) + (data.get("tv_results") or [])

    # ───────────────────────── mapping ─────────────────────────
    def bundle_from_result(self, result: dict, details: Optional[dict] = None) -> MetadataBundle:
        merged = dict(result)
        if details:
            merged.update(details)
        credits = merged.get("credits") or merged.get("aggregate_credits") or {}
        cast = [c.get("name") for c in (credits.get("cast") or [])[:MAX_CAST] if c.get("name")]
        genres = [g.get("name") for g in (merged.get("genres") or []) if g.get("name")]
        return MetadataBundle(
            title=merged.get("title") or merged.get("name") or "",
            year=_year_of(merged.get("release_date") or merged.get("first_air_date")),
            overview=merged.get("overview") or None,
            poster_url=self.image_url(merged.get("poster_path")),
            backdrop_url=self.image_url(merged.get("backdrop_path"), size="original"),
            cast=cast,
            genres=genres,
            tmdb_id=merged.get("id"),
            found=True,
        )

    def resolve(self, title: str, year: Optional[int] = None, media_type: str = "movie",
                external_id: Optional[str] = None, file_name: Optional[str] = None) -> MetadataBundle:
        """Best-effort metadata; the placeholder bundle on any miss or failure."""
        fallback = placeholder_bundle(title, year, file_name)
        if not self.config.has_credentials:
            logger.warning("TMDb credentials missing – using placeholder metadata.")
            return fallback
        try:
            if external_id:
                results = self.find_by_external_id(external_id)
            else:
                results = self.search(title, year, media_type)
            if not results:
                logger.info(f"No TMDb results for '{title}' ({year})")
                return fallback
            first = results[0]
            kind = "series" if (first.get("media_type") == "tv" or "first_air_date" in first) else media_type
            logger.info(f"TMDb hit: '{title}' ({year}) ➜ id={first.get('id')}")
            try:
                details = self.details(first["id"], kind) if first.get("id") else None
            except requests.RequestException as e:
                logger.warning(f"TMDb details error for id={first.get('id')}: {e}")
                details = None
            bundle = self.bundle_from_result(first, details)
            if not bundle.title:
                bundle.title = title
            if not bundle.poster_url:
                bundle.poster_url = fallback.poster_url
            return bundle
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"TMDb error for '{title}' ({year}): {e}")
            return fallback
