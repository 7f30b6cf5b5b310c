from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from .errors import DeserializationError, EnrichmentUnavailable, UpstreamStatusError
from .matcher import select_best, split_title_year
from .models import Candidate
from .rotation import KeyRotator

logger = logging.getLogger(__name__)


class TMDBClient:
    """Backdrop lookup against the enrichment API with round-robin keys."""

    def __init__(
        self,
        keys: KeyRotator,
        base_url: str = "https://api.themoviedb.org/3",
        image_base: str = "https://image.tmdb.org/t/p/original",
        timeout: float = 5,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self._keys = keys
        self._base = base_url.rstrip("/")
        self._image_base = image_base
        self._timeout = timeout
        self._session_factory = session_factory
        if keys.configured:
            logger.info("TMDB keys configured, rotating over %d", len(keys))

    @property
    def is_configured(self) -> bool:
        return self._keys.configured

    @property
    def key_count(self) -> int:
        return len(self._keys)

    def search_backdrop(self, title: str, year: Any = None) -> str:
        """Return the full backdrop URL of the best match, or "" when none matches."""
        key = self._keys.next_key()
        if key is None:
            raise EnrichmentUnavailable("TMDB API key not configured")

        clean_title, title_year = split_title_year(title)
        wanted_year = title_year or (str(year) if year else None)

        params = {"query": clean_title, "language": "zh-CN"}
        if wanted_year:
            params["year"] = wanted_year

        # sessions are not shared across aggregator threads
        session = self._session_factory()
        try:
            resp = session.get(
                f"{self._base}/search/movie",
                params=params,
                headers={"Accept": "application/json", "Authorization": f"Bearer {key}"},
                timeout=self._timeout,
            )
            try:
                if resp.status_code != 200:
                    raise UpstreamStatusError(resp.status_code, f"{self._base}/search/movie")
                try:
                    payload = resp.json()
                except ValueError as exc:
                    raise DeserializationError("failed to parse TMDB response") from exc
            finally:
                resp.close()
        finally:
            session.close()

        candidates = [Candidate.from_payload(item) for item in (payload or {}).get("results") or []]
        if not candidates:
            logger.debug("TMDB: no results: title=%s", title)
            return ""

        best = select_best(candidates, clean_title, wanted_year)
        if best is None:
            return ""
        logger.debug("TMDB: matched: title=%s matched=%s score=%.1f", title, best.candidate.title, best.score)
        return f"{self._image_base}{best.candidate.backdrop_path}"
