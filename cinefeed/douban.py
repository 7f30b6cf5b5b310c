from __future__ import annotations

import json
import logging
from typing import Any, Dict, List
from urllib.parse import quote, urlencode

from .errors import DeserializationError
from .fetcher import ResilientFetcher
from .models import Subject, SubjectAbstract

logger = logging.getLogger(__name__)

BASE_URL = "https://movie.douban.com"


def _decode(data: bytes, what: str) -> Any:
    try:
        return json.loads(data)
    except ValueError as exc:
        raise DeserializationError(f"failed to parse {what} response") from exc


class DoubanClient:
    """Typed calls against the upstream content API.

    Primary lookups raise on failure. Secondary lookups (suggestions,
    photos, comments, recommendations, tags) log and return an empty list.
    """

    def __init__(self, fetcher: ResilientFetcher, base_url: str = BASE_URL) -> None:
        self._fetcher = fetcher
        self._base = base_url.rstrip("/")

    @property
    def has_proxy(self) -> bool:
        return self._fetcher.has_proxy

    @property
    def proxy_count(self) -> int:
        return self._fetcher.proxy_count

    def _get_json(self, path: str, params: Dict[str, Any], what: str) -> Any:
        url = f"{self._base}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return _decode(self._fetcher.fetch(url), what)

    def search_subjects(self, subject_type: str, tag: str, limit: int, start: int) -> List[Subject]:
        payload = self._get_json(
            "/j/search_subjects",
            {"type": subject_type, "tag": tag, "page_limit": limit, "page_start": start},
            "subjects",
        )
        subjects = [Subject.from_payload(item) for item in (payload or {}).get("subjects") or []]
        logger.debug("Fetched subjects: tag=%s count=%d", tag, len(subjects))
        return subjects

    def subject_abstract(self, subject_id: str) -> SubjectAbstract:
        payload = self._get_json("/j/subject_abstract", {"subject_id": subject_id}, "subject abstract")
        subject = (payload or {}).get("subject")
        if not isinstance(subject, dict):
            raise DeserializationError(f"subject abstract for {subject_id} has no subject")
        return SubjectAbstract.from_payload(subject)

    def subject_suggest(self, query: str) -> List[Dict[str, Any]]:
        try:
            payload = self._get_json("/j/subject_suggest", {"q": query}, "suggestions")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch suggestions: query=%s error=%s", query, exc)
            return []
        return [item for item in payload or [] if isinstance(item, dict)]

    def photos(self, subject_id: str, count: int = 6, photo_type: str = "S") -> List[Dict[str, str]]:
        try:
            payload = self._get_json(
                f"/j/subject/{quote(subject_id)}/photos",
                {"type": photo_type, "start": 0, "count": count},
                "photos",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch photos: subject=%s error=%s", subject_id, exc)
            return []
        return [
            {"id": str(p.get("id") or ""), "image": p.get("image") or "", "thumb": p.get("thumb") or ""}
            for p in (payload or {}).get("photos") or []
        ]

    def comments(self, subject_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        try:
            payload = self._get_json(
                f"/j/subject/{quote(subject_id)}/comments",
                {"start": 0, "limit": limit, "sort": "new_score", "status": "P"},
                "comments",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch comments: subject=%s error=%s", subject_id, exc)
            return []
        return [
            {
                "id": str(c.get("id") or ""),
                "content": c.get("content") or "",
                "author": {"name": (c.get("author") or {}).get("name") or ""},
            }
            for c in (payload or {}).get("comments") or []
        ]

    def recommendations(self, subject_id: str) -> List[Subject]:
        try:
            payload = self._get_json(f"/j/subject/{quote(subject_id)}/recommendations", {}, "recommendations")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch recommendations: subject=%s error=%s", subject_id, exc)
            return []
        return [Subject.from_payload(r) for r in (payload or {}).get("recommendations") or []]

    def advanced_search(
        self,
        tags: str,
        sort: str,
        genres: str = "",
        year_range: str = "",
        start: int = 0,
        limit: int = 20,
    ) -> List[Subject]:
        params: Dict[str, Any] = {"tags": tags, "sort": sort, "range": "0,10", "start": start, "limit": limit}
        if genres:
            params["genres"] = genres
        if year_range:
            params["year_range"] = year_range
        payload = self._get_json("/j/new_search_subjects", params, "advanced search")
        return [Subject.from_payload(item) for item in (payload or {}).get("data") or []]

    def search_tags(self, subject_type: str) -> List[str]:
        try:
            payload = self._get_json("/j/search_tags", {"type": subject_type}, "tags")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch tags: type=%s error=%s", subject_type, exc)
            return []
        return [str(t) for t in (payload or {}).get("tags") or []]
