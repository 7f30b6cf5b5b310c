from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class FetchAttempt:
    url: str
    attempt: int
    proxy: Optional[str]
    user_agent: Optional[str]


@dataclass(frozen=True)
class Candidate:
    """One enrichment search result."""

    title: str
    original_title: str = ""
    backdrop_path: str = ""
    release_date: str = ""
    vote_average: float = 0.0
    popularity: float = 0.0

    @property
    def year(self) -> Optional[int]:
        head = self.release_date[:4]
        if len(head) == 4 and head.isdigit():
            return int(head)
        return None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Candidate":
        return cls(
            title=payload.get("title") or "",
            original_title=payload.get("original_title") or "",
            backdrop_path=payload.get("backdrop_path") or "",
            release_date=payload.get("release_date") or "",
            vote_average=float(payload.get("vote_average") or 0.0),
            popularity=float(payload.get("popularity") or 0.0),
        )


@dataclass(frozen=True)
class MatchResult:
    candidate: Candidate
    score: float


@dataclass
class Subject:
    id: str
    title: str
    rate: str = ""
    cover: str = ""
    url: str = ""
    episode_info: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Subject":
        return cls(
            id=str(payload.get("id") or ""),
            title=payload.get("title") or "",
            rate=payload.get("rate") or "",
            cover=payload.get("cover") or "",
            url=payload.get("url") or "",
            episode_info=payload.get("episode_info") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CategoryData:
    name: str
    data: List[Subject] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "data": [s.to_dict() for s in self.data]}


@dataclass
class SubjectAbstract:
    id: str
    title: str
    rate: str = ""
    url: str = ""
    types: List[str] = field(default_factory=list)
    release_year: str = ""
    directors: List[str] = field(default_factory=list)
    actors: List[str] = field(default_factory=list)
    duration: str = ""
    region: str = ""
    episodes_count: str = ""
    short_comment: Optional[Dict[str, str]] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SubjectAbstract":
        comment = payload.get("short_comment")
        return cls(
            id=str(payload.get("id") or ""),
            title=payload.get("title") or "",
            rate=payload.get("rate") or "",
            url=payload.get("url") or "",
            types=list(payload.get("types") or []),
            release_year=payload.get("release_year") or "",
            directors=list(payload.get("directors") or []),
            actors=list(payload.get("actors") or []),
            duration=payload.get("duration") or "",
            region=payload.get("region") or "",
            episodes_count=payload.get("episodes_count") or "",
            short_comment=dict(comment) if isinstance(comment, dict) else None,
        )


@dataclass
class HeroMovie:
    id: str
    title: str
    rate: str
    cover: str
    poster_horizontal: str
    poster_vertical: str
    url: str
    episode_info: str = ""
    genres: List[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"page": self.page, "limit": self.limit, "total": self.total, "hasMore": self.has_more}


@dataclass(frozen=True)
class DataSetResult:
    """What the catalog hands back to a request handler."""

    data: Any
    cache_hit: bool
    source: str
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApiStats:
    path: str
    total_calls: int = 0
    success_calls: int = 0
    error_calls: int = 0
    avg_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0


@dataclass(frozen=True)
class DailyStats:
    date: str
    total_calls: int
    avg_latency: float


@dataclass(frozen=True)
class OverallStats:
    total_api_calls: int
    today_api_calls: int
    avg_latency_ms: float
    cache_hit_rate: float
    error_rate: float
    top_endpoints: List[ApiStats]
    daily_trend: List[DailyStats]
    uptime_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
