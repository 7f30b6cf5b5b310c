from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from .aggregator import ConcurrentAggregator, Deadline, SubTask
from .cache import CacheStore
from .config import CacheTTL
from .douban import DoubanClient
from .errors import CacheBackendError, NoPrimaryData
from .models import CategoryData, DataSetResult, HeroMovie, Pagination, Subject, SubjectAbstract
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

CACHE_SOURCE = "redis-cache"
FRESH_SOURCE = "fresh"

HERO_KEY = "douban:hero:movies"
LATEST_KEY = "douban:latest:all"
MOVIES_KEY = "douban:movies:all"
TV_KEY = "douban:tv:all"
NEW_ALL_KEY = "douban:new:all"
TAGS_TTL = timedelta(hours=24)

HERO_POOL_SIZE = 20
HERO_COUNT = 5
CATEGORY_ITEMS = 24
CATEGORY_ESTIMATED_TOTAL = 100
MAX_PAGE_LIMIT = 50

# (display name, subject type, tag)
CategoryQuery = Tuple[str, str, str]

CATEGORY_TAGS: Dict[str, Tuple[str, str]] = {
    "in_theaters": ("热门", ""),
    "hot_movies": ("热门", "movie"),
    "hot_tv": ("热门", "tv"),
    "us_tv": ("美剧", "tv"),
    "jp_tv": ("日剧", "tv"),
    "kr_tv": ("韩剧", "tv"),
    "anime": ("日本动画", "tv"),
    "documentary": ("纪录片", "tv"),
    "variety": ("综艺", "tv"),
    "chinese_tv": ("国产剧", "tv"),
}

LATEST_CATEGORIES: Sequence[CategoryQuery] = (
    ("院线新片", "", "院线新片"),
    ("最新电影", "", "最新"),
    ("即将上映", "", "即将上映"),
    ("新剧上线", "tv", "最新"),
    ("本周口碑榜", "", "本周口碑榜"),
    ("热门趋势", "", "热门"),
)

MOVIE_CATEGORIES: Sequence[CategoryQuery] = (
    ("热门电影", "movie", "热门"),
    ("豆瓣高分", "movie", "豆瓣高分"),
    ("动作片", "movie", "动作"),
    ("喜剧片", "movie", "喜剧"),
    ("科幻片", "movie", "科幻"),
    ("惊悚片", "movie", "惊悚"),
    ("爱情片", "movie", "爱情"),
    ("动画电影", "movie", "动画"),
)

TV_CATEGORIES: Sequence[CategoryQuery] = (
    ("热门剧集", "tv", "热门"),
    ("国产剧", "tv", "国产剧"),
    ("美剧", "tv", "美剧"),
    ("日剧", "tv", "日剧"),
    ("韩剧", "tv", "韩剧"),
    ("英剧", "tv", "英剧"),
    ("综艺节目", "tv", "综艺"),
    ("日本动画", "tv", "日本动画"),
)

NEW_DEFAULT_CATEGORIES: Sequence[CategoryQuery] = (
    ("豆瓣热映", "", "热门"),
    ("热门电视", "tv", "热门"),
    ("国产剧", "tv", "国产剧"),
    ("综艺", "tv", "综艺"),
    ("美剧", "tv", "美剧"),
    ("日剧", "tv", "日剧"),
    ("韩剧", "tv", "韩剧"),
    ("日本动画", "tv", "日本动画"),
    ("纪录片", "tv", "纪录片"),
)

REGION_TAGS = {
    "大陆": "国产",
    "香港": "港剧",
    "台湾": "台剧",
    "美国": "美剧",
    "韩国": "韩剧",
    "日本": "日剧",
    "英国": "英剧",
}

_INVISIBLE = re.compile(r"[\u200b-\u200f\u2028-\u202f\ufeff]")
_PAREN_YEAR = re.compile(r"\s*[\(（]\d{4}[\)）]\s*")


def _cache_key(prefix: str, *parts: Any) -> str:
    """Join percent-encoded parts under a prefix so a ":" inside a value cannot shift fields."""
    return ":".join([prefix, *(quote(str(part), safe="") for part in parts)])


@dataclass(frozen=True)
class NewFilters:
    type: str = ""
    year: str = ""
    region: str = ""
    genre: str = ""
    sort: str = "recommend"
    page: int = 1
    page_size: int = 30

    @property
    def active(self) -> bool:
        return bool(self.type or self.year or self.region or self.genre)

    def cache_key(self) -> str:
        if not self.active:
            return NEW_ALL_KEY
        return _cache_key("douban:new", self.type, self.year, self.region, self.genre, self.sort, self.page, self.page_size)

    def search_tag(self) -> str:
        if self.genre:
            return self.genre
        if self.region:
            if self.type == "tv":
                return REGION_TAGS.get(self.region, self.region)
            return self.region
        if self.year:
            return self.year
        if self.sort == "rank":
            return "高分"
        if self.sort == "time":
            return "最新"
        return "热门"

    def display_name(self) -> str:
        parts = [p for p in (self.year, self.region, self.genre) if p]
        if self.type == "movie":
            parts.append("电影")
        elif self.type == "tv":
            parts.append("电视剧")
        return " · ".join(parts) if parts else "热门"

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "year": self.year, "region": self.region, "genre": self.genre, "sort": self.sort}


def parse_rate(rate: str) -> float:
    try:
        return float(rate) if rate else 0.0
    except ValueError:
        return 0.0


def high_quality_poster(url: str) -> str:
    return url.replace("/view/photo/s_ratio_poster/", "/view/photo/l/", 1) if url else url


def clean_title_for_search(title: str) -> str:
    cleaned = _PAREN_YEAR.sub("", _INVISIBLE.sub("", title))
    parts = cleaned.split()
    return parts[0].strip() if parts else cleaned.strip()


def estimate_total(page: int, size: int, returned: int) -> Tuple[int, bool]:
    """Guess a pagination total from whether the page came back full."""
    if returned >= size:
        return page * size + size, True
    return (page - 1) * size + returned, False


class CatalogService:
    """Cache-aside data sets assembled from concurrent upstream fetches.

    Every public read returns a DataSetResult whose cache_hit flag callers
    can forward into response metadata and metrics.
    """

    def __init__(
        self,
        douban: DoubanClient,
        cache: CacheStore,
        aggregator: ConcurrentAggregator,
        tmdb: Optional[TMDBClient] = None,
        ttl: Optional[CacheTTL] = None,
        request_timeout: float = 30.0,
        per_item_timeout: float = 10.0,
    ) -> None:
        self._douban = douban
        self._tmdb = tmdb
        self._cache = cache
        self._aggregator = aggregator
        self._ttl = ttl or CacheTTL()
        self._request_timeout = request_timeout
        self._per_item_timeout = per_item_timeout

    # -- hero -------------------------------------------------------------

    def hero(self) -> DataSetResult:
        hit, cached = self._cache.lookup(HERO_KEY)
        if hit:
            return DataSetResult(cached, True, CACHE_SOURCE)

        if self._douban.has_proxy:
            logger.info("Fetching hero banner data: proxies=%d", self._douban.proxy_count)
        else:
            logger.info("Fetching hero banner data")

        try:
            subjects = self._douban.search_subjects("", "热门", HERO_POOL_SIZE, 0)
        except Exception as exc:  # noqa: BLE001
            raise NoPrimaryData("no movie data for hero banner") from exc
        if not subjects:
            raise NoPrimaryData("no movie data for hero banner")

        ranked = sorted(subjects, key=lambda s: parse_rate(s.rate), reverse=True)[:HERO_COUNT]
        deadline = Deadline(self._request_timeout)
        tasks = [
            SubTask(
                name=f"hero:{m.id}",
                fn=partial(self._hero_item, m, deadline.child(self._per_item_timeout)),
                fallback=self._basic_hero(m).to_dict(),
            )
            for m in ranked
        ]
        heroes = [h for h in self._aggregator.run(tasks, per_task_timeout=self._per_item_timeout, deadline=deadline) if h]

        if heroes:
            self._cache.store(HERO_KEY, heroes, self._ttl.hero)
        logger.info("Hero banner data ready: count=%d", len(heroes))
        return DataSetResult(heroes, False, FRESH_SOURCE)

    @staticmethod
    def _basic_hero(m: Subject) -> HeroMovie:
        cover = high_quality_poster(m.cover)
        return HeroMovie(
            id=m.id,
            title=m.title,
            rate=m.rate,
            cover=cover,
            poster_horizontal=cover,
            poster_vertical=cover,
            url=m.url,
            episode_info=m.episode_info,
        )

    def _hero_item(self, m: Subject, bound: Deadline) -> Dict[str, Any]:
        hero = self._basic_hero(m)

        detail: Optional[SubjectAbstract] = self._aggregator.race(
            [partial(self._douban.subject_abstract, m.id)], None, [None], deadline=bound, name=f"detail:{m.id}"
        )[0]
        release_year = ""
        if detail is not None:
            hero.genres = list(detail.types)
            release_year = detail.release_year
            if detail.short_comment:
                hero.description = detail.short_comment.get("content") or ""

        if self._tmdb is not None and self._tmdb.is_configured:
            backdrop = self._aggregator.race(
                [partial(self._tmdb.search_backdrop, m.title, release_year)],
                None,
                [""],
                deadline=bound,
                name=f"backdrop:{m.id}",
            )[0]
            if backdrop:
                hero.poster_horizontal = backdrop
            else:
                logger.debug("No backdrop, using cover as banner: title=%s", m.title)
        return hero.to_dict()

    # -- multi-category lists --------------------------------------------

    def latest(self) -> DataSetResult:
        return self._category_lists(LATEST_KEY, LATEST_CATEGORIES, self._ttl.category)

    def movies(self) -> DataSetResult:
        return self._category_lists(MOVIES_KEY, MOVIE_CATEGORIES, self._ttl.category)

    def tv(self) -> DataSetResult:
        return self._category_lists(TV_KEY, TV_CATEGORIES, self._ttl.category)

    def new(self, filters: Optional[NewFilters] = None) -> DataSetResult:
        filters = filters or NewFilters()
        if filters.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= filters.page_size <= MAX_PAGE_LIMIT:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_LIMIT}")
        key = filters.cache_key()
        hit, cached = self._cache.lookup(key)
        if hit:
            data, pagination = (cached["data"], cached.get("pagination")) if isinstance(cached, dict) else (cached, None)
            extra = {"filters": filters.to_dict()}
            if pagination:
                extra["pagination"] = pagination
            return DataSetResult(data, True, CACHE_SOURCE, extra)

        if not filters.active:
            result = self._category_lists(key, NEW_DEFAULT_CATEGORIES, self._ttl.category, check_cache=False)
            return DataSetResult(result.data, False, FRESH_SOURCE, {"filters": filters.to_dict()})

        subject_type = "tv" if filters.type == "tv" else "movie"
        tag = filters.search_tag()
        start = (filters.page - 1) * filters.page_size
        try:
            subjects = self._douban.search_subjects(subject_type, tag, filters.page_size, start)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tag search failed: tag=%s error=%s", tag, exc)
            subjects = []

        total, has_more = estimate_total(filters.page, filters.page_size, len(subjects))
        data = [CategoryData(filters.display_name(), subjects).to_dict()]
        pagination = {"page": filters.page, "pageSize": filters.page_size, "total": total, "hasMore": has_more}
        if subjects:
            self._cache.store(key, {"data": data, "pagination": pagination}, self._ttl.category)
        return DataSetResult(data, False, FRESH_SOURCE, {"filters": filters.to_dict(), "pagination": pagination})

    def _category_lists(
        self,
        key: str,
        categories: Sequence[CategoryQuery],
        ttl: timedelta,
        check_cache: bool = True,
    ) -> DataSetResult:
        if check_cache:
            hit, cached = self._cache.lookup(key)
            if hit:
                return DataSetResult(cached, True, CACHE_SOURCE)

        logger.info("Fetching category lists: key=%s categories=%d", key, len(categories))
        tasks = [
            SubTask(
                name=f"category:{tag}",
                fn=partial(self._fetch_category, name, subject_type, tag),
                fallback=CategoryData(name).to_dict(),
            )
            for name, subject_type, tag in categories
        ]
        results = self._aggregator.run(
            tasks,
            per_task_timeout=self._per_item_timeout,
            deadline=Deadline(self._request_timeout),
        )

        total_items = sum(len(r["data"]) for r in results)
        if total_items:
            self._cache.store(key, results, ttl)
        else:
            logger.warning("Every category came back empty, not caching: key=%s", key)
        logger.info("Category lists ready: key=%s items=%d", key, total_items)
        return DataSetResult(results, False, FRESH_SOURCE, {"totalCategories": len(results), "totalItems": total_items})

    def _fetch_category(self, name: str, subject_type: str, tag: str) -> Dict[str, Any]:
        subjects = self._douban.search_subjects(subject_type, tag, CATEGORY_ITEMS, 0)
        logger.debug("Category fetched: tag=%s count=%d", tag, len(subjects))
        return CategoryData(name, subjects).to_dict()

    # -- paginated category ----------------------------------------------

    def category(self, name: str = "in_theaters", page: int = 1, limit: int = 20) -> DataSetResult:
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        if name not in CATEGORY_TAGS:
            raise ValueError(f"unknown category: {name}")
        tag, subject_type = CATEGORY_TAGS[name]

        start = (page - 1) * limit
        key = f"douban:category:{name}:page{page}:limit{limit}"

        hit, cached = self._cache.lookup(key)
        if hit:
            subjects = cached.get("subjects") or []
            total = int(cached.get("total") or 0)
            pagination = Pagination(page, limit, total, start + len(subjects) < total)
            return DataSetResult({"subjects": subjects, "pagination": pagination.to_dict()}, True, CACHE_SOURCE)

        logger.info("Fetching category page: category=%s page=%d limit=%d", name, page, limit)
        try:
            subjects = [s.to_dict() for s in self._douban.search_subjects(subject_type, tag, limit, start)]
        except Exception as exc:  # noqa: BLE001
            raise NoPrimaryData(f"category {name} unavailable") from exc

        total = CATEGORY_ESTIMATED_TOTAL if len(subjects) >= limit else start + len(subjects)
        self._cache.store(key, {"subjects": subjects, "total": total}, self._ttl.category)
        pagination = Pagination(page, limit, total, len(subjects) == limit)
        return DataSetResult({"subjects": subjects, "pagination": pagination.to_dict()}, False, FRESH_SOURCE)

    # -- detail -----------------------------------------------------------

    def detail(self, subject_id: str) -> DataSetResult:
        if not subject_id:
            raise ValueError("subject id is required")
        key = f"douban:detail:{subject_id}"
        hit, cached = self._cache.lookup(key)
        if hit:
            return DataSetResult(cached, True, CACHE_SOURCE)

        try:
            abstract = self._douban.subject_abstract(subject_id)
        except Exception as exc:  # noqa: BLE001
            raise NoPrimaryData(f"subject {subject_id} not found") from exc

        query = clean_title_for_search(abstract.title)
        cover, photos, comments, recommendations = self._aggregator.race(
            [
                partial(self._suggested_cover, query, subject_id),
                partial(self._douban.photos, subject_id, 6, "S"),
                partial(self._douban.comments, subject_id, 5),
                partial(self._douban.recommendations, subject_id),
            ],
            self._per_item_timeout,
            ["", [], [], []],
            deadline=Deadline(self._request_timeout),
            name=f"detail:{subject_id}",
        )

        short_comment = None
        if abstract.short_comment:
            short_comment = {
                "content": abstract.short_comment.get("content") or "",
                "author": {"name": abstract.short_comment.get("author") or ""},
            }

        data = {
            "id": abstract.id,
            "title": abstract.title,
            "rate": abstract.rate,
            "url": abstract.url,
            "cover": cover,
            "types": abstract.types,
            "release_year": abstract.release_year,
            "directors": abstract.directors,
            "actors": abstract.actors,
            "duration": abstract.duration,
            "region": abstract.region,
            "episodes_count": abstract.episodes_count,
            "short_comment": short_comment,
            "photos": photos,
            "comments": comments,
            "recommendations": [r.to_dict() for r in recommendations[:6]],
        }
        self._cache.store(key, data, self._ttl.detail)
        return DataSetResult(data, False, FRESH_SOURCE)

    def _suggested_cover(self, query: str, subject_id: str) -> str:
        if not query:
            return ""
        for item in self._douban.subject_suggest(query):
            if str(item.get("id")) == subject_id:
                return item.get("img") or ""
        return ""

    # -- search -----------------------------------------------------------

    def search(
        self,
        query: str,
        subject_type: str = "",
        sort: str = "U",
        genres: str = "",
        year_range: str = "",
        start: int = 0,
        limit: int = 20,
    ) -> DataSetResult:
        if not query:
            raise ValueError("search query is required")
        key = _cache_key("douban:search", query, subject_type, sort, genres, year_range, start, limit)
        hit, cached = self._cache.lookup(key)
        if hit:
            return DataSetResult(cached, True, CACHE_SOURCE)

        logger.info("Searching: query=%s type=%s", query, subject_type)
        suggest_call = partial(self._filtered_suggest, query, subject_type)
        if subject_type:
            tags = "电视剧" if subject_type == "tv" else "电影"
            advanced_call = partial(self._douban.advanced_search, tags, sort, genres, year_range, start, limit)
        else:
            advanced_call = list

        suggest, advanced = self._aggregator.race(
            [suggest_call, advanced_call],
            self._per_item_timeout,
            [[], []],
            deadline=Deadline(self._request_timeout),
            name=f"search:{query}",
        )
        data = {"suggest": suggest, "advanced": [s.to_dict() for s in advanced]}
        self._cache.store(key, data, self._ttl.search)
        logger.info("Search done: suggest=%d advanced=%d", len(suggest), len(advanced))
        return DataSetResult(data, False, FRESH_SOURCE, {"query": query, "type": subject_type})

    def _filtered_suggest(self, query: str, subject_type: str) -> List[Dict[str, Any]]:
        items = self._douban.subject_suggest(query)
        if subject_type in ("movie", "tv"):
            items = [item for item in items if item.get("type") == subject_type]
        return items

    def search_tags(self, subject_type: str) -> DataSetResult:
        if subject_type not in ("movie", "tv"):
            raise ValueError("type must be movie or tv")
        key = f"douban:tags:{subject_type}"
        hit, cached = self._cache.lookup(key)
        if hit:
            return DataSetResult(cached, True, CACHE_SOURCE)
        tags = self._douban.search_tags(subject_type)
        if tags:
            self._cache.store(key, tags, TAGS_TTL)
        return DataSetResult(tags, False, FRESH_SOURCE, {"type": subject_type})

    # -- invalidation -----------------------------------------------------

    def invalidate_hero(self) -> None:
        self._cache.delete(HERO_KEY)

    def invalidate_latest(self) -> None:
        self._cache.delete(LATEST_KEY)

    def invalidate_movies(self) -> None:
        self._cache.delete(MOVIES_KEY)

    def invalidate_tv(self) -> None:
        self._cache.delete(TV_KEY)

    def invalidate_new(self) -> int:
        return self._cache.delete_pattern("douban:new:*")

    def invalidate_detail(self, subject_id: str) -> None:
        self._cache.delete(f"douban:detail:{subject_id}")

    def invalidate_all_details(self) -> int:
        return self._cache.delete_pattern("douban:detail:*")

    def invalidate_categories(self) -> int:
        deleted = self._cache.delete_pattern("douban:category:*")
        logger.info("Category page cache cleared: deleted=%d", deleted)
        return deleted

    def invalidate_search(self) -> int:
        searches = self._cache.delete_pattern("douban:search:*")
        tags = self._cache.delete_pattern("douban:tags:*")
        logger.info("Search cache cleared: search=%d tags=%d", searches, tags)
        return searches + tags

    def status(self) -> Dict[str, Any]:
        try:
            cache_ok = self._cache.ping()
        except CacheBackendError as exc:
            logger.warning("Cache ping failed: %s", exc)
            cache_ok = False
        return {
            "status": "ok" if cache_ok else "degraded",
            "cache_ok": cache_ok,
            "proxy_enabled": self._douban.has_proxy,
            "proxy_count": self._douban.proxy_count,
            "tmdb_enabled": bool(self._tmdb and self._tmdb.is_configured),
            "tmdb_key_count": self._tmdb.key_count if self._tmdb else 0,
        }
