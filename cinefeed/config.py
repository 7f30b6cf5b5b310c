from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv


@dataclass(frozen=True)
class CacheTTL:
    hero: timedelta = timedelta(hours=6)
    detail: timedelta = timedelta(hours=24)
    category: timedelta = timedelta(hours=1)
    search: timedelta = timedelta(minutes=30)
    default: timedelta = timedelta(hours=1)


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379"
    douban_proxies: Tuple[str, ...] = ()
    tmdb_api_keys: Tuple[str, ...] = ()
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_image_base: str = "https://image.tmdb.org/t/p/original"
    cache_ttl: CacheTTL = field(default_factory=CacheTTL)
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 1.0
    fetch_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    per_item_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "Settings":
        """Build settings from the environment (and a .env file when present)."""
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        return cls(
            redis_url=env.get("REDIS_URL") or "redis://localhost:6379",
            douban_proxies=_split_list(env.get("DOUBAN_API_PROXY", "")),
            tmdb_api_keys=_split_list(env.get("TMDB_API_KEY", "")),
            tmdb_base_url=env.get("TMDB_BASE_URL") or "https://api.themoviedb.org/3",
            tmdb_image_base=env.get("TMDB_IMAGE_BASE") or "https://image.tmdb.org/t/p/original",
            cache_ttl=CacheTTL(
                hero=_minutes(env, "CACHE_TTL_HERO", 360),
                detail=_minutes(env, "CACHE_TTL_DETAIL", 1440),
                category=_minutes(env, "CACHE_TTL_CATEGORY", 60),
                search=_minutes(env, "CACHE_TTL_SEARCH", 30),
                default=_minutes(env, "CACHE_TTL_DEFAULT", 60),
            ),
            fetch_retries=int(_positive(env, "FETCH_RETRIES", 3)),
            fetch_backoff_seconds=_positive(env, "FETCH_BACKOFF_SECONDS", 1.0),
            fetch_timeout_seconds=_positive(env, "FETCH_TIMEOUT_SECONDS", 10.0),
            request_timeout_seconds=_positive(env, "REQUEST_TIMEOUT_SECONDS", 30.0),
            per_item_timeout_seconds=_positive(env, "PER_ITEM_TIMEOUT_SECONDS", 10.0),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _positive(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _minutes(env: Mapping[str, str], key: str, default: int) -> timedelta:
    raw = env.get(key, "")
    if raw.isdigit() and int(raw) > 0:
        return timedelta(minutes=int(raw))
    return timedelta(minutes=default)
