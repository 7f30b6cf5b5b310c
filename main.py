from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from cinefeed.aggregator import ConcurrentAggregator
from cinefeed.backoff import BackoffStrategy
from cinefeed.cache import CacheStore
from cinefeed.catalog import CatalogService, NewFilters
from cinefeed.config import Settings
from cinefeed.douban import DoubanClient
from cinefeed.errors import CacheBackendError, NoPrimaryData
from cinefeed.fetcher import ResilientFetcher
from cinefeed.metrics import MetricsRecorder
from cinefeed.models import DataSetResult
from cinefeed.rotation import KeyRotator, ProxyRotator
from cinefeed.tmdb import TMDBClient

logger = logging.getLogger("cinefeed")


class Services:
    """Everything a command needs, wired from one Settings object."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.cache = CacheStore.from_url(settings.redis_url, settings.cache_ttl.default)
        self.metrics = MetricsRecorder(self.cache.client)
        fetcher = ResilientFetcher(
            proxies=ProxyRotator(settings.douban_proxies),
            retries=settings.fetch_retries,
            backoff=BackoffStrategy(base_seconds=settings.fetch_backoff_seconds),
            timeout=settings.fetch_timeout_seconds,
        )
        if fetcher.has_proxy:
            logger.info("Proxy enabled: count=%d", fetcher.proxy_count)
        self.aggregator = ConcurrentAggregator()
        self.catalog = CatalogService(
            douban=DoubanClient(fetcher),
            cache=self.cache,
            aggregator=self.aggregator,
            tmdb=TMDBClient(
                KeyRotator(settings.tmdb_api_keys),
                base_url=settings.tmdb_base_url,
                image_base=settings.tmdb_image_base,
            ),
            ttl=settings.cache_ttl,
            request_timeout=settings.request_timeout_seconds,
            per_item_timeout=settings.per_item_timeout_seconds,
        )

    def close(self) -> None:
        self.aggregator.close()
        self.cache.close()


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _emit_result(result: DataSetResult) -> None:
    _emit({"code": 200, "data": result.data, "source": result.source, **result.extra})


def _invalidate(services: Services, args: argparse.Namespace) -> Dict[str, Any]:
    catalog = services.catalog
    target = args.target
    if target == "detail" and args.id:
        catalog.invalidate_detail(args.id)
        return {"code": 200, "message": f"detail cache for {args.id} cleared"}

    handlers: Dict[str, Callable[[], Optional[int]]] = {
        "hero": catalog.invalidate_hero,
        "latest": catalog.invalidate_latest,
        "movies": catalog.invalidate_movies,
        "tv": catalog.invalidate_tv,
        "new": catalog.invalidate_new,
        "detail": catalog.invalidate_all_details,
        "category": catalog.invalidate_categories,
        "search": catalog.invalidate_search,
    }
    deleted = handlers[target]()
    message = f"{target} cache cleared"
    if deleted is not None:
        message += f" ({deleted} keys)"
    return {"code": 200, "message": message}


def run_command(services: Services, args: argparse.Namespace) -> int:
    catalog = services.catalog
    command = args.command
    # uptime counts from the first run after a metrics reset
    services.metrics.record_server_start(keep_existing=True)

    if command == "stats":
        if args.path:
            _emit({"code": 200, "data": services.metrics.stats_for(args.path).__dict__})
        else:
            _emit({"code": 200, "data": services.metrics.overall_stats().to_dict()})
        return 0
    if command == "reset-metrics":
        deleted = services.metrics.reset()
        _emit({"code": 200, "message": f"metrics reset ({deleted} keys)"})
        return 0
    if command == "status":
        _emit(catalog.status())
        return 0
    if command == "invalidate":
        _emit(_invalidate(services, args))
        return 0

    path = f"/api/v1/{command}" + (f"/{args.id}" if command == "detail" else "")
    with services.metrics.observe(path) as obs:
        try:
            if command == "hero":
                result = catalog.hero()
            elif command == "latest":
                result = catalog.latest()
            elif command == "movies":
                result = catalog.movies()
            elif command == "tv":
                result = catalog.tv()
            elif command == "new":
                result = catalog.new(
                    NewFilters(
                        type=args.type,
                        year=args.year,
                        region=args.region,
                        genre=args.genre,
                        sort=args.sort,
                        page=args.page,
                        page_size=args.page_size,
                    )
                )
            elif command == "category":
                result = catalog.category(args.name, args.page, args.limit)
            elif command == "detail":
                result = catalog.detail(args.id)
            elif command == "search":
                result = catalog.search(
                    args.query, args.type, args.sort, args.genres, args.year_range, args.start, args.limit
                )
            elif command == "tags":
                result = catalog.search_tags(args.type)
            else:
                raise ValueError(f"unknown command: {command}")
        except ValueError as exc:
            obs.status_code = 400
            _emit({"code": 400, "error": str(exc)})
            return 2
        except NoPrimaryData as exc:
            obs.status_code = 404 if command == "detail" else 500
            _emit({"code": obs.status_code, "error": str(exc)})
            return 1
        obs.cache_hit = result.cache_hit

    _emit_result(result)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cached movie catalog aggregator")
    parser.add_argument("--redis-url", default=None, help="Override REDIS_URL")
    parser.add_argument("--retries", type=int, default=None, help="Fetch attempts per request")
    parser.add_argument("--request-timeout", type=float, default=None, help="Whole-aggregation deadline in seconds")
    parser.add_argument("--item-timeout", type=float, default=None, help="Per sub-task deadline in seconds")
    parser.add_argument("--log-level", default=None, help="Logging level (default from LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", required=True)
    for name in ("hero", "latest", "movies", "tv", "status", "reset-metrics"):
        sub.add_parser(name)

    p_new = sub.add_parser("new", help="New content, optionally filtered")
    p_new.add_argument("--type", default="", choices=["", "movie", "tv"])
    p_new.add_argument("--year", default="")
    p_new.add_argument("--region", default="")
    p_new.add_argument("--genre", default="")
    p_new.add_argument("--sort", default="recommend")
    p_new.add_argument("--page", type=int, default=1)
    p_new.add_argument("--page-size", type=int, default=30)

    p_cat = sub.add_parser("category", help="One paginated category")
    p_cat.add_argument("name", nargs="?", default="in_theaters")
    p_cat.add_argument("--page", type=int, default=1)
    p_cat.add_argument("--limit", type=int, default=20)

    p_detail = sub.add_parser("detail", help="Subject detail")
    p_detail.add_argument("id")

    p_search = sub.add_parser("search", help="Search suggestions and advanced search")
    p_search.add_argument("query")
    p_search.add_argument("--type", default="", choices=["", "movie", "tv"])
    p_search.add_argument("--sort", default="U")
    p_search.add_argument("--genres", default="")
    p_search.add_argument("--year-range", default="")
    p_search.add_argument("--start", type=int, default=0)
    p_search.add_argument("--limit", type=int, default=20)

    p_tags = sub.add_parser("tags", help="Available search tags")
    p_tags.add_argument("type", choices=["movie", "tv"])

    p_stats = sub.add_parser("stats", help="Overall or per-path API statistics")
    p_stats.add_argument("--path", default="")

    p_inv = sub.add_parser("invalidate", help="Drop cached data sets")
    p_inv.add_argument("target", choices=["hero", "latest", "movies", "tv", "new", "detail", "category", "search"])
    p_inv.add_argument("--id", default="", help="Single detail id")
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = Settings.from_env()
    overrides: Dict[str, Any] = {}
    if args.redis_url:
        overrides["redis_url"] = args.redis_url
    if args.retries:
        overrides["fetch_retries"] = args.retries
    if args.request_timeout:
        overrides["request_timeout_seconds"] = args.request_timeout
    if args.item_timeout:
        overrides["per_item_timeout_seconds"] = args.item_timeout
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if overrides:
        settings = replace(settings, **overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    services = Services(settings)
    try:
        return run_command(services, args)
    except CacheBackendError as exc:
        logger.error("Store unavailable: %s", exc)
        _emit({"code": 500, "error": str(exc)})
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
