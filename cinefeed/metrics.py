from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List

from redis import Redis
from redis.exceptions import RedisError, WatchError

from .errors import CacheBackendError
from .models import ApiStats, DailyStats, OverallStats

logger = logging.getLogger(__name__)

PATH_KEY = "metrics:path:{path}"
DAILY_KEY = "metrics:daily:{date}"
HOURLY_KEY = "metrics:hourly:{hour}"
GLOBAL_TOTAL_KEY = "metrics:global:total"
GLOBAL_LATENCY_KEY = "metrics:global:latency_sum"
PATHS_KEY = "metrics:paths"
START_TIME_KEY = "metrics:server:start_time"

DAILY_RETENTION = timedelta(days=30)
HOURLY_RETENTION = timedelta(hours=48)
TOP_ENDPOINTS = 10
TREND_DAYS = 7


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _int(value: Any) -> int:
    try:
        return int(float(value)) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def normalize_path(path: str) -> str:
    """Collapse numeric segments so /detail/123 and /detail/456 share a bucket."""
    return "/".join(":id" if part.isascii() and part.isdigit() else part for part in path.split("/"))


class Observation:
    """Mutable outcome filled in by the caller inside MetricsRecorder.observe()."""

    def __init__(self) -> None:
        self.status_code = 200
        self.cache_hit = False


class MetricsRecorder:
    """Per-endpoint call statistics kept in Redis.

    One record() call updates, in a single MULTI/EXEC transaction, the
    path hash, the global counters, the daily and hourly buckets and the
    set of known paths. Min/max latency are compare-and-set under WATCH on
    the path hash so concurrent writers never loosen them.
    """

    def __init__(self, client: Redis, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock())

    def record(self, path: str, status_code: int, latency_ms: float, cache_hit: bool) -> None:
        now = self._now()
        path_key = PATH_KEY.format(path=path)
        daily_key = DAILY_KEY.format(date=now.strftime("%Y-%m-%d"))
        hourly_key = HOURLY_KEY.format(hour=now.strftime("%Y-%m-%d-%H"))
        latency = float(latency_ms)
        success = 200 <= int(status_code) < 400

        try:
            with self._client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(path_key)
                        current_min, current_max = pipe.hmget(path_key, "min_latency", "max_latency")
                        pipe.multi()

                        pipe.hincrby(path_key, "total", 1)
                        pipe.hincrbyfloat(path_key, "latency_sum", latency)
                        if current_min is None or latency < _float(current_min):
                            pipe.hset(path_key, "min_latency", latency)
                        if current_max is None or latency > _float(current_max):
                            pipe.hset(path_key, "max_latency", latency)
                        pipe.hincrby(path_key, "success" if success else "error", 1)
                        pipe.hincrby(path_key, "cache_hits" if cache_hit else "cache_misses", 1)

                        pipe.hincrby(daily_key, "total", 1)
                        pipe.hincrbyfloat(daily_key, "latency_sum", latency)
                        pipe.expire(daily_key, DAILY_RETENTION)

                        pipe.hincrby(hourly_key, "total", 1)
                        pipe.expire(hourly_key, HOURLY_RETENTION)

                        pipe.incr(GLOBAL_TOTAL_KEY)
                        pipe.incrbyfloat(GLOBAL_LATENCY_KEY, latency)
                        pipe.sadd(PATHS_KEY, path)

                        pipe.execute()
                        return
                    except WatchError:
                        continue
        except RedisError as exc:
            logger.warning("Failed to record metrics: path=%s error=%s", path, exc)
            raise CacheBackendError(f"metrics record error: {exc}") from exc

    @contextmanager
    def observe(self, path: str) -> Iterator[Observation]:
        """Time the enclosed block and record it; failures inside count as 500."""
        obs = Observation()
        start = time.perf_counter()
        try:
            yield obs
        except Exception:
            obs.status_code = 500
            raise
        finally:
            if path.startswith("/api/"):
                latency_ms = (time.perf_counter() - start) * 1000.0
                try:
                    self.record(normalize_path(path), obs.status_code, latency_ms, obs.cache_hit)
                except CacheBackendError:
                    pass  # already logged by record()

    def stats_for(self, path: str) -> ApiStats:
        try:
            raw = self._client.hgetall(PATH_KEY.format(path=path))
        except RedisError as exc:
            raise CacheBackendError(f"metrics read error: {exc}") from exc
        if not raw:
            return ApiStats(path=path)

        fields = {_text(k): v for k, v in raw.items()}
        total = _int(fields.get("total"))
        latency_sum = _float(fields.get("latency_sum"))
        return ApiStats(
            path=path,
            total_calls=total,
            success_calls=_int(fields.get("success")),
            error_calls=_int(fields.get("error")),
            avg_latency_ms=latency_sum / total if total else 0.0,
            max_latency_ms=_float(fields.get("max_latency")),
            min_latency_ms=_float(fields.get("min_latency")),
            cache_hits=_int(fields.get("cache_hits")),
            cache_misses=_int(fields.get("cache_misses")),
        )

    def overall_stats(self) -> OverallStats:
        now = self._now()
        try:
            total = _int(self._client.get(GLOBAL_TOTAL_KEY))
            latency_sum = _float(self._client.get(GLOBAL_LATENCY_KEY))
            today_calls = _int(self._client.hget(DAILY_KEY.format(date=now.strftime("%Y-%m-%d")), "total"))
            paths = [_text(p) for p in self._client.smembers(PATHS_KEY)]
            start_time = self._client.get(START_TIME_KEY)
        except RedisError as exc:
            raise CacheBackendError(f"metrics read error: {exc}") from exc

        endpoints: List[ApiStats] = []
        hits = misses = errors = 0
        for path in paths:
            stats = self.stats_for(path)
            if stats.total_calls <= 0:
                continue
            endpoints.append(stats)
            hits += stats.cache_hits
            misses += stats.cache_misses
            errors += stats.error_calls

        endpoints.sort(key=lambda s: s.total_calls, reverse=True)

        uptime = 0
        if start_time is not None and _int(start_time) > 0:
            uptime = int(self._clock()) - _int(start_time)

        return OverallStats(
            total_api_calls=total,
            today_api_calls=today_calls,
            avg_latency_ms=latency_sum / total if total else 0.0,
            cache_hit_rate=hits / (hits + misses) * 100 if hits + misses else 0.0,
            error_rate=errors / total * 100 if total else 0.0,
            top_endpoints=endpoints[:TOP_ENDPOINTS],
            daily_trend=self._daily_trend(now, TREND_DAYS),
            uptime_seconds=uptime,
        )

    def _daily_trend(self, now: datetime, days: int) -> List[DailyStats]:
        trend: List[DailyStats] = []
        for offset in range(days - 1, -1, -1):
            date = (now - timedelta(days=offset)).strftime("%Y-%m-%d")
            try:
                raw: Dict[Any, Any] = self._client.hgetall(DAILY_KEY.format(date=date))
            except RedisError as exc:
                raise CacheBackendError(f"metrics read error: {exc}") from exc
            fields = {_text(k): v for k, v in raw.items()}
            total = _int(fields.get("total"))
            latency_sum = _float(fields.get("latency_sum"))
            trend.append(DailyStats(date=date, total_calls=total, avg_latency=latency_sum / total if total else 0.0))
        return trend

    def record_server_start(self, keep_existing: bool = False) -> None:
        """Store the process start time; with keep_existing an earlier start is left alone."""
        try:
            self._client.set(START_TIME_KEY, int(self._clock()), nx=keep_existing)
        except RedisError as exc:
            logger.warning("Failed to record server start: %s", exc)

    def reset(self) -> int:
        """Delete every metrics key; returns how many were removed."""
        try:
            keys = self._client.keys("metrics:*")
            if not keys:
                return 0
            return int(self._client.delete(*keys))
        except RedisError as exc:
            raise CacheBackendError(f"metrics reset error: {exc}") from exc

