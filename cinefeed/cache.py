from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Optional, Tuple, Union

from redis import Redis
from redis.exceptions import RedisError

from .errors import CacheBackendError, CacheMiss, DeserializationError

logger = logging.getLogger(__name__)

TTLLike = Union[timedelta, int, float]

# ttl_remaining() result for keys with no expiry
NO_EXPIRY = timedelta.max


def _seconds(ttl: TTLLike) -> int:
    if isinstance(ttl, timedelta):
        return max(1, int(ttl.total_seconds()))
    return max(1, int(ttl))


class CacheStore:
    """JSON-valued adapter over a Redis TTL store.

    get() separates three outcomes: a value, CacheMiss, and
    CacheBackendError / DeserializationError. lookup() and store() are the
    fail-open wrappers request paths use: any error there counts as a miss
    or a skipped write and is only logged.
    """

    def __init__(self, client: Redis, default_ttl: TTLLike = timedelta(hours=1)) -> None:
        self._client = client
        self._default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, default_ttl: TTLLike = timedelta(hours=1)) -> "CacheStore":
        client = Redis.from_url(url, decode_responses=True)
        kwargs = client.connection_pool.connection_kwargs
        logger.info("Redis configured: addr=%s:%s", kwargs.get("host"), kwargs.get("port"))
        return cls(client, default_ttl)

    @property
    def client(self) -> Redis:
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as exc:
            raise CacheBackendError(f"redis ping error: {exc}") from exc

    def get(self, key: str) -> Any:
        try:
            raw = self._client.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"redis get error: {exc}") from exc
        if raw is None:
            raise CacheMiss(key)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise DeserializationError(f"failed to decode cached value for {key}") from exc

    def set(self, key: str, value: Any, ttl: Optional[TTLLike] = None) -> None:
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        try:
            self._client.set(key, payload, ex=_seconds(ttl if ttl is not None else self._default_ttl))
        except RedisError as exc:
            raise CacheBackendError(f"redis set error: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as exc:
            raise CacheBackendError(f"redis del error: {exc}") from exc

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob in one DEL; returns the number removed."""
        try:
            keys = self._client.keys(pattern)
            if not keys:
                return 0
            return int(self._client.delete(*keys))
        except RedisError as exc:
            raise CacheBackendError(f"redis delete pattern error: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            return self._client.exists(key) == 1
        except RedisError as exc:
            raise CacheBackendError(f"redis exists error: {exc}") from exc

    def ttl_remaining(self, key: str) -> Optional[timedelta]:
        """Remaining lifetime; None for a missing key, NO_EXPIRY for a persistent one."""
        try:
            seconds = self._client.ttl(key)
        except RedisError as exc:
            raise CacheBackendError(f"redis ttl error: {exc}") from exc
        if seconds == -2:
            return None
        if seconds == -1:
            return NO_EXPIRY
        return timedelta(seconds=seconds)

    def lookup(self, key: str) -> Tuple[bool, Any]:
        """Fail-open read: (True, value) on hit, (False, None) otherwise."""
        try:
            return True, self.get(key)
        except CacheMiss:
            return False, None
        except (CacheBackendError, DeserializationError) as exc:
            logger.warning("Cache read failed, treating as miss: key=%s error=%s", key, exc)
            return False, None

    def store(self, key: str, value: Any, ttl: Optional[TTLLike] = None) -> bool:
        """Fail-open write: returns False instead of raising on backend errors."""
        try:
            self.set(key, value, ttl)
            return True
        except CacheBackendError as exc:
            logger.warning("Cache write failed: key=%s error=%s", key, exc)
            return False

    def close(self) -> None:
        self._client.close()
