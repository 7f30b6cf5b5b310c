"""Cached movie catalog aggregator.

Fetches listings and details from the upstream content API through a
retrying, proxy-rotating fetcher, enriches hero banners with backdrops
from the enrichment API, caches assembled data sets in Redis and keeps
per-endpoint call statistics.

Key modules:
    fetcher     -- ResilientFetcher with proxy/User-Agent rotation and retries
    backoff     -- BackoffStrategy for exponential retry delays
    rotation    -- ProxyRotator, KeyRotator and the shared AtomicCounter
    matcher     -- candidate scoring and best-match selection
    aggregator  -- ConcurrentAggregator, Deadline and SubTask
    cache       -- CacheStore, a JSON adapter over Redis with TTLs
    metrics     -- MetricsRecorder for per-endpoint statistics
    douban      -- DoubanClient, typed upstream content calls
    tmdb        -- TMDBClient, backdrop enrichment
    catalog     -- CatalogService, the cache-aside data sets
    config      -- Settings loaded from the environment
    models      -- dataclasses shared across modules
    errors      -- exception hierarchy
"""

__version__ = "0.1.0"
