from __future__ import annotations

from typing import Optional


class CinefeedError(Exception):
    """Base class for every error raised by this package."""


class UpstreamStatusError(CinefeedError):
    """A single attempt got a non-2xx response."""

    def __init__(self, status_code: int, url: str) -> None:
        super().__init__(f"HTTP {status_code}: {url}")
        self.status_code = status_code
        self.url = url

    @property
    def rate_limited(self) -> bool:
        return self.status_code in (403, 429)


class FetchExhausted(CinefeedError):
    """Every attempt of a retry loop failed; wraps the last observed error."""

    def __init__(self, url: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"all {attempts} attempts failed for {url}: {last_error!r}")
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class DeserializationError(CinefeedError):
    """A payload could not be decoded from JSON."""


class CacheMiss(CinefeedError):
    """The key is not present in the store."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key


class CacheBackendError(CinefeedError):
    """The store could not be reached or rejected the command."""


class EnrichmentUnavailable(CinefeedError):
    """No enrichment credentials are configured."""


class NoPrimaryData(CinefeedError):
    """An aggregation produced no usable primary data."""
