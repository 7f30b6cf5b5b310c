from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

from curl_cffi import requests as curl_requests

from .backoff import BackoffStrategy
from .errors import FetchExhausted, UpstreamStatusError
from .models import FetchAttempt
from .rotation import ProxyRotator

logger = logging.getLogger(__name__)

USER_AGENTS = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 18_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.1 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36",
)

DEFAULT_REFERER = "https://movie.douban.com/"


def _default_session() -> Any:
    return curl_requests.Session(impersonate="chrome120")


class ResilientFetcher:
    """One logical HTTP GET with retries, proxy substitution and backoff.

    - Each attempt draws its own proxy; the URL is rewritten to
      proxy + path?query only when the host belongs to the upstream domain.
    - Direct attempts carry a random browser User-Agent and static headers.
    - Any transport error or non-2xx status is retried; 403/429 are logged
      as rate limiting.
    - No sleep after the final attempt. Exhaustion raises FetchExhausted.
    """

    def __init__(
        self,
        proxies: Optional[ProxyRotator] = None,
        retries: int = 3,
        backoff: Optional[BackoffStrategy] = None,
        timeout: float = 10,
        upstream_domain: str = "douban.com",
        session_factory: Callable[[], Any] = _default_session,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self._proxies = proxies or ProxyRotator()
        self._retries = retries
        self._backoff = backoff or BackoffStrategy(base_seconds=1.0)
        self._timeout = timeout
        self._upstream_domain = upstream_domain
        self._session_factory = session_factory
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def has_proxy(self) -> bool:
        return len(self._proxies) > 0

    @property
    def proxy_count(self) -> int:
        return len(self._proxies)

    def fetch(self, url: str) -> bytes:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self._retries + 1):
            plan = self._plan(url, attempt)
            target, headers = self._request_for(plan)
            try:
                return self._attempt(target, headers)
            except UpstreamStatusError as exc:
                last_error = exc
                if exc.rate_limited:
                    logger.warning("Request rate limited: attempt=%d status=%d url=%s", attempt, exc.status_code, url)
                else:
                    logger.warning("Request failed: attempt=%d status=%d url=%s", attempt, exc.status_code, url)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("Request failed: attempt=%d error=%r url=%s", attempt, exc, url)

            if attempt < self._retries:
                self._sleep(self._backoff.get_sleep(attempt))

        raise FetchExhausted(url, self._retries, last_error) from last_error

    def _plan(self, url: str, attempt: int) -> FetchAttempt:
        proxy = None
        host = urlsplit(url).hostname or ""
        if self._upstream_domain and self._upstream_domain in host:
            proxy = self._proxies.pick()
        user_agent = None if proxy else self._rng.choice(USER_AGENTS)
        return FetchAttempt(url=url, attempt=attempt, proxy=proxy, user_agent=user_agent)

    @staticmethod
    def _request_for(plan: FetchAttempt) -> Tuple[str, Optional[Dict[str, str]]]:
        if plan.proxy:
            parts = urlsplit(plan.url)
            path = parts.path or "/"
            if parts.query:
                path = f"{path}?{parts.query}"
            # the proxy sets its own headers
            return f"{plan.proxy.rstrip('/')}{path}", None

        headers = {
            "User-Agent": plan.user_agent or USER_AGENTS[0],
            "Referer": DEFAULT_REFERER,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            "Connection": "keep-alive",
            "Cache-Control": "no-cache",
        }
        return plan.url, headers

    def _attempt(self, target: str, headers: Optional[Dict[str, str]]) -> bytes:
        session = self._session_factory()
        try:
            resp = session.get(target, headers=headers, timeout=self._timeout)
            status = int(getattr(resp, "status_code", 0) or 0)
            if not 200 <= status < 300:
                raise UpstreamStatusError(status, target)
            return bytes(resp.content)
        finally:
            session.close()
