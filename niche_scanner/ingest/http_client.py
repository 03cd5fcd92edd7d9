"""Rate-limited HTTP client for marketplace calls with status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Optional

import httpx

from niche_scanner import metrics
from niche_scanner.config import settings
from niche_scanner.exceptions import (
    HTTPStatusFailure,
    RateLimitedError,
    RequestTimeoutError,
    TransportError,
)
from niche_scanner.ingest.rate_limiter import RateLimiter
from niche_scanner.utils.time import utcnow

logger = logging.getLogger(__name__)

# Seconds a host stays in cooldown after a 429 without Retry-After
DEFAULT_RATE_LIMIT_COOLDOWN = 60


class CallCounter:
    """
    Process-wide advisory count of marketplace calls per UTC day.

    Logs once the warning threshold is crossed. Never blocks a call.
    """

    def __init__(
        self,
        daily_quota: Optional[int] = None,
        warning_threshold: Optional[int] = None,
    ):
        self.daily_quota = daily_quota or settings.daily_call_quota
        self.warning_threshold = warning_threshold or settings.quota_warning_threshold
        self.count = 0
        self._day: date = utcnow().date()

    def record(self, today: Optional[date] = None) -> int:
        today = today or utcnow().date()
        if today != self._day:
            self._day = today
            self.count = 0

        self.count += 1
        metrics.marketplace_calls_today.set(self.count)

        if self.count > self.daily_quota:
            logger.warning(
                f"Daily API quota exceeded: {self.count}/{self.daily_quota} calls today"
            )
        elif self.count > self.warning_threshold:
            logger.warning(
                f"Approaching daily API limit: {self.count}/{self.daily_quota} calls today"
            )
        else:
            logger.debug(f"API calls made today: {self.count}/{self.daily_quota}")
        return self.count


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


class MarketplaceClient:
    """
    Wraps outbound marketplace calls.

    Every call acquires a rate-limiter token, runs under a hard timeout and
    maps failures to typed errors:

    - RequestTimeoutError: timeout elapsed, request cancelled
    - TransportError: connection-level failure
    - RateLimitedError: HTTP 429 (host is put on cooldown, no retry)
    - HTTPStatusFailure: any other non-2xx, with status code and body
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        call_counter: Optional[CallCounter] = None,
        default_timeout_ms: Optional[int] = None,
    ):
        self._http_client = http_client
        self._owns_client = http_client is None
        self.rate_limiter = rate_limiter or RateLimiter()
        self.call_counter = call_counter or CallCounter()
        self.default_timeout_ms = default_timeout_ms or settings.request_timeout_ms

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            # call() enforces the deadline itself
            self._http_client = httpx.AsyncClient(
                timeout=None,
                follow_redirects=True,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client if this instance created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_request(self, method: str, url: str, **kwargs) -> httpx.Request:
        return self._get_client().build_request(method, url, **kwargs)

    async def call(
        self,
        request: httpx.Request,
        timeout_ms: Optional[int] = None,
    ) -> httpx.Response:
        """
        Send a request through the rate limiter with a hard timeout.

        Args:
            request: Prepared httpx request
            timeout_ms: Timeout in milliseconds (defaults to config)

        Returns:
            httpx.Response with a 2xx status

        Raises:
            RequestTimeoutError, TransportError, RateLimitedError, HTTPStatusFailure
        """
        timeout_ms = timeout_ms or self.default_timeout_ms
        host = request.url.host
        url = f"{request.url.scheme}://{host}{request.url.path}"

        await self.rate_limiter.acquire(host)
        self.call_counter.record()

        try:
            response = await asyncio.wait_for(
                self._get_client().send(request),
                timeout=timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            metrics.marketplace_calls_total.labels(host=host, outcome="timeout").inc()
            raise RequestTimeoutError(url, timeout_ms)
        except httpx.RequestError as e:
            # connection failures, bad encodings, redirect loops
            metrics.marketplace_calls_total.labels(host=host, outcome="transport_error").inc()
            raise TransportError(f"{type(e).__name__} calling {url}: {e}") from e

        sc = response.status_code

        if sc == 429:
            metrics.marketplace_calls_total.labels(host=host, outcome="rate_limited").inc()
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            self.rate_limiter.set_cooldown(host, retry_after or DEFAULT_RATE_LIMIT_COOLDOWN)
            raise RateLimitedError(url, retry_after=retry_after)

        if not 200 <= sc < 300:
            metrics.marketplace_calls_total.labels(host=host, outcome="http_error").inc()
            body = response.text
            logger.warning(f"Marketplace call failed: HTTP {sc} from {url}")
            raise HTTPStatusFailure(url, sc, body)

        metrics.marketplace_calls_total.labels(host=host, outcome="ok").inc()
        return response
