"""
Tests for the marketplace HTTP client.

Covers error mapping, hard timeouts and daily call counting.
"""

import asyncio
import gzip
import logging
from datetime import date, timedelta

import httpx
import pytest

from niche_scanner.exceptions import (
    ExternalServiceError,
    HTTPStatusFailure,
    RateLimitedError,
    RequestTimeoutError,
    TransportError,
)
from niche_scanner.ingest.http_client import CallCounter, MarketplaceClient
from niche_scanner.ingest.rate_limiter import RateLimiter

URL = "https://api.ebay.com/buy/browse/v1/item_summary/search"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


def _client(handler, clock=None, **client_kwargs):
    clock = clock or FakeClock()
    limiter = RateLimiter(requests_per_second=10.0, burst_size=10, clock=clock, sleep=clock.sleep)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), **client_kwargs)
    return MarketplaceClient(
        http_client=http,
        rate_limiter=limiter,
        call_counter=CallCounter(daily_quota=5000, warning_threshold=4500),
        default_timeout_ms=1000,
    )


class TestMarketplaceClientCall:
    """Test response and error handling of MarketplaceClient.call."""

    async def test_success_returns_response(self):
        """A 2xx response is returned and counted."""
        client = _client(lambda request: httpx.Response(200, json={"ok": True}))

        response = await client.call(client.build_request("GET", URL, params={"q": "lot"}))

        assert response.json() == {"ok": True}
        assert client.call_counter.count == 1

    async def test_429_raises_rate_limited_and_cools_down(self):
        """429 carries Retry-After and puts the host on cooldown."""
        clock = FakeClock()
        client = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": "30"}),
            clock=clock,
        )

        with pytest.raises(RateLimitedError) as exc_info:
            await client.call(client.build_request("GET", URL))

        assert exc_info.value.retry_after == 30
        assert client.rate_limiter.host_cooldowns["api.ebay.com"] == pytest.approx(30.0)

    async def test_429_without_retry_after_uses_default_cooldown(self):
        """429 without Retry-After falls back to the default cooldown."""
        client = _client(lambda request: httpx.Response(429))

        with pytest.raises(RateLimitedError) as exc_info:
            await client.call(client.build_request("GET", URL))

        assert exc_info.value.retry_after is None
        assert client.rate_limiter.host_cooldowns["api.ebay.com"] == pytest.approx(60.0)

    async def test_server_error_raises_status_failure(self):
        """Other non-2xx statuses keep the status code and body."""
        client = _client(lambda request: httpx.Response(500, text="upstream exploded"))

        with pytest.raises(HTTPStatusFailure) as exc_info:
            await client.call(client.build_request("GET", URL))

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "upstream exploded"
        assert isinstance(exc_info.value, ExternalServiceError)

    async def test_timeout_is_distinct_from_http_errors(self):
        """A call past its deadline is cancelled and raised as a timeout."""
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200)

        client = _client(slow)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await client.call(client.build_request("GET", URL), timeout_ms=10)

        assert exc_info.value.timeout_ms == 10
        assert not isinstance(exc_info.value, HTTPStatusFailure)

    async def test_connection_failure_raises_transport_error(self):
        """Connection errors become TransportError."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(refuse)

        with pytest.raises(TransportError):
            await client.call(client.build_request("GET", URL))

    async def test_undecodable_body_raises_transport_error(self):
        """A body that does not match its Content-Encoding is a typed failure."""
        client = _client(
            lambda request: httpx.Response(
                200, headers={"Content-Encoding": "gzip"}, content=b"not gzip at all"
            )
        )

        with pytest.raises(TransportError) as exc_info:
            await client.call(client.build_request("GET", URL))

        assert isinstance(exc_info.value, ExternalServiceError)
        assert isinstance(exc_info.value.__cause__, httpx.DecodingError)

    async def test_redirect_loop_raises_transport_error(self):
        """Too many redirects is a typed failure."""
        client = _client(
            lambda request: httpx.Response(302, headers={"Location": URL}),
            follow_redirects=True,
            max_redirects=3,
        )

        with pytest.raises(TransportError) as exc_info:
            await client.call(client.build_request("GET", URL))

        assert isinstance(exc_info.value.__cause__, httpx.TooManyRedirects)

    async def test_valid_gzip_body_is_decoded(self):
        """A correctly encoded body is read normally."""
        client = _client(
            lambda request: httpx.Response(
                200, headers={"Content-Encoding": "gzip"}, content=gzip.compress(b'{"ok": true}')
            )
        )

        response = await client.call(client.build_request("GET", URL))

        assert response.json() == {"ok": True}


class TestOwnedClient:
    """Test the lazily created httpx client."""

    async def test_owned_client_leaves_deadline_to_call(self):
        """Requests carry no httpx timeout, so long call timeouts are not cut short."""
        client = MarketplaceClient(default_timeout_ms=30000)

        request = client.build_request("GET", URL)

        assert request.extensions["timeout"] == {
            "connect": None,
            "read": None,
            "write": None,
            "pool": None,
        }
        await client.close()
        assert client._http_client is None


class TestCallCounter:
    """Test the advisory daily call counter."""

    def test_resets_each_day(self):
        """The count starts over on a new UTC day."""
        counter = CallCounter(daily_quota=5000, warning_threshold=4500)
        today = date(2024, 6, 1)

        counter.record(today)
        counter.record(today)
        assert counter.count == 2

        assert counter.record(today + timedelta(days=1)) == 1

    def test_warns_but_never_blocks(self, caplog):
        """Crossing the threshold and the quota only logs warnings."""
        counter = CallCounter(daily_quota=3, warning_threshold=2)
        today = date(2024, 6, 1)

        with caplog.at_level(logging.WARNING, logger="niche_scanner.ingest.http_client"):
            counts = [counter.record(today) for _ in range(4)]

        assert counts == [1, 2, 3, 4]
        messages = [r.getMessage() for r in caplog.records]
        assert any("Approaching daily API limit" in m for m in messages)
        assert any("Daily API quota exceeded" in m for m in messages)
