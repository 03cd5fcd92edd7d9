"""Rate limiting for marketplace calls using a token bucket per host."""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Awaitable, Callable, Optional

from niche_scanner.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token bucket rate limiter per host with cooldowns.

    The clock and sleep functions are injectable so pacing can be tested
    without real wall-clock delays.
    """

    def __init__(
        self,
        requests_per_second: Optional[float] = None,
        burst_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.requests_per_second = requests_per_second or settings.requests_per_second
        self.burst_size = max(burst_size or settings.request_burst, 1)
        self._clock = clock
        self._sleep = sleep
        self.buckets: dict[str, dict] = defaultdict(self._create_bucket)
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.host_cooldowns: dict[str, float] = {}  # Host -> cooldown until timestamp

    def _create_bucket(self) -> dict:
        """Create a new, full token bucket."""
        return {
            "tokens": float(self.burst_size),
            "last_refill": self._clock(),
        }

    async def acquire(self, host: str) -> float:
        """
        Acquire a token for the given host, waiting if the bucket is empty.

        Args:
            host: Host to rate limit

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        async with self.locks[host]:
            now = self._clock()

            cooldown_until = self.host_cooldowns.get(host, 0.0)
            if now < cooldown_until:
                wait_time = cooldown_until - now
                logger.debug(f"Host {host} in cooldown, waiting {wait_time:.1f}s")
                await self._sleep(wait_time)
                waited += wait_time
                now = self._clock()

            bucket = self.buckets[host]
            elapsed = now - bucket["last_refill"]
            bucket["tokens"] = min(
                bucket["tokens"] + elapsed * self.requests_per_second,
                float(self.burst_size),
            )
            bucket["last_refill"] = now

            if bucket["tokens"] < 1.0:
                wait_time = (1.0 - bucket["tokens"]) / self.requests_per_second
                await self._sleep(wait_time)
                waited += wait_time
                bucket["tokens"] = 0.0
                bucket["last_refill"] = self._clock()
            else:
                bucket["tokens"] -= 1.0

        return waited

    def set_cooldown(self, host: str, seconds: float) -> None:
        """
        Block requests for this host for the given number of seconds.

        Args:
            host: Host name
            seconds: Cooldown duration in seconds
        """
        self.host_cooldowns[host] = self._clock() + seconds
        logger.info(f"Cooling down {host} for {seconds:.0f}s")
