"""
Rate/concurrency governor for ingestors.

A token bucket bounds outbound request rate. Each ``RateLimitedIngestor``
owns its own bucket, so two wrapped ingestors never share a budget.
"""

import asyncio
import time
from typing import List, Optional, Sequence

from webextract.ingestors.base import Ingestor, RedirectGuard, RequestGate
from webextract.models import DiscoverOptions, RawPage
from webextract.utils.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """
    Asyncio token bucket.

    Holds at most ``burst`` tokens and refills at ``rate`` tokens per second.
    ``acquire`` waits until a token is available.
    """

    def __init__(self, rate: float, burst: int = 1) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        # The lock keeps waiters in FIFO order
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)


class RateLimitedIngestor(Ingestor):
    """
    Wrap an ingestor with a per-instance token bucket.

    If the inner ingestor honours request gates, every request it makes
    draws a token. Otherwise one token is drawn per discovery call and per
    url in ``fetch_specific``.
    """

    def __init__(
        self,
        inner: Ingestor,
        requests_per_second: float = 2.0,
        burst: int = 1,
    ) -> None:
        """
        Initialize the governor.

        Args:
            inner: Ingestor to wrap
            requests_per_second: Sustained request rate
            burst: Requests allowed back-to-back before throttling
        """
        self.inner = inner
        self.bucket = TokenBucket(requests_per_second, burst)
        self._gated = inner.install_request_gate(self.bucket.acquire)

    @property
    def name(self) -> str:
        return f"RateLimited({self.inner.name})"

    def install_redirect_guard(self, guard: RedirectGuard) -> None:
        self.inner.install_redirect_guard(guard)

    def install_request_gate(self, gate: RequestGate) -> bool:
        # Already gated by our own bucket; report whether the inner honours gates.
        return self._gated

    async def discover(
        self,
        root: str,
        options: Optional[DiscoverOptions] = None,
    ) -> List[RawPage]:
        if not self._gated:
            await self.bucket.acquire()
        return await self.inner.discover(root, options)

    async def fetch_specific(self, urls: Sequence[str]) -> List[RawPage]:
        if self._gated:
            return await self.inner.fetch_specific(urls)

        pages: List[RawPage] = []
        for url in urls:
            await self.bucket.acquire()
            pages.extend(await self.inner.fetch_specific([url]))
        return pages

    async def close(self) -> None:
        await self.inner.close()
