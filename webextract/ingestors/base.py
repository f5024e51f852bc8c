"""
Abstract base interface for ingestors.

An ingestor turns locations into ``RawPage`` objects. How discovery works
(link following, sitemaps, search APIs) is up to the implementation; the
index only depends on this interface.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence

from webextract.models import DiscoverOptions, RawPage
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

# Called with every redirect target before it is requested.
RedirectGuard = Callable[[str], Awaitable[object]]

# Awaited before every outbound request.
RequestGate = Callable[[], Awaitable[None]]


class Ingestor(ABC):
    """
    Abstract base class for ingestors.

    Implementations that follow redirects themselves must await
    ``redirect_guard`` on each hop before requesting it, so a validating
    wrapper can veto redirects into private networks. Implementations that
    make several requests per call should await ``request_gate`` before each
    one and return True from ``install_request_gate``.
    """

    redirect_guard: Optional[RedirectGuard] = None
    request_gate: Optional[RequestGate] = None

    def install_redirect_guard(self, guard: RedirectGuard) -> None:
        self.redirect_guard = guard

    def install_request_gate(self, gate: RequestGate) -> bool:
        """Return True if this ingestor awaits the gate before every request."""
        return False

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def discover(
        self,
        root: str,
        options: Optional[DiscoverOptions] = None,
    ) -> List[RawPage]:
        """
        Broad, exploratory fetch starting from ``root``.

        Args:
            root: Starting url
            options: Discovery limits and url patterns

        Returns:
            Pages fetched, at most ``options.limit``. Per-page fetch failures
            are logged and skipped, not raised.

        Raises:
            ValidationError: If ``root`` is rejected
            FetchError: If the root itself cannot be fetched
        """
        pass

    @abstractmethod
    async def fetch_specific(self, urls: Sequence[str]) -> List[RawPage]:
        """
        Targeted, non-exploratory fetch of known urls.

        Args:
            urls: Urls to fetch

        Returns:
            Pages that were fetched successfully. Failures are logged and skipped.
        """
        pass

    async def fetch_one(self, url: str) -> Optional[RawPage]:
        pages = await self.fetch_specific([url])
        return pages[0] if pages else None

    async def close(self) -> None:
        """Release network resources. Default is a no-op."""
        return None

    async def __aenter__(self) -> "Ingestor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
