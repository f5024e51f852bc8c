"""
In-memory ingestor for tests and offline runs.
"""

from typing import Dict, List, Optional, Sequence

from webextract.ingestors.base import Ingestor
from webextract.models import DiscoverOptions, RawPage, site_url_of
from webextract.utils.errors import FetchError


class MockIngestor(Ingestor):
    """
    Serve pages from a dict and record every call.

    ``discover`` returns every page on the root's site (up to the limit), in
    insertion order. Urls listed in ``failing_urls`` raise ``FetchError`` from
    ``discover`` when they are the root and are skipped otherwise.
    """

    def __init__(self, pages: Optional[List[RawPage]] = None) -> None:
        self.pages: Dict[str, RawPage] = {}
        self.failing_urls: set = set()
        self.discover_calls: List[str] = []
        self.fetch_calls: List[List[str]] = []
        for page in pages or []:
            self.add_page(page)

    def add_page(self, page: RawPage) -> "MockIngestor":
        self.pages[page.url] = page
        return self

    def with_page(self, url: str, content: str, title: Optional[str] = None) -> "MockIngestor":
        return self.add_page(RawPage(url=url, content=content, title=title))

    def fail(self, url: str) -> "MockIngestor":
        self.failing_urls.add(url)
        return self

    @property
    def call_count(self) -> int:
        return len(self.discover_calls) + len(self.fetch_calls)

    async def discover(
        self,
        root: str,
        options: Optional[DiscoverOptions] = None,
    ) -> List[RawPage]:
        options = options or DiscoverOptions()
        self.discover_calls.append(root)

        if root in self.failing_urls:
            raise FetchError(f"Mock fetch failure for '{root}'", {"url": root})

        site = site_url_of(root)
        found = [
            page
            for url, page in self.pages.items()
            if site_url_of(url) == site and url not in self.failing_urls
        ]
        return found[: options.limit]

    async def fetch_specific(self, urls: Sequence[str]) -> List[RawPage]:
        self.fetch_calls.append(list(urls))
        return [
            self.pages[url]
            for url in urls
            if url in self.pages and url not in self.failing_urls
        ]
