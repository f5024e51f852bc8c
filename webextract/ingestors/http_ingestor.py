"""
HTTP ingestor: breadth-first same-host crawl over aiohttp.

Pages are converted to plain text with BeautifulSoup. Redirects are followed
manually so every hop can be vetted by the installed redirect guard before it
is requested.
"""

import asyncio
import re
from collections import deque
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urldefrag, urljoin, urlparse
from urllib.robotparser import RobotFileParser

import aiohttp
from bs4 import BeautifulSoup
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from webextract.config import get_settings
from webextract.ingestors.base import Ingestor, RequestGate
from webextract.models import DiscoverOptions, RawPage, site_url_of, utcnow
from webextract.utils.errors import (
    FetchConnectionError,
    FetchError,
    FetchTimeoutError,
    HttpStatusError,
    ValidationError,
)
from webextract.utils.logging import LogContext, get_logger, log_performance

logger = get_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
SKIPPED_LINK_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")
BINARY_EXTENSIONS = (
    ".css", ".js", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico",
    ".pdf", ".zip", ".rar", ".exe", ".tar", ".gz", ".mp3", ".mp4", ".avi",
    ".mov", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".woff", ".woff2",
)
TEXT_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")
NOISE_TAGS = ("script", "style", "noscript", "svg", "iframe", "template")


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HttpStatusError):
        return exc.is_transient
    return isinstance(exc, (FetchTimeoutError, FetchConnectionError))


def html_to_text(html: str) -> Tuple[Optional[str], str, List[str]]:
    """
    Convert an HTML document to text.

    Args:
        html: Raw HTML

    Returns:
        Tuple of (title, text, raw hrefs)
    """
    soup = BeautifulSoup(html, "html.parser")

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None

    hrefs = [a["href"].strip() for a in soup.find_all("a", href=True)]

    for tag in soup(NOISE_TAGS):
        tag.decompose()

    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    text = "\n".join(line for line in lines if line)
    return title, text, hrefs


class HttpIngestor(Ingestor):
    """
    Crawl a site over HTTP.

    Features:
    - Same-host breadth-first discovery bounded by depth and page limit
    - Include/exclude regex patterns on urls
    - Optional robots.txt compliance
    - Manual redirect handling with per-hop redirect guard
    - Bounded exponential-backoff retries on transient failures
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        respect_robots: Optional[bool] = None,
        max_redirects: int = 5,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """
        Initialize the HTTP ingestor.

        Args:
            user_agent: User-Agent header (defaults to settings)
            timeout: Per-request timeout in seconds (defaults to settings)
            respect_robots: Honour robots.txt (defaults to settings)
            max_redirects: Maximum redirect hops per request
            session: Optional pre-built aiohttp session
        """
        settings = get_settings()
        self.user_agent = user_agent or settings.user_agent
        self.timeout = timeout or settings.fetch_timeout
        self.respect_robots = settings.respect_robots if respect_robots is None else respect_robots
        self.max_redirects = max_redirects

        self._session = session
        self._owns_session = session is None
        self._robots: Dict[str, Optional[RobotFileParser]] = {}

    def install_request_gate(self, gate: RequestGate) -> bool:
        self.request_gate = gate
        return True

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    # =========================================================================
    # Ingestor interface
    # =========================================================================

    @log_performance
    async def discover(
        self,
        root: str,
        options: Optional[DiscoverOptions] = None,
    ) -> List[RawPage]:
        """
        Breadth-first crawl from ``root`` staying on the root's host.

        Raises:
            FetchError: If the root page itself cannot be fetched
            ValidationError: If the root redirects to a rejected target
        """
        options = options or DiscoverOptions()
        include = [re.compile(p) for p in options.include_patterns]
        exclude = [re.compile(p) for p in options.exclude_patterns]
        root_host = urlparse(root).netloc.lower()

        queue = deque([(urldefrag(root)[0], 0)])
        seen = {urldefrag(root)[0]}
        pages: List[RawPage] = []

        with LogContext(site=site_url_of(root)):
            while queue and len(pages) < options.limit:
                url, depth = queue.popleft()
                is_root = depth == 0

                if not await self._allowed_by_robots(url):
                    logger.info(f"robots.txt disallows {url}")
                    continue

                try:
                    page, hrefs = await self._fetch(url)
                except (FetchError, ValidationError) as e:
                    if is_root:
                        raise
                    logger.warning(f"Skipping {url}: {e}")
                    continue

                if page is None:
                    continue
                if is_root or self._matches_patterns(url, include, exclude):
                    pages.append(page)

                if depth >= options.max_depth:
                    continue
                for link in self._same_host_links(page.url, hrefs, root_host):
                    if link not in seen:
                        seen.add(link)
                        queue.append((link, depth + 1))

        logger.info(f"Discovered {len(pages)} pages from {root}")
        return pages

    async def fetch_specific(self, urls: Sequence[str]) -> List[RawPage]:
        results = await asyncio.gather(*(self._fetch(url) for url in urls), return_exceptions=True)

        pages = []
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Failed to fetch {url}: {result}")
                continue
            page, _ = result
            if page is not None:
                pages.append(page)
        return pages

    # =========================================================================
    # Fetching
    # =========================================================================

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def _fetch(self, url: str) -> Tuple[Optional[RawPage], List[str]]:
        """
        Fetch one url, following redirects through the guard.

        Returns:
            (page, hrefs). Page is None for non-text responses.

        Raises:
            ValidationError: If a redirect target is rejected
            FetchError: On timeouts, connection errors and HTTP error statuses
        """
        session = self._get_session()
        current = url

        try:
            for _ in range(self.max_redirects + 1):
                if self.request_gate is not None:
                    await self.request_gate()

                async with session.get(current, allow_redirects=False) as response:
                    if response.status in REDIRECT_STATUSES and "Location" in response.headers:
                        target = urljoin(current, response.headers["Location"])
                        if self.redirect_guard is not None:
                            await self.redirect_guard(target)
                        logger.debug(f"Redirect {current} -> {target}")
                        current = target
                        continue

                    if response.status >= 400:
                        raise HttpStatusError(current, response.status)

                    content_type = response.headers.get("Content-Type", "")
                    if not any(t in content_type for t in TEXT_CONTENT_TYPES):
                        logger.debug(f"Skipping non-text content at {current}: {content_type}")
                        return None, []

                    body = await response.text(errors="replace")
                    headers = {
                        f"http_{k.lower().replace('-', '_')}": v
                        for k, v in response.headers.items()
                    }
                    return self._build_page(current, body, content_type, headers)
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(current, self.timeout) from e
        except aiohttp.ClientResponseError as e:
            raise HttpStatusError(current, e.status) from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
            raise FetchConnectionError(current, str(e) or type(e).__name__) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Failed to fetch '{current}': {e}", {"url": current}) from e

        raise FetchError(f"Too many redirects for '{url}'", {"url": url, "max": self.max_redirects})

    def _build_page(
        self,
        url: str,
        body: str,
        content_type: str,
        headers: Dict[str, str],
    ) -> Tuple[RawPage, List[str]]:
        if "html" in content_type:
            title, text, hrefs = html_to_text(body)
        else:
            title, text, hrefs = None, body.strip(), []

        page = RawPage(
            url=url,
            content=text,
            title=title,
            content_type=content_type.split(";")[0].strip() or None,
            fetched_at=utcnow(),
            metadata=headers,
        )
        return page, hrefs

    # =========================================================================
    # Link handling
    # =========================================================================

    @staticmethod
    def _same_host_links(base_url: str, hrefs: List[str], root_host: str) -> List[str]:
        links = []
        for href in hrefs:
            if not href or href.lower().startswith(SKIPPED_LINK_PREFIXES):
                continue
            absolute, _ = urldefrag(urljoin(base_url, href))
            parsed = urlparse(absolute)
            if parsed.scheme not in ("http", "https"):
                continue
            if parsed.netloc.lower() != root_host:
                continue
            if parsed.path.lower().endswith(BINARY_EXTENSIONS):
                continue
            links.append(absolute)
        return links

    @staticmethod
    def _matches_patterns(url: str, include: List[re.Pattern], exclude: List[re.Pattern]) -> bool:
        if include and not any(p.search(url) for p in include):
            return False
        return not any(p.search(url) for p in exclude)

    async def _allowed_by_robots(self, url: str) -> bool:
        if not self.respect_robots:
            return True

        site = site_url_of(url)
        if site not in self._robots:
            self._robots[site] = await self._load_robots(site)

        parser = self._robots[site]
        return parser is None or parser.can_fetch(self.user_agent, url)

    async def _load_robots(self, site: str) -> Optional[RobotFileParser]:
        """Fetch and parse robots.txt. Any failure means no restrictions."""
        robots_url = f"{site}/robots.txt"
        try:
            if self.request_gate is not None:
                await self.request_gate()
            async with self._get_session().get(robots_url, allow_redirects=False) as response:
                if response.status != 200:
                    return None
                body = await response.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not load {robots_url}: {e}")
            return None

        parser = RobotFileParser()
        parser.parse(body.splitlines())
        return parser
