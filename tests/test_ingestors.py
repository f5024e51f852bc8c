"""
Tests for the ingestor wrappers and the HTTP ingestor.
"""

import re
import time
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from tests.conftest import SITE, StaticResolverValidator
from webextract.ingestors.governor import RateLimitedIngestor, TokenBucket
from webextract.ingestors.http_ingestor import HttpIngestor, html_to_text
from webextract.ingestors.mock_ingestor import MockIngestor
from webextract.ingestors.validated import ValidatedIngestor
from webextract.models import DiscoverOptions, RawPage
from webextract.utils.errors import (
    BlockedUrlError,
    FetchConnectionError,
    FetchError,
    HttpStatusError,
)


class TestValidatedIngestor:
    """Test the validating wrapper."""

    @pytest.fixture
    def inner(self):
        return MockIngestor().with_page(f"{SITE}/", "Home").with_page(f"{SITE}/a", "A")

    @pytest.fixture
    def wrapped(self, inner):
        return ValidatedIngestor(inner, StaticResolverValidator({"evil.example.com": "10.0.0.1"}))

    @pytest.mark.asyncio
    async def test_loopback_root_never_reaches_inner(self, wrapped, inner):
        """Test a rejected root raises before the inner ingestor is called."""
        with pytest.raises(BlockedUrlError):
            await wrapped.discover("http://127.0.0.1/")

        assert inner.call_count == 0

    @pytest.mark.asyncio
    async def test_dns_rebinding_root_rejected(self, wrapped, inner):
        """Test a root whose host resolves privately is rejected."""
        with pytest.raises(BlockedUrlError):
            await wrapped.discover("https://evil.example.com/")

        assert inner.call_count == 0

    @pytest.mark.asyncio
    async def test_discover_delegates(self, wrapped):
        """Test a valid root is discovered by the inner ingestor."""
        pages = await wrapped.discover(f"{SITE}/")

        assert [p.url for p in pages] == [f"{SITE}/", f"{SITE}/a"]

    @pytest.mark.asyncio
    async def test_pages_with_blocked_final_url_dropped(self):
        """Test pages whose final url is unsafe are filtered from results."""
        inner = MagicMock(spec=MockIngestor)
        inner.discover = AsyncMock(return_value=[
            RawPage(url=f"{SITE}/", content="ok"),
            RawPage(url="http://192.168.0.1/router", content="secret"),
        ])
        wrapped = ValidatedIngestor(inner, StaticResolverValidator())

        pages = await wrapped.discover(f"{SITE}/")

        assert [p.url for p in pages] == [f"{SITE}/"]

    @pytest.mark.asyncio
    async def test_fetch_specific_skips_blocked(self, wrapped, inner):
        """Test rejected urls are dropped from a targeted fetch."""
        pages = await wrapped.fetch_specific([f"{SITE}/a", "http://localhost/"])

        assert [p.url for p in pages] == [f"{SITE}/a"]
        assert inner.fetch_calls == [[f"{SITE}/a"]]

    @pytest.mark.asyncio
    async def test_fetch_specific_all_blocked(self, wrapped, inner):
        """Test nothing is fetched when every url is rejected."""
        assert await wrapped.fetch_specific(["http://10.0.0.1/"]) == []
        assert inner.fetch_calls == []

    def test_redirect_guard_installed(self, inner):
        """Test the wrapper installs its DNS check as the redirect guard."""
        validator = StaticResolverValidator()
        ValidatedIngestor(inner, validator)

        assert inner.redirect_guard == validator.validate_with_dns


class TestTokenBucket:
    """Test the token bucket."""

    def test_invalid_parameters(self):
        """Test rate and burst must be positive."""
        with pytest.raises(ValueError):
            TokenBucket(0)
        with pytest.raises(ValueError):
            TokenBucket(1.0, burst=0)

    @pytest.mark.asyncio
    async def test_burst_then_throttle(self):
        """Test burst tokens are immediate and the next one waits."""
        bucket = TokenBucket(rate=20.0, burst=2)

        start = time.monotonic()
        await bucket.acquire()
        await bucket.acquire()
        assert time.monotonic() - start < 0.04

        await bucket.acquire()
        assert time.monotonic() - start >= 0.04

    def test_available_capped_at_burst(self):
        """Test tokens never exceed the burst size."""
        bucket = TokenBucket(rate=1000.0, burst=3)

        assert bucket.available <= 3


class TestRateLimitedIngestor:
    """Test the governor wrapper."""

    @pytest.mark.asyncio
    async def test_ungated_inner_draws_token_per_url(self):
        """Test one token is drawn per url for ingestors without gates."""
        inner = MockIngestor().with_page(f"{SITE}/a", "A").with_page(f"{SITE}/b", "B")
        governor = RateLimitedIngestor(inner, requests_per_second=100.0, burst=1)
        governor.bucket.acquire = AsyncMock()

        pages = await governor.fetch_specific([f"{SITE}/a", f"{SITE}/b"])

        assert len(pages) == 2
        assert governor.bucket.acquire.await_count == 2
        assert inner.fetch_calls == [[f"{SITE}/a"], [f"{SITE}/b"]]

    def test_http_ingestor_is_gated(self):
        """Test the HTTP ingestor receives the bucket as its request gate."""
        inner = HttpIngestor(respect_robots=False)
        governor = RateLimitedIngestor(inner)

        assert governor._gated
        assert inner.request_gate == governor.bucket.acquire

    def test_separate_instances_have_separate_buckets(self):
        """Test two governors never share a budget."""
        a = RateLimitedIngestor(MockIngestor())
        b = RateLimitedIngestor(MockIngestor())

        assert a.bucket is not b.bucket

    @pytest.mark.asyncio
    async def test_discover_draws_token_when_ungated(self):
        """Test discovery waits on the bucket for ungated ingestors."""
        governor = RateLimitedIngestor(MockIngestor().with_page(f"{SITE}/", "Home"))
        governor.bucket.acquire = AsyncMock()

        await governor.discover(f"{SITE}/")

        governor.bucket.acquire.assert_awaited_once()


class TestHtmlToText:
    """Test HTML conversion."""

    def test_extracts_title_text_and_links(self):
        """Test title, visible text and hrefs are extracted."""
        html = """
        <html><head><title> Food Drive </title><style>body {}</style></head>
        <body><h1>Spring Food Drive</h1><script>var x = 1;</script>
        <p>Join us on April 12.</p><a href="/volunteer">Volunteer</a></body></html>
        """

        title, text, hrefs = html_to_text(html)

        assert title == "Food Drive"
        assert "Spring Food Drive" in text
        assert "Join us on April 12." in text
        assert "var x" not in text
        assert hrefs == ["/volunteer"]


class TestHttpIngestorLinks:
    """Test link filtering helpers."""

    def test_same_host_links(self):
        """Test only same-host http links to non-binary resources are kept."""
        hrefs = [
            "/events#top",
            "https://helpers.example.org/about",
            "https://other.example.net/x",
            "mailto:info@example.org",
            "/flyer.pdf",
            "javascript:void(0)",
        ]

        links = HttpIngestor._same_host_links(f"{SITE}/", hrefs, "helpers.example.org")

        assert links == [f"{SITE}/events", f"{SITE}/about"]

    def test_matches_patterns(self):
        """Test include and exclude patterns."""
        include = [re.compile(r"/events/")]
        exclude = [re.compile(r"/archive/")]

        assert HttpIngestor._matches_patterns(f"{SITE}/events/1", include, exclude)
        assert not HttpIngestor._matches_patterns(f"{SITE}/events/archive/1", include, exclude)
        assert not HttpIngestor._matches_patterns(f"{SITE}/about", include, [])


class TestHttpIngestorDiscover:
    """Test crawling with fetches patched out."""

    def _site(self):
        pages = {
            f"{SITE}/": (RawPage(url=f"{SITE}/", content="Home"), ["/a", "/b", "https://other.net/"]),
            f"{SITE}/a": (RawPage(url=f"{SITE}/a", content="A"), ["/c"]),
            f"{SITE}/b": (None, []),
            f"{SITE}/c": (RawPage(url=f"{SITE}/c", content="C"), []),
        }

        async def fetch(url):
            if url not in pages:
                raise HttpStatusError(url, 404)
            return pages[url]

        return fetch

    @pytest.mark.asyncio
    async def test_breadth_first_within_depth(self):
        """Test discovery follows same-host links up to max depth."""
        ingestor = HttpIngestor(respect_robots=False)
        with patch.object(ingestor, "_fetch", AsyncMock(side_effect=self._site())):
            pages = await ingestor.discover(f"{SITE}/", DiscoverOptions(max_depth=1))

        assert [p.url for p in pages] == [f"{SITE}/", f"{SITE}/a"]

    @pytest.mark.asyncio
    async def test_limit_respected(self):
        """Test discovery stops at the page limit."""
        ingestor = HttpIngestor(respect_robots=False)
        with patch.object(ingestor, "_fetch", AsyncMock(side_effect=self._site())):
            pages = await ingestor.discover(f"{SITE}/", DiscoverOptions(limit=1))

        assert len(pages) == 1

    @pytest.mark.asyncio
    async def test_root_failure_raises(self):
        """Test a failing root is an error rather than an empty result."""
        ingestor = HttpIngestor(respect_robots=False)
        with patch.object(ingestor, "_fetch", AsyncMock(side_effect=FetchError("down"))):
            with pytest.raises(FetchError):
                await ingestor.discover(f"{SITE}/")

    @pytest.mark.asyncio
    async def test_fetch_specific_skips_failures(self):
        """Test targeted fetches drop urls that fail."""
        ingestor = HttpIngestor(respect_robots=False)
        with patch.object(ingestor, "_fetch", AsyncMock(side_effect=self._site())):
            pages = await ingestor.fetch_specific([f"{SITE}/a", f"{SITE}/missing", f"{SITE}/b"])

        assert [p.url for p in pages] == [f"{SITE}/a"]

    @pytest.mark.asyncio
    async def test_robots_disallow(self):
        """Test disallowed urls are skipped when robots.txt is honoured."""
        from urllib.robotparser import RobotFileParser

        parser = RobotFileParser()
        parser.parse(["User-agent: *", "Disallow: /a"])
        ingestor = HttpIngestor(respect_robots=True)

        with patch.object(ingestor, "_load_robots", AsyncMock(return_value=parser)), \
                patch.object(ingestor, "_fetch", AsyncMock(side_effect=self._site())):
            pages = await ingestor.discover(f"{SITE}/")

        assert f"{SITE}/a" not in [p.url for p in pages]
        assert f"{SITE}/" in [p.url for p in pages]


class FakeResponse:
    def __init__(self, status=200, headers=None, body=""):
        self.status = status
        self.headers = headers or {}
        self.body = body

    async def text(self, errors="strict"):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class FakeSession:
    """Serves canned responses by url."""

    def __init__(self, responses):
        self.responses = responses
        self.requested = []
        self.closed = False

    def get(self, url, allow_redirects=True):
        self.requested.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


class TestHttpIngestorFetch:
    """Test single fetches against a fake session."""

    @pytest.mark.asyncio
    async def test_html_page(self):
        """Test an HTML response becomes a raw page with text and links."""
        session = FakeSession({
            f"{SITE}/": FakeResponse(
                headers={"Content-Type": "text/html; charset=utf-8"},
                body="<title>Home</title><p>Welcome</p><a href='/a'>A</a>",
            )
        })
        ingestor = HttpIngestor(respect_robots=False, session=session)

        page, hrefs = await ingestor._fetch(f"{SITE}/")

        assert page.title == "Home"
        assert page.content_type == "text/html"
        assert "Welcome" in page.content
        assert hrefs == ["/a"]

    @pytest.mark.asyncio
    async def test_redirect_checked_by_guard(self):
        """Test every redirect hop is vetted before it is requested."""
        session = FakeSession({
            f"{SITE}/go": FakeResponse(status=302, headers={"Location": "http://127.0.0.1/admin"}),
        })
        ingestor = HttpIngestor(respect_robots=False, session=session)
        ValidatedIngestor(ingestor, StaticResolverValidator())

        with pytest.raises(BlockedUrlError):
            await ingestor._fetch(f"{SITE}/go")

        assert session.requested == [f"{SITE}/go"]

    @pytest.mark.asyncio
    async def test_non_text_content_skipped(self):
        """Test binary responses produce no page."""
        session = FakeSession({
            f"{SITE}/logo": FakeResponse(headers={"Content-Type": "image/png"}),
        })
        ingestor = HttpIngestor(respect_robots=False, session=session)

        page, hrefs = await ingestor._fetch(f"{SITE}/logo")

        assert page is None
        assert hrefs == []

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Test a 404 fails immediately without retries."""
        session = FakeSession({f"{SITE}/gone": FakeResponse(status=404)})
        ingestor = HttpIngestor(respect_robots=False, session=session)

        with pytest.raises(HttpStatusError):
            await ingestor._fetch(f"{SITE}/gone")

        assert len(session.requested) == 1

    @pytest.mark.asyncio
    async def test_request_gate_awaited(self):
        """Test the rate gate is awaited before the request."""
        session = FakeSession({
            f"{SITE}/": FakeResponse(headers={"Content-Type": "text/plain"}, body="hello"),
        })
        ingestor = HttpIngestor(respect_robots=False, session=session)
        gate = AsyncMock()
        ingestor.install_request_gate(gate)

        page, _ = await ingestor._fetch(f"{SITE}/")

        assert page.content == "hello"
        gate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session(self):
        """Test an injected session is not closed by the ingestor."""
        session = FakeSession({})
        session.close = AsyncMock()
        ingestor = HttpIngestor(session=session)

        await ingestor.close()

        session.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_error_wrapped_and_retried(self):
        """Test a refused connection is retried, then raised as a fetch error."""
        session = FakeSession({f"{SITE}/": aiohttp.ClientConnectionError("connection refused")})
        ingestor = HttpIngestor(respect_robots=False, session=session)

        with pytest.raises(FetchConnectionError):
            await ingestor._fetch(f"{SITE}/")

        assert len(session.requested) == 3

    @pytest.mark.asyncio
    async def test_invalid_url_not_retried(self):
        """Test a malformed url fails once as a fetch error."""
        session = FakeSession({f"{SITE}/bad": aiohttp.InvalidURL(f"{SITE}/bad")})
        ingestor = HttpIngestor(respect_robots=False, session=session)

        with pytest.raises(FetchError):
            await ingestor._fetch(f"{SITE}/bad")

        assert len(session.requested) == 1

    @pytest.mark.asyncio
    async def test_unreachable_child_does_not_abort_crawl(self):
        """Test a child link whose connection resets is skipped and the crawl continues."""
        session = FakeSession({
            f"{SITE}/": FakeResponse(
                headers={"Content-Type": "text/html"},
                body="<p>Home</p><a href='/a'>A</a><a href='/b'>B</a>",
            ),
            f"{SITE}/a": aiohttp.ClientConnectionError("connection reset"),
            f"{SITE}/b": FakeResponse(headers={"Content-Type": "text/plain"}, body="B"),
        })
        ingestor = HttpIngestor(respect_robots=False, session=session)

        pages = await ingestor.discover(f"{SITE}/", DiscoverOptions(max_depth=1))

        assert [p.url for p in pages] == [f"{SITE}/", f"{SITE}/b"]

    @pytest.mark.asyncio
    async def test_unreachable_root_is_fetch_error(self):
        """Test a dead root surfaces as a fetch error rather than a client error."""
        session = FakeSession({f"{SITE}/": aiohttp.ServerDisconnectedError()})
        ingestor = HttpIngestor(respect_robots=False, session=session)

        with pytest.raises(FetchError):
            await ingestor.discover(f"{SITE}/")
