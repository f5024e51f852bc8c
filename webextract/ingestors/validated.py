"""
Validating wrapper that enforces URL safety around any ingestor.
"""

from typing import List, Optional, Sequence

from webextract.ingestors.base import Ingestor, RequestGate
from webextract.models import DiscoverOptions, RawPage
from webextract.security.url_validator import UrlValidator
from webextract.utils.errors import ValidationError
from webextract.utils.logging import get_logger

logger = get_logger(__name__)


class ValidatedIngestor(Ingestor):
    """
    Wrap an ingestor so that no unsafe url is ever requested or returned.

    - the discovery root is validated, with DNS resolution, before the inner
      ingestor is called
    - redirect hops are checked through the inner ingestor's ``redirect_guard``
    - every returned page is re-checked against its final url
    - ``fetch_specific`` drops rejected urls with a warning instead of failing
      the whole batch
    """

    def __init__(self, inner: Ingestor, validator: Optional[UrlValidator] = None) -> None:
        """
        Initialize the wrapper.

        Args:
            inner: Ingestor doing the actual fetching
            validator: Validator to use (default blocks all private targets)
        """
        self.inner = inner
        self.validator = validator or UrlValidator()
        self.inner.install_redirect_guard(self.validator.validate_with_dns)

    def install_request_gate(self, gate: RequestGate) -> bool:
        return self.inner.install_request_gate(gate)

    @property
    def name(self) -> str:
        return f"Validated({self.inner.name})"

    async def discover(
        self,
        root: str,
        options: Optional[DiscoverOptions] = None,
    ) -> List[RawPage]:
        """
        Validate the root, then delegate discovery.

        Raises:
            ValidationError: If the root is rejected. The inner ingestor is not called.
        """
        await self.validator.validate_with_dns(root)
        pages = await self.inner.discover(root, options)
        return self._filter_pages(pages)

    async def fetch_specific(self, urls: Sequence[str]) -> List[RawPage]:
        allowed = []
        for url in urls:
            try:
                await self.validator.validate_with_dns(url)
            except ValidationError as e:
                logger.warning(f"Skipping blocked url: {e}")
                continue
            allowed.append(url)

        if not allowed:
            return []
        return self._filter_pages(await self.inner.fetch_specific(allowed))

    def _filter_pages(self, pages: List[RawPage]) -> List[RawPage]:
        safe = []
        for page in pages:
            try:
                self.validator.validate(page.url)
            except ValidationError as e:
                logger.warning(f"Dropping page with blocked final url: {e}")
                continue
            safe.append(page)
        return safe

    async def close(self) -> None:
        await self.inner.close()
