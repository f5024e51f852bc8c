"""
Shared fixtures for the test suite.
"""

import ipaddress
from typing import Dict, List

import pytest

from webextract.config import Settings, reset_settings
from webextract.index.engine import Index
from webextract.ingestors.mock_ingestor import MockIngestor
from webextract.models import CachedPage, RawPage, Summary
from webextract.index.prompts import summarize_prompt_hash
from webextract.reasoning.mock_reasoner import MockReasoner
from webextract.security.url_validator import UrlValidator
from webextract.stores.memory_store import InMemoryStore

SITE = "https://helpers.example.org"
PUBLIC_IP = ipaddress.ip_address("93.184.216.34")


class StaticResolverValidator(UrlValidator):
    """Validator with a fixed DNS table so tests never hit the network."""

    def __init__(self, table: Dict[str, str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.table = {host: ipaddress.ip_address(ip) for host, ip in (table or {}).items()}
        self.resolved: List[str] = []

    async def resolve(self, host: str):
        self.resolved.append(host)
        return [self.table.get(host, PUBLIC_IP)]


@pytest.fixture(autouse=True)
def clean_settings():
    """Make sure no test leaks a settings singleton into the next."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings():
    return Settings(strict_mode=True, store_type="memory", semantic_weight=0.6)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def reasoner():
    return MockReasoner()


@pytest.fixture
def validator():
    return StaticResolverValidator({"internal.example.org": "127.0.0.1"})


@pytest.fixture
def site_pages():
    """A three-page site where two pages describe the same volunteer event."""
    return [
        RawPage(
            url=f"{SITE}/volunteer",
            title="Volunteer",
            content=(
                "Volunteer at the Spring Food Drive on April 12. "
                "Volunteers sort donations at the community pantry. Sign up online."
            ),
        ),
        RawPage(
            url=f"{SITE}/events/food-drive",
            title="Spring Food Drive",
            content=(
                "Spring Food Drive: join volunteers on Saturday April 12 from 9am to 1pm "
                "to pack food boxes for local families."
            ),
        ),
        RawPage(
            url=f"{SITE}/about",
            title="About Us",
            content=(
                "Helpers Network is a nonprofit supporting families in Springfield "
                "since 1998. Our mission is to end local hunger."
            ),
        ),
    ]


@pytest.fixture
def ingestor(site_pages):
    return MockIngestor(site_pages)


@pytest.fixture
def index(store, reasoner, ingestor, settings, validator):
    return Index(store, reasoner, ingestor, settings=settings, validator=validator)


def make_summary(page: CachedPage, text: str = None, prompt_hash: str = None) -> Summary:
    return Summary(
        url=page.url,
        text=text or page.content[:200],
        prompt_hash=prompt_hash or summarize_prompt_hash(),
        content_hash=page.content_hash,
    )
