"""Shared factories and fakes for the metawatch test suite."""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from metawatch.analyzer import rescore
from metawatch.config import ScanOptions, Settings
from metawatch.errors import SitemapError
from metawatch.fetcher import FetchResult
from metawatch.models import PageResult
from metawatch import scan
from metawatch.scan import Scanner, ScanSlot
from metawatch.storage import MemoryStore

SITEMAP = "https://shop.example.com/sitemap.xml"

# 141 chars, no repeated words, ends with punctuation
GOOD_META = (
    "Discover handcrafted ceramic mugs, bowls and plates made in small batches "
    "by local artists. Free shipping on orders over fifty dollars today."
)


def meta_of_length(length: int) -> str:
    """A single-word description of ``length`` chars that only length rules can flag."""
    return "a" * (length - 1) + "."


def html_page(title: Optional[str] = None, meta: Optional[str] = None, body: str = "") -> str:
    head = ""
    if title is not None:
        head += f"<title>{title}</title>"
    if meta is not None:
        head += f'<meta name="description" content="{meta}">'
    return f"<html><head>{head}</head><body>{body}</body></html>"


def make_page(url: str, meta: Optional[str] = GOOD_META, title: Optional[str] = "Title", **kwargs) -> PageResult:
    return rescore(PageResult(url=url, title=title, meta_description=meta, **kwargs))


class FakeFetcher:
    """Serves canned HTML per URL and records every fetch."""

    def __init__(self, pages: Optional[Dict[str, str]] = None, failures: Optional[Dict[str, str]] = None):
        self.pages = dict(pages or {})
        self.failures = dict(failures or {})
        self.calls: List[str] = []
        self.opened = 0

    async def __aenter__(self) -> "FakeFetcher":
        self.opened += 1
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        if url in self.failures:
            return FetchResult(url=url, success=False, error=self.failures[url])
        if url not in self.pages:
            return FetchResult(url=url, success=False, status_code=404, error="HTTP 404")
        return FetchResult(url=url, success=True, html=self.pages[url], status_code=200)

    def factory(self, options: ScanOptions) -> "FakeFetcher":
        return self


class FakeResolver:
    def __init__(self, urls: Optional[List[str]] = None, error: Optional[str] = None):
        self.urls = list(urls or [])
        self.error = error
        self.calls: List[str] = []

    async def get_all_urls(self, sitemap_url: str) -> List[str]:
        self.calls.append(sitemap_url)
        if self.error:
            raise SitemapError(self.error, sitemap_url=sitemap_url)
        return list(self.urls)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def _fresh_scan_slot(monkeypatch):
    monkeypatch.setattr(scan, "_ACTIVE_SCAN", ScanSlot())


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def build_scanner(store, settings, sleeper):
    """``build_scanner(fetcher, resolver)`` -> Scanner over the in-memory store."""

    def _build(fetcher: FakeFetcher, resolver: Optional[FakeResolver] = None, backend=None) -> Scanner:
        return Scanner(
            backend if backend is not None else store,
            settings,
            fetcher_factory=fetcher.factory,
            resolver=resolver or FakeResolver(),
            sleep=sleeper,
        )

    return _build
