"""Page fetching via a headless Crawl4AI browser or plain HTTP.

A ``PageFetcher`` is opened once per scan and fetches one URL at a time.
Per-URL failures never raise; they come back as ``FetchResult(success=False)``
so that the crawl can move on to the next URL.
"""

from __future__ import annotations

import logging
import re
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from crawl4ai import AsyncWebCrawler
from crawl4ai.models import CrawlResult

from .config import ScanOptions, Settings, build_browser_config, build_fetch_run_config

LOGGER = logging.getLogger(__name__)

_EP_CONFIG_OBJECT_ID = re.compile(
    r"epConfig[\s\S]{0,2000}?[\"']?objectId[\"']?\s*[:=]\s*[\"']?([\w-]+)"
)


@dataclass(slots=True)
class FetchResult:
    """Outcome of fetching one URL."""

    url: str
    success: bool
    html: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    signals: Dict[str, Any] = field(default_factory=dict)


def extract_data_layer(html: Optional[str]) -> Dict[str, Any]:
    """Pull the shop object id from an inline ``epConfig`` data layer."""
    if not html or "epConfig" not in html:
        return {"objectId": None, "hasDataLayer": False}
    match = _EP_CONFIG_OBJECT_ID.search(html)
    return {"objectId": match.group(1) if match else None, "hasDataLayer": True}


def _derive_failure_reason(result: CrawlResult) -> str:
    if result.error_message:
        return result.error_message
    if result.status_code:
        return f"HTTP {result.status_code}"
    return "Crawler returned no content"


def _first_result(container: Any) -> Optional[CrawlResult]:
    try:
        return container[0]
    except (IndexError, TypeError, KeyError):
        return None


class PageFetcher:
    """Async context manager that fetches pages for the duration of a scan."""

    def __init__(
        self,
        options: Optional[ScanOptions] = None,
        settings: Optional[Settings] = None,
    ):
        self.options = options or ScanOptions()
        self.settings = settings or Settings.from_env()
        self._stack: Optional[AsyncExitStack] = None
        self._crawler: Optional[AsyncWebCrawler] = None
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "PageFetcher":
        self._stack = AsyncExitStack()
        if self.options.use_browser:
            self._crawler = await self._stack.enter_async_context(
                AsyncWebCrawler(config=build_browser_config(self.settings))
            )
        else:
            self._client = await self._stack.enter_async_context(
                httpx.AsyncClient(
                    headers={
                        "User-Agent": self.settings.user_agent,
                        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                        "Accept-Language": "en-US,en;q=0.5",
                    },
                    timeout=self.options.timeout,
                    follow_redirects=True,
                )
            )
        return self

    async def __aexit__(self, *exc_info) -> None:
        stack, self._stack = self._stack, None
        self._crawler = None
        self._client = None
        if stack is not None:
            await stack.aclose()

    async def fetch(self, url: str) -> FetchResult:
        """Fetch a single URL; never raises for network or render failures."""
        if self._crawler is not None:
            return await self._fetch_with_browser(url)
        if self._client is not None:
            return await self._fetch_with_http(url)
        raise RuntimeError("PageFetcher must be used as an async context manager")

    async def _fetch_with_browser(self, url: str) -> FetchResult:
        assert self._crawler is not None
        try:
            container = await self._crawler.arun(
                url=url, config=build_fetch_run_config(self.options)
            )
        except Exception as exc:
            LOGGER.warning("Browser fetch failed for %s: %s", url, exc)
            return FetchResult(url=url, success=False, error=str(exc) or type(exc).__name__)

        result = _first_result(container)
        if result is None:
            return FetchResult(url=url, success=False, error="Crawler returned no results")

        if not result.success:
            return FetchResult(
                url=url,
                success=False,
                status_code=result.status_code,
                error=_derive_failure_reason(result),
            )

        html = result.html or result.cleaned_html or None
        return FetchResult(
            url=url,
            success=True,
            html=html,
            status_code=result.status_code,
            signals={
                "finalUrl": str(result.url or url),
                "dataLayer": extract_data_layer(html),
            },
        )

    async def _fetch_with_http(self, url: str) -> FetchResult:
        assert self._client is not None
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            return FetchResult(
                url=url,
                success=False,
                status_code=exc.response.status_code,
                error=f"HTTP {exc.response.status_code}",
            )
        except httpx.RequestError as exc:
            LOGGER.warning("HTTP fetch failed for %s: %s", url, exc)
            return FetchResult(url=url, success=False, error=str(exc) or type(exc).__name__)

        html = response.text
        return FetchResult(
            url=url,
            success=True,
            html=html,
            status_code=response.status_code,
            signals={
                "finalUrl": str(response.url),
                "dataLayer": extract_data_layer(html),
            },
        )
