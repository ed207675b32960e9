"""Sitemap fetching and recursive expansion of sitemap indexes."""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional, Set

import httpx

from .config import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT
from .errors import SitemapError

LOGGER = logging.getLogger(__name__)

MAX_SITEMAP_DEPTH = 5


@dataclass(slots=True)
class SitemapEntry:
    """A ``<url>`` or ``<sitemap>`` element from a sitemap document."""

    url: str
    lastmod: Optional[str] = None
    priority: Optional[float] = None
    is_sitemap: bool = False


def _localname(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child_text(node: ET.Element, name: str) -> Optional[str]:
    for child in node:
        if _localname(child.tag) == name:
            text = (child.text or "").strip()
            return text or None
    return None


def _parse_priority(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_sitemap_entries(xml_text: str, source: str = "") -> List[SitemapEntry]:
    """Parse a ``urlset`` or ``sitemapindex`` document in document order.

    Raises:
        SitemapError: If the document is not well-formed XML.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise SitemapError(f"Malformed sitemap XML: {exc}", sitemap_url=source) from exc

    entries: List[SitemapEntry] = []
    root_name = _localname(root.tag)
    if root_name == "urlset":
        for node in root:
            if _localname(node.tag) != "url":
                continue
            loc = _child_text(node, "loc")
            if loc:
                entries.append(
                    SitemapEntry(
                        url=loc,
                        lastmod=_child_text(node, "lastmod"),
                        priority=_parse_priority(_child_text(node, "priority")),
                    )
                )
    elif root_name == "sitemapindex":
        for node in root:
            if _localname(node.tag) != "sitemap":
                continue
            loc = _child_text(node, "loc")
            if loc:
                entries.append(
                    SitemapEntry(
                        url=loc,
                        lastmod=_child_text(node, "lastmod"),
                        is_sitemap=True,
                    )
                )
    else:
        LOGGER.warning("Unexpected sitemap root <%s> in %s", root_name, source)
    return entries


class SitemapResolver:
    """Resolve a sitemap URL into the flat list of page URLs it declares."""

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._client = client
        self._timeout = timeout
        self._user_agent = user_agent

    async def fetch_entries(self, sitemap_url: str) -> List[SitemapEntry]:
        """Fetch and parse one sitemap document (no recursion)."""
        if self._client is not None:
            return await self._fetch_entries(self._client, sitemap_url)
        async with self._build_client() as client:
            return await self._fetch_entries(client, sitemap_url)

    async def get_all_urls(self, sitemap_url: str) -> List[str]:
        """Expand nested sitemap indexes depth-first, keeping document order.

        Raises:
            SitemapError: On any fetch or parse failure; no partial list is
                returned.
        """
        if self._client is not None:
            return await self._expand(self._client, sitemap_url, 0, set())
        async with self._build_client() as client:
            return await self._expand(client, sitemap_url, 0, set())

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "User-Agent": self._user_agent,
                "Accept": "application/xml,text/xml;q=0.9,*/*;q=0.8",
            },
            timeout=self._timeout,
            follow_redirects=True,
        )

    async def _fetch_entries(
        self, client: httpx.AsyncClient, sitemap_url: str
    ) -> List[SitemapEntry]:
        try:
            response = await client.get(sitemap_url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SitemapError(
                f"Failed to fetch sitemap: HTTP {exc.response.status_code}",
                sitemap_url=sitemap_url,
            ) from exc
        except httpx.RequestError as exc:
            raise SitemapError(
                f"Failed to fetch sitemap: {exc}", sitemap_url=sitemap_url
            ) from exc
        return parse_sitemap_entries(response.text, source=sitemap_url)

    async def _expand(
        self,
        client: httpx.AsyncClient,
        sitemap_url: str,
        depth: int,
        visited: Set[str],
    ) -> List[str]:
        if depth > MAX_SITEMAP_DEPTH:
            LOGGER.warning("Sitemap nesting too deep at %s; skipping", sitemap_url)
            return []
        if sitemap_url in visited:
            LOGGER.warning("Sitemap %s already expanded; skipping cycle", sitemap_url)
            return []
        visited.add(sitemap_url)

        LOGGER.debug("Fetching sitemap %s", sitemap_url)
        entries = await self._fetch_entries(client, sitemap_url)

        urls: List[str] = []
        for entry in entries:
            if entry.is_sitemap:
                urls.extend(await self._expand(client, entry.url, depth + 1, visited))
            else:
                urls.append(entry.url)
        return urls


def get_all_urls(sitemap_url: str, *, timeout: float = DEFAULT_TIMEOUT) -> List[str]:
    """Synchronous wrapper for :meth:`SitemapResolver.get_all_urls`."""
    return asyncio.run(SitemapResolver(timeout=timeout).get_all_urls(sitemap_url))
