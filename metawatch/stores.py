"""Domain stores on top of a :class:`~metawatch.storage.KeyValueStore`.

- ``ResultStore``: latest ``PageResult`` set per sitemap
- ``ReviewStore``: review records keyed by URL, shared by every sitemap
- ``ChangeLedger``: bounded append-only change history per sitemap
- ``SitemapRegistry``: sitemaps the user saved for quick access
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence

import tldextract

from .analyzer import rescore
from .errors import NotFoundError, StoreError
from .models import (
    ChangeEvent,
    PageResult,
    PageStatus,
    ReviewRecord,
    ReviewStatus,
    utc_now,
)
from .storage import KeyValueStore, sitemap_key

LOGGER = logging.getLogger(__name__)

RESULTS_PREFIX = "scan-results-"
HISTORY_PREFIX = "change-history-"
REVIEWS_KEY = "url-reviews"
SITEMAPS_KEY = "saved-sitemaps"

# Bundled public suffix snapshot only; listing scans must not hit the network
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def results_key(sitemap_url: str) -> str:
    return RESULTS_PREFIX + sitemap_key(sitemap_url)


def history_key(sitemap_url: str) -> str:
    return HISTORY_PREFIX + sitemap_key(sitemap_url)


@lru_cache(maxsize=256)
def registrable_domain(url: str) -> str:
    """``shop.example.co.uk`` -> ``example.co.uk``; falls back to the host."""
    extracted = _EXTRACT(url)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    return extracted.domain or ""


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(slots=True)
class SavedScan:
    """Summary line for one persisted result set."""

    key: str
    sitemap_url: Optional[str]
    domain: str
    total: int
    good: int
    warning: int
    error: int
    last_scanned: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "sitemapUrl": self.sitemap_url,
            "domain": self.domain,
            "totalUrls": self.total,
            "good": self.good,
            "warning": self.warning,
            "error": self.error,
            "lastScanned": self.last_scanned,
        }


class ResultStore:
    """Per-sitemap result sets."""

    def __init__(self, backend: KeyValueStore):
        self.backend = backend

    async def load(self, sitemap_url: str) -> List[PageResult]:
        raw = await self.backend.load(results_key(sitemap_url), default=[])
        if not isinstance(raw, list):
            LOGGER.warning("Ignoring malformed result set for %s", sitemap_url)
            return []
        return [PageResult.from_dict(item) for item in raw if isinstance(item, dict)]

    async def save(self, sitemap_url: str, results: Iterable[PageResult]) -> bool:
        """Persist ``results`` for ``sitemap_url``; False when the write failed."""
        payload = [{**page.to_dict(), "sitemapUrl": sitemap_url} for page in results]
        return await self.backend.save(results_key(sitemap_url), payload)

    async def require_save(self, sitemap_url: str, results: Iterable[PageResult]) -> None:
        """Like :meth:`save` but raises :class:`StoreError` on failure."""
        if not await self.save(sitemap_url, results):
            raise StoreError(
                f"Failed to save results for {sitemap_url}",
                key=results_key(sitemap_url),
            )

    async def update_page(
        self,
        sitemap_url: str,
        url: str,
        *,
        title: Optional[str] = None,
        meta_description: Optional[str] = None,
    ) -> PageResult:
        """Apply a manual title/meta edit and recompute the page's status.

        Raises:
            NotFoundError: When ``url`` is not part of the stored result set.
            StoreError: When the edited result set cannot be written.
        """
        results = await self.load(sitemap_url)
        for page in results:
            if page.url != url:
                continue
            if title is not None:
                page.title = title
            if meta_description is not None:
                page.meta_description = meta_description
            rescore(page)
            page.last_modified = utc_now()
            await self.require_save(sitemap_url, results)
            LOGGER.info("Manually updated %s (%s)", url, page.status.value)
            return page
        raise NotFoundError(f"URL not found in results: {url}", key=url)

    async def list_saved_scans(self) -> List[SavedScan]:
        """All persisted result sets, most recently written first."""
        scans: List[SavedScan] = []
        for key in self.backend.keys(RESULTS_PREFIX):
            raw = await self.backend.load(key, default=[])
            if not isinstance(raw, list):
                continue
            pages = [PageResult.from_dict(item) for item in raw if isinstance(item, dict)]
            sitemap_url = next((page.sitemap_url for page in pages if page.sitemap_url), None)
            domain_source = sitemap_url or (pages[0].url if pages else "")
            scans.append(
                SavedScan(
                    key=key[len(RESULTS_PREFIX):],
                    sitemap_url=sitemap_url,
                    domain=registrable_domain(domain_source) if domain_source else "",
                    total=len(pages),
                    good=sum(1 for page in pages if page.status == PageStatus.good),
                    warning=sum(1 for page in pages if page.status == PageStatus.warning),
                    error=sum(1 for page in pages if page.status == PageStatus.error),
                    last_scanned=self.backend.modified_at(key),
                )
            )
        scans.sort(key=lambda scan: scan.last_scanned or "", reverse=True)
        return scans


class ReviewStore:
    """Review records keyed by URL. Scans read it and never write it."""

    def __init__(self, backend: KeyValueStore):
        self.backend = backend

    async def load(self) -> Dict[str, ReviewRecord]:
        raw = await self.backend.load(REVIEWS_KEY, default={})
        if not isinstance(raw, dict):
            LOGGER.warning("Ignoring malformed review store")
            return {}
        return {
            str(url): ReviewRecord.from_dict(record)
            for url, record in raw.items()
            if isinstance(record, dict)
        }

    async def save(self, reviews: Dict[str, ReviewRecord]) -> bool:
        return await self.backend.save(
            REVIEWS_KEY, {url: record.to_dict() for url, record in reviews.items()}
        )

    async def update_review(
        self,
        url: str,
        status: ReviewStatus | str,
        assignee: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReviewRecord:
        """Replace the review record of ``url``. Strings are trimmed."""
        now = utc_now()
        record = ReviewRecord(
            status=ReviewStatus(status),
            assignee=_clean(assignee),
            notes=_clean(notes),
            last_reviewed=now,
            last_updated=now,
        )
        reviews = await self.load()
        reviews[url] = record
        if not await self.save(reviews):
            raise StoreError("Failed to save review", key=REVIEWS_KEY)
        return record

    async def bulk_update(
        self,
        urls: Sequence[str],
        status: ReviewStatus | str,
        assignee: Optional[str] = None,
    ) -> Dict[str, ReviewRecord]:
        """Set one status on many URLs, keeping assignee and notes unless given."""
        review_status = ReviewStatus(status)
        new_assignee = _clean(assignee)
        now = utc_now()
        reviews = await self.load()
        updated: Dict[str, ReviewRecord] = {}
        for url in urls:
            previous = reviews.get(url) or ReviewRecord()
            record = ReviewRecord(
                status=review_status,
                assignee=new_assignee if new_assignee is not None else previous.assignee,
                notes=previous.notes,
                last_reviewed=now,
                last_updated=now,
            )
            reviews[url] = record
            updated[url] = record
        if updated and not await self.save(reviews):
            raise StoreError("Failed to save reviews", key=REVIEWS_KEY)
        LOGGER.info("Bulk-updated %d review(s) to %s", len(updated), review_status.value)
        return updated


class ChangeLedger:
    """Append-only change history per sitemap, trimmed to the newest entries."""

    MAX_ENTRIES = 1000

    def __init__(self, backend: KeyValueStore, max_entries: int = MAX_ENTRIES):
        self.backend = backend
        self.max_entries = max_entries

    async def _load_raw(self, sitemap_url: str) -> List[Dict[str, Any]]:
        raw = await self.backend.load(history_key(sitemap_url), default=[])
        if not isinstance(raw, list):
            LOGGER.warning("Ignoring malformed change history for %s", sitemap_url)
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    async def append(self, sitemap_url: str, events: Sequence[ChangeEvent]) -> bool:
        """Append all ``events`` in a single write; no write when empty."""
        if not events:
            return True
        entries = await self._load_raw(sitemap_url)
        entries.extend(event.to_dict() for event in events)
        if len(entries) > self.max_entries:
            entries = entries[-self.max_entries:]
        return await self.backend.save(history_key(sitemap_url), entries)

    async def history(self, sitemap_url: str, url: Optional[str] = None) -> List[ChangeEvent]:
        """Recorded events, oldest first, optionally for a single page."""
        events: List[ChangeEvent] = []
        for entry in await self._load_raw(sitemap_url):
            try:
                event = ChangeEvent.from_dict(entry)
            except ValueError:
                LOGGER.debug("Skipping malformed change entry: %r", entry)
                continue
            if url is None or event.url == url:
                events.append(event)
        return events


@dataclass(slots=True)
class SavedSitemap:
    id: str
    name: str
    url: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "url": self.url, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedSitemap":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            url=str(data.get("url") or ""),
            created_at=str(data.get("createdAt") or ""),
        )


class SitemapRegistry:
    """Named sitemap bookmarks."""

    def __init__(self, backend: KeyValueStore):
        self.backend = backend

    async def list(self) -> List[SavedSitemap]:
        raw = await self.backend.load(SITEMAPS_KEY, default=[])
        if not isinstance(raw, list):
            return []
        return [SavedSitemap.from_dict(item) for item in raw if isinstance(item, dict)]

    async def add(self, name: str, url: str) -> SavedSitemap:
        name, url = name.strip(), url.strip()
        if not name or not url:
            raise ValueError("Name and URL are required")
        sitemaps = await self.list()
        entry = SavedSitemap(id=uuid.uuid4().hex[:12], name=name, url=url, created_at=utc_now())
        sitemaps.append(entry)
        if not await self.backend.save(SITEMAPS_KEY, [item.to_dict() for item in sitemaps]):
            raise StoreError("Failed to save sitemap", key=SITEMAPS_KEY)
        return entry

    async def remove(self, sitemap_id: str) -> None:
        sitemaps = await self.list()
        remaining = [item for item in sitemaps if item.id != sitemap_id]
        if len(remaining) == len(sitemaps):
            raise NotFoundError(f"Sitemap not found: {sitemap_id}", key=sitemap_id)
        if not await self.backend.save(SITEMAPS_KEY, [item.to_dict() for item in remaining]):
            raise StoreError("Failed to save sitemaps", key=SITEMAPS_KEY)
