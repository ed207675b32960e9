"""Batch crawl orchestration: sitemap -> fetch -> reconcile -> persist.

Only one scan runs per process. Pages are fetched strictly one after the
other, in chunks, with a delay between fetches and a longer pause between
chunks so the target site is not hammered.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

from .analyzer import build_page_result, rescore
from .config import ScanOptions, Settings
from .errors import ScanInProgressError, SitemapError
from .fetcher import FetchResult, PageFetcher
from .models import (
    ChangeEvent,
    MergedResult,
    PageResult,
    ScanMode,
    Summary,
    merge_review,
    utc_now,
)
from .reconcile import annotate, reconcile
from .report import generate_summary
from .sitemap import SitemapResolver
from .storage import KeyValueStore, sitemap_key
from .stores import ChangeLedger, ResultStore, ReviewStore, SitemapRegistry
from .tree import TreeNode, build_url_tree

LOGGER = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_CRAWL_PROGRESS = "crawl-progress"
EVENT_COMPLETE = "complete"


class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchResult: ...


FetcherFactory = Callable[[ScanOptions], AsyncContextManager[Fetcher]]
SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(slots=True)
class ProgressEvent:
    """Progress notification emitted while a scan runs."""

    kind: str
    message: str = ""
    step: Optional[str] = None
    current: int = 0
    total: int = 0
    url: Optional[str] = None
    chunk: Optional[int] = None
    chunks: Optional[int] = None
    scan_id: Optional[str] = None

    @property
    def percentage(self) -> int:
        if not self.total:
            return 0
        return int(self.current * 100 / self.total + 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.kind,
            "analysisId": self.scan_id,
            "step": self.step,
            "message": self.message,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "url": self.url,
            "chunk": self.chunk,
            "chunks": self.chunks,
        }


ProgressCallback = Callable[[ProgressEvent], None]


def _emit(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
    if callback is not None:
        callback(event)


def chunk_urls(urls: Sequence[str], size: int = 10) -> List[List[str]]:
    """Split ``urls`` into consecutive chunks of at most ``size`` items."""
    size = max(1, int(size))
    return [list(urls[start:start + size]) for start in range(0, len(urls), size)]


async def crawl_urls(
    fetcher: Fetcher,
    urls: Sequence[str],
    options: Optional[ScanOptions] = None,
    *,
    on_progress: Optional[ProgressCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
    scan_id: Optional[str] = None,
) -> List[PageResult]:
    """Fetch and analyze ``urls`` in order, one at a time.

    ``options.delay`` is awaited between two fetches of the same chunk and
    ``options.chunk_pause`` between chunks; neither follows the last item.
    Failed fetches become error results, so the output always has one
    entry per input URL.
    """
    options = options or ScanOptions()
    chunks = chunk_urls(urls, options.chunk_size)
    total = len(urls)
    processed = 0
    results: List[PageResult] = []

    for chunk_index, chunk in enumerate(chunks):
        _emit(
            on_progress,
            ProgressEvent(
                kind=EVENT_PROGRESS,
                step="crawling",
                message=f"Processing chunk {chunk_index + 1} of {len(chunks)}...",
                current=processed,
                total=total,
                chunk=chunk_index + 1,
                chunks=len(chunks),
                scan_id=scan_id,
            ),
        )

        for position, url in enumerate(chunk):
            LOGGER.debug("Fetching %s", url)
            fetched = await fetcher.fetch(url)
            results.append(build_page_result(fetched))
            processed += 1
            _emit(
                on_progress,
                ProgressEvent(
                    kind=EVENT_CRAWL_PROGRESS,
                    current=processed,
                    total=total,
                    url=url,
                    scan_id=scan_id,
                ),
            )
            if position < len(chunk) - 1 and options.delay > 0:
                await sleep(options.delay)

        if chunk_index < len(chunks) - 1 and options.chunk_pause > 0:
            await sleep(options.chunk_pause)

    return results


def new_scan_id() -> str:
    return uuid.uuid4().hex[:12]


class ScanSlot:
    """Holds the id of the running scan, if any."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Optional[str] = None

    @property
    def current(self) -> Optional[str]:
        return self._current

    @property
    def busy(self) -> bool:
        return self._current is not None

    def claim(self, scan_id: Optional[str] = None) -> str:
        """Take the slot or raise :class:`ScanInProgressError`; never queues."""
        with self._lock:
            if self._current is not None:
                raise ScanInProgressError(self._current)
            self._current = scan_id or new_scan_id()
            return self._current

    def release(self, scan_id: str) -> None:
        with self._lock:
            if self._current == scan_id:
                self._current = None


# Shared by every Scanner that is not handed its own slot.
_ACTIVE_SCAN = ScanSlot()


@dataclass(slots=True)
class ScanOutcome:
    """What a scan (or a stored-results view) hands to the presentation layer."""

    sitemap_url: Optional[str]
    scan_id: Optional[str] = None
    scan_mode: Optional[ScanMode] = None
    merged: List[MergedResult] = field(default_factory=list)
    tree: TreeNode = field(default_factory=lambda: build_url_tree([]))
    summary: Summary = field(default_factory=Summary)
    change_events: List[ChangeEvent] = field(default_factory=list)
    scanned_urls: List[str] = field(default_factory=list)
    total_urls_found: Optional[int] = None
    persisted: bool = True
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def find(self, url: str) -> Optional[MergedResult]:
        return next((item for item in self.merged if item.url == url), None)

    def to_dict(self, include_tree: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "analysisId": self.scan_id,
            "sitemapUrl": self.sitemap_url,
            "scanMode": self.scan_mode.value if self.scan_mode else None,
            "summary": self.summary.to_dict(),
            "results": [item.to_dict() for item in self.merged],
            "changes": [event.to_dict() for event in self.change_events],
            "scannedUrls": len(self.scanned_urls),
            "totalUrlsFound": self.total_urls_found,
            "persisted": self.persisted,
        }
        if include_tree:
            data["tree"] = self.tree.to_dict()
        if self.error:
            data["error"] = self.error
        return data


def _dedupe(urls: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(url.strip() for url in urls if url and url.strip()))


class Scanner:
    """Runs scans against one persistence backend.

    Args:
        backend: Key-value store for results, reviews and history.
        settings: Process settings; read from the environment when omitted.
        fetcher_factory: Builds the async fetcher context for a scan.
        resolver: Sitemap resolver (defaults to an httpx-backed one).
        slot: Single-scan lock; defaults to the process-wide slot.
        sleep: Awaitable used for pacing.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        settings: Optional[Settings] = None,
        *,
        fetcher_factory: Optional[FetcherFactory] = None,
        resolver: Optional[SitemapResolver] = None,
        slot: Optional[ScanSlot] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self.backend = backend
        self.results = ResultStore(backend)
        self.reviews = ReviewStore(backend)
        self.ledger = ChangeLedger(backend)
        self.sitemaps = SitemapRegistry(backend)
        self.slot = slot if slot is not None else _ACTIVE_SCAN
        self._fetcher_factory = fetcher_factory or self._default_fetcher
        self._resolver = resolver
        self._sleep = sleep

    def _default_fetcher(self, options: ScanOptions) -> AsyncContextManager[Fetcher]:
        return PageFetcher(options, self.settings)

    def _get_resolver(self, options: ScanOptions) -> SitemapResolver:
        if self._resolver is not None:
            return self._resolver
        return SitemapResolver(timeout=options.timeout, user_agent=self.settings.user_agent)

    async def analyze_sitemap(
        self,
        sitemap_url: str,
        options: Optional[ScanOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ScanOutcome:
        """Full or incremental scan of every URL a sitemap declares.

        Raises:
            ScanInProgressError: When another scan holds the slot.
        """
        options = options or ScanOptions()
        if options.scan_mode == ScanMode.selective:
            raise ValueError("Use selective_scan() for selective scans")
        scan_id = self.slot.claim()
        try:
            return await self._scan_sitemap(scan_id, sitemap_url, options, on_progress)
        finally:
            self.slot.release(scan_id)

    async def selective_scan(
        self,
        urls: Sequence[str],
        sitemap_url: str,
        options: Optional[ScanOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ScanOutcome:
        """Rescan a chosen set of URLs and merge them into the sitemap's results.

        Raises:
            ValueError: When ``urls`` is empty or ``sitemap_url`` is missing.
            ScanInProgressError: When another scan holds the slot.
        """
        targets = _dedupe(urls)
        if not targets:
            raise ValueError("URLs array is required")
        if not sitemap_url:
            raise ValueError("Sitemap URL is required for saving results")

        options = options or ScanOptions()
        scan_id = self.slot.claim()
        try:
            _emit(
                on_progress,
                ProgressEvent(
                    kind=EVENT_PROGRESS,
                    step="starting",
                    message=f"Starting selective scan of {len(targets)} URLs...",
                    total=len(targets),
                    scan_id=scan_id,
                ),
            )
            batch = await self._crawl(scan_id, targets, options, on_progress)
            existing = await self.results.load(sitemap_url)
            reviews = await self.reviews.load()
            return await self._finish(
                scan_id,
                sitemap_url,
                ScanMode.selective,
                batch,
                existing,
                reviews,
                on_progress,
                scanned_urls=targets,
            )
        finally:
            self.slot.release(scan_id)

    async def rescan_url(
        self,
        url: str,
        sitemap_url: Optional[str] = None,
        options: Optional[ScanOptions] = None,
    ) -> ScanOutcome:
        """Fetch one URL again.

        With ``sitemap_url`` the page is reconciled and persisted like a
        one-item selective scan. Without it the fresh analysis is only
        returned. A failed fetch is reported through ``ScanOutcome.error``
        and nothing is written.
        """
        if not url:
            raise ValueError("URL is required")
        options = options or ScanOptions()
        scan_id = self.slot.claim()
        try:
            async with self._fetcher_factory(options) as fetcher:
                fetched = await fetcher.fetch(url)
            if not fetched.success:
                return ScanOutcome(
                    sitemap_url=sitemap_url,
                    scan_id=scan_id,
                    scan_mode=ScanMode.selective,
                    scanned_urls=[url],
                    error=f"Failed to crawl URL: {fetched.error}",
                )

            page = build_page_result(fetched)
            reviews = await self.reviews.load()
            if not sitemap_url:
                now = utc_now()
                page.last_crawled = now
                page.last_analyzed = now
                merged = [merge_review(rescore(page), reviews.get(page.url))]
                return ScanOutcome(
                    sitemap_url=None,
                    scan_id=scan_id,
                    scan_mode=ScanMode.selective,
                    merged=merged,
                    tree=build_url_tree(merged),
                    summary=generate_summary(merged),
                    scanned_urls=[url],
                    persisted=False,
                )

            existing = await self.results.load(sitemap_url)
            return await self._finish(
                scan_id,
                sitemap_url,
                ScanMode.selective,
                [page],
                existing,
                reviews,
                None,
                scanned_urls=[url],
            )
        finally:
            self.slot.release(scan_id)

    async def scan_results(self, sitemap_url: str) -> ScanOutcome:
        """Stored results for a sitemap with the current review overlay."""
        existing = await self.results.load(sitemap_url)
        merged = annotate(existing, await self.reviews.load())
        return ScanOutcome(
            sitemap_url=sitemap_url,
            merged=merged,
            tree=build_url_tree(merged),
            summary=generate_summary(merged),
        )

    async def sitemap_inventory(self, sitemap_url: str) -> Dict[str, Any]:
        """Every URL the sitemap declares, flagged with its scan and review state.

        Raises:
            SitemapError: When the sitemap cannot be fetched or parsed.
        """
        urls = _dedupe(await self._get_resolver(ScanOptions()).get_all_urls(sitemap_url))
        stored = {page.url: page for page in await self.results.load(sitemap_url)}
        reviews = await self.reviews.load()

        entries: List[Dict[str, Any]] = []
        for url in urls:
            page = stored.get(url)
            review = reviews.get(url)
            entries.append(
                {
                    "url": url,
                    "isScanned": page is not None,
                    "scanData": page.to_dict() if page else None,
                    "reviewStatus": review.status.value if review else "new",
                    "assignee": review.assignee if review else None,
                    "notes": review.notes if review else None,
                    "lastScanned": page.last_analyzed if page else None,
                    "lastReviewed": review.last_reviewed if review else None,
                    "seoStatus": page.status.value if page else None,
                }
            )

        scanned = sum(1 for entry in entries if entry["isScanned"])
        return {
            "urls": entries,
            "total": len(entries),
            "scanned": scanned,
            "unscanned": len(entries) - scanned,
        }

    async def _scan_sitemap(
        self,
        scan_id: str,
        sitemap_url: str,
        options: ScanOptions,
        on_progress: Optional[ProgressCallback],
    ) -> ScanOutcome:
        mode = options.scan_mode
        _emit(
            on_progress,
            ProgressEvent(
                kind=EVENT_PROGRESS, step="parsing", message="Parsing sitemap...", scan_id=scan_id
            ),
        )

        try:
            urls = _dedupe(await self._get_resolver(options).get_all_urls(sitemap_url))
        except SitemapError as exc:
            LOGGER.error("Scan %s aborted: %s", scan_id, exc)
            return ScanOutcome(
                sitemap_url=sitemap_url,
                scan_id=scan_id,
                scan_mode=mode,
                persisted=False,
                error=str(exc),
            )

        existing = await self.results.load(sitemap_url)
        reviews = await self.reviews.load()
        total_found = len(urls)

        if mode == ScanMode.incremental:
            known = {page.url for page in existing}
            urls = [url for url in urls if url not in known]
            _emit(
                on_progress,
                ProgressEvent(
                    kind=EVENT_PROGRESS,
                    step="filtered",
                    message=(
                        f"Found {total_found} URLs in sitemap. {len(known)} already "
                        f"scanned, {len(urls)} new URLs to scan."
                    ),
                    total=len(urls),
                    scan_id=scan_id,
                ),
            )

        if len(urls) > options.max_pages:
            LOGGER.info("Limiting scan to %d of %d URLs", options.max_pages, len(urls))
            urls = urls[: options.max_pages]

        batch: List[PageResult] = []
        if urls:
            batch = await self._crawl(scan_id, urls, options, on_progress)

        return await self._finish(
            scan_id,
            sitemap_url,
            mode,
            batch,
            existing,
            reviews,
            on_progress,
            scanned_urls=urls,
            total_urls_found=total_found,
        )

    async def _crawl(
        self,
        scan_id: str,
        urls: Sequence[str],
        options: ScanOptions,
        on_progress: Optional[ProgressCallback],
    ) -> List[PageResult]:
        LOGGER.info("Scan %s: crawling %d URL(s)", scan_id, len(urls))
        async with self._fetcher_factory(options) as fetcher:
            return await crawl_urls(
                fetcher,
                urls,
                options,
                on_progress=on_progress,
                sleep=self._sleep,
                scan_id=scan_id,
            )

    async def _finish(
        self,
        scan_id: str,
        sitemap_url: str,
        mode: ScanMode,
        batch: List[PageResult],
        existing: List[PageResult],
        reviews: Dict[str, Any],
        on_progress: Optional[ProgressCallback],
        *,
        scanned_urls: Sequence[str],
        total_urls_found: Optional[int] = None,
    ) -> ScanOutcome:
        for page in batch:
            page.sitemap_url = sitemap_url
        result = reconcile(sitemap_key(sitemap_url), batch, existing, reviews, mode)

        persisted = True
        if result.store_changed:
            history_saved = await self.ledger.append(sitemap_url, result.change_events)
            results_saved = await self.results.save(sitemap_url, result.store_results)
            persisted = history_saved and results_saved
            if not persisted:
                LOGGER.error(
                    "Scan %s: results for %s could not be fully persisted",
                    scan_id,
                    sitemap_url,
                )

        merged = result.merged_results
        outcome = ScanOutcome(
            sitemap_url=sitemap_url,
            scan_id=scan_id,
            scan_mode=mode,
            merged=merged,
            tree=build_url_tree(merged),
            summary=generate_summary(merged),
            change_events=result.change_events,
            scanned_urls=list(scanned_urls),
            total_urls_found=total_urls_found,
            persisted=persisted,
        )
        _emit(
            on_progress,
            ProgressEvent(
                kind=EVENT_COMPLETE,
                step="complete",
                message=(
                    f"Scanned {len(scanned_urls)} URL(s); "
                    f"{len(result.change_events)} change(s) detected"
                ),
                current=len(scanned_urls),
                total=len(scanned_urls),
                scan_id=scan_id,
            ),
        )
        return outcome
