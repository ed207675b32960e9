"""Merge a freshly crawled batch into the persisted results for a sitemap.

``reconcile`` is pure: it reads the previous state it is handed, never
touches storage and never raises for empty input. The caller persists
``store_results`` and appends ``change_events`` to the ledger.

Per fresh page, compared against the stored page with the same URL:

- no stored page: ``change_type="new"`` and one ``new_url`` event
- meta description differs (exact comparison): one ``meta_description``
  event and ``change_type="modified"``
- title differs: one ``title`` event; ``change_type`` is left to the
  meta description comparison and may stay ``None``
- otherwise ``has_changed=False`` and ``change_type=None``

Fresh pages replace stored pages in place; unseen URLs are appended in batch
order; stored pages that were not rescanned are kept as they are.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional

from .analyzer import rescore
from .models import (
    CHANGE_MODIFIED,
    CHANGE_NEW,
    ChangeEvent,
    ChangeEventType,
    MergedResult,
    PageResult,
    ReviewRecord,
    ScanMode,
    merge_review,
    normalize_scan_mode,
    utc_now,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileResult:
    """Everything one reconciliation pass produced."""

    merged_results: List[MergedResult] = field(default_factory=list)
    change_events: List[ChangeEvent] = field(default_factory=list)
    store_results: List[PageResult] = field(default_factory=list)
    store_changed: bool = False


def annotate(
    results: Iterable[PageResult],
    reviews: Optional[Mapping[str, ReviewRecord]],
) -> List[MergedResult]:
    """Apply the review overlay to every result, in order."""
    reviews = reviews or {}
    return [merge_review(page, reviews.get(page.url)) for page in results]


def detect_changes(
    fresh: PageResult, previous: Optional[PageResult], timestamp: str
) -> List[ChangeEvent]:
    """Field-level deltas between a fresh page and its stored predecessor."""
    if previous is None:
        return [
            ChangeEvent(
                url=fresh.url,
                change_type=ChangeEventType.new_url,
                new_value=fresh.meta_description,
                timestamp=timestamp,
            )
        ]

    events: List[ChangeEvent] = []
    if previous.meta_description != fresh.meta_description:
        events.append(
            ChangeEvent(
                url=fresh.url,
                change_type=ChangeEventType.meta_description,
                old_value=previous.meta_description,
                new_value=fresh.meta_description,
                timestamp=timestamp,
            )
        )
    if previous.title != fresh.title:
        events.append(
            ChangeEvent(
                url=fresh.url,
                change_type=ChangeEventType.title,
                old_value=previous.title,
                new_value=fresh.title,
                timestamp=timestamp,
            )
        )
    return events


def _coarse_change_type(events: List[ChangeEvent]) -> Optional[str]:
    kinds = {event.change_type for event in events}
    if ChangeEventType.new_url in kinds:
        return CHANGE_NEW
    if ChangeEventType.meta_description in kinds:
        return CHANGE_MODIFIED
    return None


def _dedupe_batch(batch: Iterable[PageResult]) -> List[PageResult]:
    """Collapse repeated URLs to their last occurrence, keeping first position."""
    order: List[str] = []
    latest: Dict[str, PageResult] = {}
    for page in batch:
        if page.url not in latest:
            order.append(page.url)
        latest[page.url] = page
    return [latest[url] for url in order]


def reconcile(
    sitemap_key: str,
    fresh_batch: Optional[Iterable[PageResult]],
    existing_results: Optional[Iterable[PageResult]],
    reviews: Optional[Mapping[str, ReviewRecord]],
    scan_mode: ScanMode | str = ScanMode.full,
    *,
    timestamp: Optional[str] = None,
) -> ReconcileResult:
    """Merge ``fresh_batch`` into ``existing_results`` for one sitemap.

    Args:
        sitemap_key: Identifier of the sitemap the results belong to; only
            used for logging.
        fresh_batch: Pages fetched in this pass. Not mutated.
        existing_results: Previously persisted pages. Not mutated.
        reviews: Review records keyed by page URL.
        scan_mode: ``full``, ``incremental`` or ``selective``. For incremental
            scans the batch is expected to be restricted to unseen URLs
            upstream; the merge rules are the same for every mode.
        timestamp: Shared timestamp for this pass (defaults to now).

    Returns:
        :class:`ReconcileResult`. With an empty batch the store is reported
        unchanged and the merged view is the existing results annotated.
    """
    mode = normalize_scan_mode(scan_mode)
    existing = list(existing_results or [])
    batch = _dedupe_batch(fresh_batch or [])

    if not batch:
        LOGGER.debug("Nothing to reconcile for %s (%s scan)", sitemap_key, mode.value)
        return ReconcileResult(
            merged_results=annotate(existing, reviews),
            store_results=existing,
            store_changed=False,
        )

    pass_timestamp = timestamp or utc_now()
    store = list(existing)
    index_by_url: Dict[str, int] = {}
    for position, page in enumerate(store):
        index_by_url.setdefault(page.url, position)

    events: List[ChangeEvent] = []
    for fresh in batch:
        position = index_by_url.get(fresh.url)
        previous = store[position] if position is not None else None

        page_events = detect_changes(fresh, previous, pass_timestamp)
        events.extend(page_events)

        updated = rescore(replace(fresh, issues=list(fresh.issues)))
        updated.last_crawled = pass_timestamp
        updated.last_analyzed = pass_timestamp
        updated.has_changed = bool(page_events)
        updated.change_type = _coarse_change_type(page_events)

        if position is None:
            index_by_url[fresh.url] = len(store)
            store.append(updated)
        else:
            store[position] = updated

    LOGGER.info(
        "Reconciled %d page(s) for %s (%s scan): %d change event(s)",
        len(batch),
        sitemap_key,
        mode.value,
        len(events),
    )

    return ReconcileResult(
        merged_results=annotate(store, reviews),
        change_events=events,
        store_results=store,
        store_changed=True,
    )
