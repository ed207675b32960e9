"""Summaries and exports over a result set (JSON, CSV, console)."""

from __future__ import annotations

import csv
import io
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import (
    MergedResult,
    PageResult,
    PageStatus,
    ReviewStatus,
    Summary,
    normalize_status,
    utc_now,
)

CSV_HEADERS = [
    "URL",
    "Title",
    "Has Meta Description",
    "Meta Description",
    "Character Count",
    "Status",
    "Issues",
]

_ISSUE_CATEGORIES = (
    ("Missing meta description", "Missing Meta Description"),
    ("too short", "Too Short"),
    ("too long", "Too Long"),
    ("identical to title", "Duplicate Title"),
    ("Lorem ipsum", "Placeholder Text"),
    ("repeated words", "Repeated Words"),
    ("punctuation", "Missing Punctuation"),
    ("Failed to fetch", "Fetch Errors"),
)

_STATUS_MARKERS = {
    PageStatus.good: "[ok]",
    PageStatus.warning: "[warn]",
    PageStatus.error: "[error]",
}


def _page(item: PageResult | MergedResult) -> PageResult:
    return item.page if isinstance(item, MergedResult) else item


def generate_summary(results: Iterable[PageResult | MergedResult]) -> Summary:
    """Counts per status and meta description coverage."""
    summary = Summary()
    for item in results:
        page = _page(item)
        summary.total += 1
        status = normalize_status(page.status)
        if status == PageStatus.good:
            summary.good += 1
        elif status == PageStatus.error:
            summary.error += 1
        else:
            summary.warning += 1
        if page.has_meta_description:
            summary.with_meta_description += 1

    summary.missing_meta_description = summary.total - summary.with_meta_description
    if summary.total:
        # half up, not banker's rounding
        summary.percentage_with_meta = int(
            summary.with_meta_description * 100 / summary.total + 0.5
        )
    return summary


def build_json_report(results: Sequence[PageResult | MergedResult]) -> Dict[str, Any]:
    return {
        "summary": generate_summary(results).to_dict(),
        "timestamp": utc_now(),
        "results": [item.to_dict() for item in results],
    }


def build_csv_report(results: Iterable[PageResult | MergedResult]) -> str:
    """All cells quoted, issues joined with ``; ``."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for item in results:
        page = _page(item)
        writer.writerow(
            [
                page.url,
                page.title or "",
                "Yes" if page.has_meta_description else "No",
                page.meta_description or "",
                page.character_count,
                normalize_status(page.status).value,
                "; ".join(page.issues),
            ]
        )
    return buffer.getvalue()


def categorize_issue(issue: str) -> str:
    for needle, category in _ISSUE_CATEGORIES:
        if needle in issue:
            return category
    return "Other"


def issues_breakdown(results: Iterable[PageResult | MergedResult]) -> Dict[str, List[str]]:
    """Issue category -> affected URLs, largest category first."""
    categories: Dict[str, List[str]] = defaultdict(list)
    for item in results:
        page = _page(item)
        for issue in page.issues:
            categories[categorize_issue(issue)].append(page.url)
    return dict(sorted(categories.items(), key=lambda entry: len(entry[1]), reverse=True))


@dataclass(slots=True)
class DuplicateGroup:
    """Pages sharing the same meta description (case and whitespace aside)."""

    description: str
    urls: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.urls)

    def to_dict(self) -> Dict[str, Any]:
        return {"description": self.description, "count": self.count, "urls": list(self.urls)}


def find_duplicate_descriptions(
    results: Iterable[PageResult | MergedResult],
) -> Dict[str, Any]:
    """Group pages whose meta descriptions match after trimming and lowercasing.

    The first spelling seen is reported. Groups are ordered by size, largest
    first, and ``affectedUrls`` counts every URL in any group.
    """
    groups: Dict[str, DuplicateGroup] = {}
    for item in results:
        page = _page(item)
        if not page.meta_description:
            continue
        normalized = page.meta_description.strip().lower()
        if not normalized:
            continue
        group = groups.get(normalized)
        if group is None:
            group = DuplicateGroup(description=page.meta_description.strip())
            groups[normalized] = group
        group.urls.append(page.url)

    duplicates = sorted(
        (group for group in groups.values() if group.count > 1),
        key=lambda group: group.count,
        reverse=True,
    )
    return {
        "duplicates": [group.to_dict() for group in duplicates],
        "totalDuplicateGroups": len(duplicates),
        "affectedUrls": sum(group.count for group in duplicates),
    }


def format_console_report(
    results: Sequence[PageResult | MergedResult],
    *,
    summary: Optional[Summary] = None,
) -> str:
    """Plain-text report: summary block, per-page details, issue breakdown."""
    summary = summary or generate_summary(results)
    rule = "=" * 60
    lines = [
        rule,
        "SEO META DESCRIPTION ANALYSIS REPORT",
        rule,
        "",
        "SUMMARY:",
        f"  Total pages analyzed: {summary.total}",
        f"  Pages with meta descriptions: {summary.with_meta_description}"
        f" ({summary.percentage_with_meta}%)",
        f"  Missing meta descriptions: {summary.missing_meta_description}",
        f"  Warnings: {summary.warning}",
        f"  Errors: {summary.error}",
        f"  Good: {summary.good}",
        "",
        "DETAILED RESULTS:",
        "-" * 60,
    ]

    for index, item in enumerate(results, 1):
        page = _page(item)
        marker = _STATUS_MARKERS[normalize_status(page.status)]
        lines.append("")
        lines.append(f"{index}. {marker} {page.url}")
        if page.title:
            lines.append(f"   Title: {page.title}")
        if page.has_meta_description:
            lines.append(
                f"   Meta Description ({page.character_count} chars): {page.meta_description}"
            )
        else:
            lines.append("   Meta Description: MISSING")
        if isinstance(item, MergedResult) and item.review_status != ReviewStatus.new:
            lines.append(f"   Review: {item.review_status.value}")
        if page.issues:
            lines.append("   Issues:")
            lines.extend(f"     - {issue}" for issue in page.issues)

    breakdown = issues_breakdown(results)
    if breakdown:
        lines.extend(["", "ISSUES BREAKDOWN:", "-" * 40])
        lines.extend(f"{category}: {len(urls)} pages" for category, urls in breakdown.items())

    lines.extend(["", rule])
    return "\n".join(lines)
