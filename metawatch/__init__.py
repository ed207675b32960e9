"""Sitemap-driven meta description monitoring.

Crawls the pages a sitemap declares, scores their titles and meta
descriptions, and keeps a per-sitemap result set with change history and a
review workflow on top. It supports:

- Full scans and incremental scans (only URLs not seen before)
- Selective rescans of chosen URLs
- Change detection for titles and meta descriptions
- A URL tree with status rollups
- AI-assisted rewrite suggestions

Example usage:

    from metawatch import Scanner, JsonFileStore, ScanOptions

    scanner = Scanner(JsonFileStore("./data"))
    outcome = await scanner.analyze_sitemap(
        "https://example.com/sitemap.xml",
        ScanOptions(scan_mode="incremental"),
    )
    print(outcome.summary.to_dict())
    for event in outcome.change_events:
        print(event.change_type.value, event.url)

    # Or synchronously
    from metawatch import analyze_sitemap
    outcome = analyze_sitemap("https://example.com/sitemap.xml", data_dir="./data")
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Sequence

from .analyzer import analyze, build_page_result, rescore, score_meta_description
from .config import ScanOptions, Settings
from .errors import (
    AIError,
    MetawatchError,
    NotFoundError,
    ScanInProgressError,
    SitemapError,
    StoreError,
)
from .models import (
    ChangeEvent,
    ChangeEventType,
    MergedResult,
    PageResult,
    PageStatus,
    ReviewRecord,
    ReviewStatus,
    ScanMode,
    Summary,
    merge_review,
)
from .reconcile import ReconcileResult, reconcile
from .report import generate_summary
from .scan import ScanOutcome, Scanner, ScanSlot
from .sitemap import SitemapResolver, get_all_urls
from .storage import JsonFileStore, MemoryStore, sitemap_key
from .tree import TreeNode, build_url_tree

__all__ = [
    # Data model
    "PageResult",
    "PageStatus",
    "ReviewRecord",
    "ReviewStatus",
    "ChangeEvent",
    "ChangeEventType",
    "MergedResult",
    "ScanMode",
    "Summary",
    "merge_review",
    # Errors
    "MetawatchError",
    "SitemapError",
    "ScanInProgressError",
    "StoreError",
    "NotFoundError",
    "AIError",
    # Analysis
    "analyze",
    "build_page_result",
    "rescore",
    "score_meta_description",
    # Reconciliation and projection
    "reconcile",
    "ReconcileResult",
    "build_url_tree",
    "TreeNode",
    "generate_summary",
    # Scanning
    "Scanner",
    "ScanSlot",
    "ScanOutcome",
    "ScanOptions",
    "Settings",
    "SitemapResolver",
    "get_all_urls",
    "analyze_sitemap",
    "selective_scan",
    # Storage
    "JsonFileStore",
    "MemoryStore",
    "sitemap_key",
    # MCP Server
    "mcp",
]


def get_mcp_server():
    """Get the MCP server instance (lazy import to avoid dependency if not needed)."""
    from .mcp_server import mcp

    return mcp


# Lazy import for mcp to avoid requiring fastmcp if not used
def __getattr__(name):
    if name == "mcp":
        from .mcp_server import mcp

        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def _scanner(data_dir: Optional[str | Path]) -> Scanner:
    settings = Settings.from_env()
    return Scanner(JsonFileStore(data_dir or settings.data_dir), settings)


def analyze_sitemap(
    sitemap_url: str,
    options: Optional[ScanOptions] = None,
    *,
    data_dir: Optional[str | Path] = None,
) -> ScanOutcome:
    """Synchronous wrapper for :meth:`Scanner.analyze_sitemap`."""
    return asyncio.run(_scanner(data_dir).analyze_sitemap(sitemap_url, options))


def selective_scan(
    urls: Sequence[str],
    sitemap_url: str,
    options: Optional[ScanOptions] = None,
    *,
    data_dir: Optional[str | Path] = None,
) -> ScanOutcome:
    """Synchronous wrapper for :meth:`Scanner.selective_scan`."""
    return asyncio.run(_scanner(data_dir).selective_scan(urls, sitemap_url, options))
