"""MCP server exposing metawatch scans, results and the review workflow.

Provides tools for:
- Scanning a sitemap (full, incremental, selective, single URL)
- Reading stored results, the URL tree, change history and duplicates
- Updating reviews and manually editing results
- Managing saved sitemaps and exporting reports
- AI-assisted meta description suggestions

Supports both STDIO and HTTP transports.

Usage:
    # STDIO (for Claude Desktop, etc.)
    python -m metawatch.mcp_server

    # HTTP (for remote access)
    python -m metawatch.mcp_server --transport http --port 8000

Environment Variables:
    METAWATCH_DATA_DIR: Directory for result, review and history files (default: ./data)
    METAWATCH_USER_AGENT: User agent for sitemap and page requests
    AI_PROVIDER: "claude" (default) or "grok"
    ANTHROPIC_API_KEY / GROK_API_KEY: Credentials for the AI provider
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP

from .ai import SuggestionClient
from .config import ScanOptions, Settings
from .errors import MetawatchError
from .report import build_csv_report, build_json_report, find_duplicate_descriptions
from .scan import EVENT_CRAWL_PROGRESS, ProgressEvent, Scanner
from .storage import JsonFileStore

LOGGER = logging.getLogger(__name__)

mcp = FastMCP(
    name="metawatch",
    instructions="""
    Meta description monitoring for a website's sitemap.

    1. Scanning:
       - analyze_sitemap: scan a sitemap (scan_mode "full" or "incremental")
       - selective_scan: rescan chosen URLs of a sitemap
       - rescan_url: rescan a single URL
       - scan_status: whether a scan is currently running

    2. Results:
       - scan_results, saved_scans, sitemap_urls, change_history,
         detect_duplicates, export_report

    3. Workflow:
       - update_review, bulk_update_reviews, list_reviews, update_result
       - list_sitemaps, add_sitemap, delete_sitemap

    4. AI suggestions:
       - suggest_meta_descriptions, analyze_meta_description, extract_keywords
       - build_suggestion_prompt, suggest_from_prompt (preview and edit the prompt)
       - bulk_suggest_meta_descriptions, check_ai_connection

    All tools return JSON. Failures are returned as {"error": "..."}.
    """,
)

_SCANNER: Optional[Scanner] = None


def _get_scanner() -> Scanner:
    """Shared scanner; created on first use so ``.env`` is already loaded."""
    global _SCANNER
    if _SCANNER is None:
        settings = Settings.from_env()
        _SCANNER = Scanner(JsonFileStore(settings.data_dir), settings)
    return _SCANNER


def _get_ai_client(provider: Optional[str] = None) -> SuggestionClient:
    return SuggestionClient(Settings.from_env(), provider=provider)


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _error(message: str, **context: Any) -> str:
    LOGGER.error(message)
    return json.dumps({"error": message, **context}, ensure_ascii=False)


def _log_progress(event: ProgressEvent) -> None:
    if event.kind == EVENT_CRAWL_PROGRESS:
        LOGGER.info("[%d/%d] %s", event.current, event.total, event.url)
    else:
        LOGGER.info(event.message)


# =============================================================================
# SCAN TOOLS
# =============================================================================


@mcp.tool
async def analyze_sitemap(
    sitemap_url: str,
    scan_mode: str = "full",
    max_pages: int = 100,
    delay: float = 1.0,
    chunk_size: int = 10,
    use_browser: bool = True,
    include_tree: bool = False,
) -> str:
    """
    Scan every page a sitemap declares and store the results.

    Args:
        sitemap_url: URL of the sitemap or sitemap index
        scan_mode: "full" (rescan everything) or "incremental" (only URLs not
            scanned before)
        max_pages: Maximum number of pages to fetch (default: 100)
        delay: Seconds between two fetches (default: 1.0)
        chunk_size: Pages per chunk; chunks are separated by a 2s pause
        use_browser: Render pages in a headless browser (default: true)
        include_tree: Include the URL tree in the response (default: false)

    Returns:
        JSON with summary, merged results, detected changes and, optionally,
        the URL tree.
    """
    if not sitemap_url:
        return _error("Sitemap URL is required")
    options = ScanOptions.from_mapping(
        {
            "scanMode": scan_mode,
            "maxPages": max_pages,
            "delay": delay,
            "chunkSize": chunk_size,
            "useBrowser": use_browser,
        }
    )
    LOGGER.info("Scanning %s (%s)", sitemap_url, options.scan_mode.value)
    try:
        outcome = await _get_scanner().analyze_sitemap(
            sitemap_url, options, on_progress=_log_progress
        )
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc), sitemapUrl=sitemap_url)
    if outcome.error:
        return _error(outcome.error, sitemapUrl=sitemap_url)
    return _dump(outcome.to_dict(include_tree=include_tree))


@mcp.tool
async def selective_scan(
    urls: List[str],
    sitemap_url: str,
    delay: float = 1.0,
    use_browser: bool = True,
) -> str:
    """
    Rescan selected URLs and merge them into a sitemap's stored results.

    Args:
        urls: URLs to rescan
        sitemap_url: Sitemap whose results the pages belong to
        delay: Seconds between two fetches (default: 1.0)
        use_browser: Render pages in a headless browser (default: true)
    """
    options = ScanOptions.from_mapping(
        {"scanMode": "selective", "delay": delay, "useBrowser": use_browser}
    )
    try:
        outcome = await _get_scanner().selective_scan(
            urls, sitemap_url, options, on_progress=_log_progress
        )
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc), sitemapUrl=sitemap_url)
    return _dump(outcome.to_dict(include_tree=False))


@mcp.tool
async def rescan_url(url: str, sitemap_url: Optional[str] = None) -> str:
    """
    Rescan a single URL. With sitemap_url the stored results are updated and
    any title/meta description change is recorded.
    """
    try:
        outcome = await _get_scanner().rescan_url(url, sitemap_url)
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc), url=url)
    if outcome.error:
        return _error(outcome.error, url=url)
    merged = outcome.find(url)
    return _dump(
        {
            "success": True,
            "result": merged.to_dict() if merged else None,
            "hasChanges": bool(outcome.change_events),
            "changes": [event.to_dict() for event in outcome.change_events],
            "persisted": outcome.persisted,
        }
    )


@mcp.tool
async def scan_status() -> str:
    """Whether a scan is currently running, and its id."""
    slot = _get_scanner().slot
    return _dump({"active": slot.busy, "analysisId": slot.current})


# =============================================================================
# RESULT TOOLS
# =============================================================================


@mcp.tool
async def scan_results(sitemap_url: str, include_tree: bool = True) -> str:
    """Stored results of a sitemap with review state, summary and URL tree."""
    outcome = await _get_scanner().scan_results(sitemap_url)
    data = outcome.to_dict(include_tree=include_tree)
    data["hasResults"] = bool(outcome.merged)
    return _dump(data)


@mcp.tool
async def saved_scans() -> str:
    """Every stored result set, most recently scanned first."""
    scans = await _get_scanner().results.list_saved_scans()
    return _dump({"scans": [scan.to_dict() for scan in scans]})


@mcp.tool
async def sitemap_urls(sitemap_url: str) -> str:
    """All URLs of a sitemap, flagged as scanned or not, with review state."""
    try:
        inventory = await _get_scanner().sitemap_inventory(sitemap_url)
    except MetawatchError as exc:
        return _error(str(exc), sitemapUrl=sitemap_url)
    return _dump(inventory)


@mcp.tool
async def change_history(sitemap_url: str, url: Optional[str] = None) -> str:
    """Recorded title/meta description changes for a sitemap, newest last."""
    events = await _get_scanner().ledger.history(sitemap_url, url)
    return _dump({"changes": [event.to_dict() for event in events], "total": len(events)})


@mcp.tool
async def detect_duplicates(sitemap_url: str) -> str:
    """Groups of pages sharing the same meta description."""
    results = await _get_scanner().results.load(sitemap_url)
    return _dump(find_duplicate_descriptions(results))


@mcp.tool
async def export_report(sitemap_url: str, output_format: str = "json") -> str:
    """
    Export stored results as a report.

    Args:
        sitemap_url: Sitemap whose results to export
        output_format: "json" (summary + results) or "csv"
    """
    outcome = await _get_scanner().scan_results(sitemap_url)
    if not outcome.merged:
        return _error("No results available", sitemapUrl=sitemap_url)
    fmt = output_format.lower()
    if fmt == "csv":
        return build_csv_report(outcome.merged)
    if fmt == "json":
        return _dump(build_json_report(outcome.merged))
    return _error(f"Unsupported format: {output_format}")


# =============================================================================
# WORKFLOW TOOLS
# =============================================================================


@mcp.tool
async def update_review(
    url: str,
    status: str,
    assignee: Optional[str] = None,
    notes: Optional[str] = None,
) -> str:
    """
    Set the review state of a URL.

    Args:
        url: Page URL
        status: "new", "in_progress" or "reviewed"
        assignee: Optional person responsible
        notes: Optional free-text notes
    """
    if not url or not status:
        return _error("URL and status are required")
    try:
        record = await _get_scanner().reviews.update_review(
            url, status.strip(), assignee, notes
        )
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc), url=url)
    return _dump({"message": "URL review updated successfully", "review": record.to_dict()})


@mcp.tool
async def bulk_update_reviews(
    urls: List[str], status: str, assignee: Optional[str] = None
) -> str:
    """Set one review status on many URLs; existing assignees are kept unless given."""
    if not urls or not status:
        return _error("URLs array and status are required")
    try:
        updated = await _get_scanner().reviews.bulk_update(urls, status.strip(), assignee)
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc))
    return _dump({"message": f"{len(updated)} URLs updated successfully"})


@mcp.tool
async def list_reviews() -> str:
    """Every review record, keyed by URL."""
    reviews = await _get_scanner().reviews.load()
    return _dump({url: record.to_dict() for url, record in reviews.items()})


@mcp.tool
async def update_result(
    sitemap_url: str,
    url: str,
    title: Optional[str] = None,
    meta_description: Optional[str] = None,
) -> str:
    """Manually correct a stored title/meta description; status is recomputed."""
    try:
        page = await _get_scanner().results.update_page(
            sitemap_url, url, title=title, meta_description=meta_description
        )
    except MetawatchError as exc:
        return _error(str(exc), url=url)
    return _dump({"success": True, "result": page.to_dict()})


@mcp.tool
async def list_sitemaps() -> str:
    """Saved sitemap bookmarks."""
    sitemaps = await _get_scanner().sitemaps.list()
    return _dump([item.to_dict() for item in sitemaps])


@mcp.tool
async def add_sitemap(name: str, url: str) -> str:
    """Save a sitemap under a display name."""
    try:
        entry = await _get_scanner().sitemaps.add(name, url)
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc))
    return _dump(entry.to_dict())


@mcp.tool
async def delete_sitemap(sitemap_id: str) -> str:
    """Remove a saved sitemap by id."""
    try:
        await _get_scanner().sitemaps.remove(sitemap_id)
    except MetawatchError as exc:
        return _error(str(exc), id=sitemap_id)
    return _dump({"success": True})


# =============================================================================
# AI TOOLS
# =============================================================================


@mcp.tool
async def suggest_meta_descriptions(
    url: str,
    title: Optional[str] = None,
    current_meta: Optional[str] = None,
    count: int = 5,
    provider: Optional[str] = None,
    target_keyword: Optional[str] = None,
) -> str:
    """
    Generate meta description suggestions for a page.

    Args:
        url: Page URL; the page is fetched for context
        title: Current page title
        current_meta: Current meta description
        count: Maximum number of suggestions (default: 5)
        provider: Override AI_PROVIDER ("claude" or "grok")
        target_keyword: Keyword the suggestions should include
    """
    try:
        client = _get_ai_client(provider)
        result = await client.generate_suggestions(
            url, title, current_meta, count, target_keyword=target_keyword
        )
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc), url=url)
    data: Dict[str, Any] = {"success": True, **result.to_dict()}
    return _dump(data)


@mcp.tool
async def analyze_meta_description(meta_description: str) -> str:
    """Short AI review of a meta description's quality."""
    if not meta_description:
        return _error("Meta description is required")
    try:
        data = await _get_ai_client().analyze_description(meta_description)
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc))
    return _dump({"success": True, **data})


@mcp.tool
async def extract_keywords(meta_description: str) -> str:
    """Main SEO keywords of a meta description."""
    if not meta_description:
        return _error("Meta description is required")
    try:
        data = await _get_ai_client().extract_keywords(meta_description)
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc))
    return _dump({"success": True, **data})


@mcp.tool
async def build_suggestion_prompt(
    url: str,
    title: Optional[str] = None,
    current_meta: Optional[str] = None,
    target_keyword: Optional[str] = None,
) -> str:
    """
    Preview the prompt suggest_meta_descriptions would send for a page.

    The page is fetched for context. Edit the prompt and pass it to
    suggest_from_prompt to generate from the edited version.
    """
    if not url:
        return _error("URL is required")
    try:
        built = await _get_ai_client().build_prompt(
            url, title, current_meta, target_keyword=target_keyword
        )
    except (MetawatchError, ValueError) as exc:
        return _error(f"Failed to build prompt: {exc}", url=url)
    return _dump({"success": True, **built})


@mcp.tool
async def suggest_from_prompt(
    prompt: str, count: int = 5, provider: Optional[str] = None
) -> str:
    """Generate meta description suggestions from a custom prompt."""
    if not prompt:
        return _error("Prompt is required")
    try:
        result = await _get_ai_client(provider).generate_from_prompt(prompt, count)
    except (MetawatchError, ValueError) as exc:
        return _error(f"Failed to generate suggestions: {exc}")
    return _dump({"success": True, **result.to_dict()})


@mcp.tool
async def bulk_suggest_meta_descriptions(
    pages: List[Dict[str, Any]],
    suggestions_per_page: int = 3,
    provider: Optional[str] = None,
) -> str:
    """
    Generate suggestions for several pages, one after the other.

    Args:
        pages: Objects with "url" and optionally "title" and "metaDescription"
        suggestions_per_page: Suggestions per page (default: 3)
        provider: Override AI_PROVIDER ("claude" or "grok")

    A page that fails is reported with its error; the rest still run.
    """
    if not pages:
        return _error("Pages array is required")
    try:
        report = await _get_ai_client(provider).generate_bulk(pages, suggestions_per_page)
    except ValueError as exc:
        return _error(str(exc))
    return _dump({"success": True, **report})


@mcp.tool
async def check_ai_connection(provider: Optional[str] = None) -> str:
    """Send a tiny prompt to the configured AI provider and report the reply."""
    try:
        data = await _get_ai_client(provider).test_connection()
    except (MetawatchError, ValueError) as exc:
        return _error(str(exc))
    return _dump({"success": True, **data})


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for running the MCP server."""
    parser = argparse.ArgumentParser(
        description="Run the metawatch MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    METAWATCH_DATA_DIR  Directory for stored results (default: ./data)
    AI_PROVIDER         "claude" (default) or "grok"

Examples:
    # STDIO transport (default, for Claude Desktop)
    python -m metawatch.mcp_server

    # HTTP transport (for remote access)
    python -m metawatch.mcp_server --transport http --port 8000
""",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to for HTTP transport (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to for HTTP transport (default: 8000)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    load_dotenv()

    settings = Settings.from_env()
    LOGGER.info("Data directory: %s", settings.data_dir)
    LOGGER.info("AI provider: %s", settings.ai_provider)

    if args.transport == "http":
        LOGGER.info("Starting MCP server on http://%s:%d/mcp", args.host, args.port)
        mcp.run(transport="http", host=args.host, port=args.port)
    else:
        LOGGER.info("Starting MCP server with STDIO transport")
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
