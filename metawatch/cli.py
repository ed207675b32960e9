"""Command-line interface: ``metawatch-scan`` and ``metawatch-report``."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .cli_config import load_config
from .cli_output import format_duplicates, format_history, format_tree, to_json, write_output
from .config import ScanOptions, Settings
from .errors import ScanInProgressError
from .models import ScanMode, normalize_scan_mode
from .report import (
    build_csv_report,
    build_json_report,
    find_duplicate_descriptions,
    format_console_report,
)
from .scan import EVENT_CRAWL_PROGRESS, ProgressEvent, ScanOutcome, Scanner
from .storage import JsonFileStore, KeyValueStore, MemoryStore

# Configuration directory for global CLI usage
CONFIG_DIR = Path.home() / ".config" / "metawatch"
CONFIG_ENV_FILE = CONFIG_DIR / ".env"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BUSY = 2
EXIT_INTERRUPTED = 130


def _load_config() -> None:
    load_config(
        config_dir=CONFIG_DIR,
        config_env_file=CONFIG_ENV_FILE,
        cwd=Path.cwd(),
        load_env=load_dotenv,
        copy_file=shutil.copy,
    )


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _log_progress(event: ProgressEvent) -> None:
    if event.kind == EVENT_CRAWL_PROGRESS:
        logging.info("[%d/%d] %d%% %s", event.current, event.total, event.percentage, event.url)
    elif event.message:
        logging.info(event.message)


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(args, "data_dir", None):
        settings = dataclasses.replace(settings, data_dir=Path(args.data_dir))
    return settings


# =============================================================================
# SCAN COMMAND
# =============================================================================


def _parse_scan_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="metawatch-scan",
        description="Scan a sitemap's pages and check their meta descriptions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  # Full scan (first 100 URLs)
  metawatch-scan https://example.com/sitemap.xml

  # Only URLs that were never scanned before
  metawatch-scan https://example.com/sitemap.xml --mode incremental

  # Rescan selected pages of a sitemap
  metawatch-scan https://example.com/sitemap.xml --url https://example.com/a --url https://example.com/b

  # Plain HTTP instead of a headless browser, JSON output
  metawatch-scan https://example.com/sitemap.xml --no-browser --json -o report.json
""",
    )

    parser.add_argument("sitemap_url", help="Sitemap or sitemap index URL")
    parser.add_argument(
        "--mode",
        choices=["full", "incremental"],
        default="full",
        help="Scan every URL or only unseen URLs (default: full)",
    )
    parser.add_argument(
        "--url",
        action="append",
        dest="urls",
        default=None,
        help="Rescan only this URL (repeatable); selects a selective scan",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=100,
        help="Maximum pages to fetch (default: 100)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=10,
        help="Pages per chunk (default: 10)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=1.0,
        help="Seconds between fetches (default: 1.0)",
    )
    parser.add_argument(
        "--chunk-pause",
        type=float,
        default=2.0,
        help="Seconds between chunks (default: 2.0)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Per-page timeout in seconds (default: 10)",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Fetch pages over plain HTTP instead of a headless browser",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory for stored results (default: $METAWATCH_DATA_DIR or ./data)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not read or write stored results",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="json_output",
        help="Output the full outcome as JSON",
    )
    parser.add_argument(
        "--tree",
        action="store_true",
        help="Print the URL tree after the report",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Write the report to a file instead of stdout",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(argv)


def _render_outcome(outcome: ScanOutcome, args: argparse.Namespace) -> str:
    if args.json_output:
        return to_json(outcome.to_dict(include_tree=args.tree))
    text = format_console_report(outcome.merged, summary=outcome.summary)
    if args.tree:
        text += "\n\nURL TREE:\n" + format_tree(outcome.tree)
    return text


async def _run_scan_async(args: argparse.Namespace) -> int:
    """Main async entry point for scan."""
    settings = _settings(args)
    backend: KeyValueStore = MemoryStore() if args.dry_run else JsonFileStore(settings.data_dir)
    scanner = Scanner(backend, settings)
    options = ScanOptions(
        max_pages=args.max_pages,
        chunk_size=args.chunk_size,
        delay=args.delay,
        chunk_pause=args.chunk_pause,
        timeout=args.timeout,
        use_browser=not args.no_browser,
    )

    if args.urls:
        options.scan_mode = ScanMode.selective
        logging.info("Selective scan of %d URL(s) for %s", len(args.urls), args.sitemap_url)
        outcome = await scanner.selective_scan(
            args.urls, args.sitemap_url, options, on_progress=_log_progress
        )
    else:
        options.scan_mode = normalize_scan_mode(args.mode)
        logging.info("Scanning %s (%s)", args.sitemap_url, args.mode)
        outcome = await scanner.analyze_sitemap(
            args.sitemap_url, options, on_progress=_log_progress
        )

    if outcome.error:
        logging.error("Scan failed: %s", outcome.error)
        return EXIT_ERROR

    for event in outcome.change_events:
        logging.info("Changed %s: %s", event.change_type.value, event.url)

    write_output(_render_outcome(outcome, args), args.output)

    if not outcome.persisted:
        logging.error("Results could not be saved to %s", settings.data_dir)
        return EXIT_ERROR
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the scan command."""
    args = _parse_scan_args(argv)
    _setup_logging(args.verbose)
    _load_config()

    try:
        return asyncio.run(_run_scan_async(args))
    except KeyboardInterrupt:
        logging.info("Interrupted")
        return EXIT_INTERRUPTED
    except ScanInProgressError as exc:
        logging.error("%s", exc)
        return EXIT_BUSY
    except Exception as exc:
        logging.error("Error: %s", exc)
        if args.verbose:
            logging.exception("Full traceback:")
        return EXIT_ERROR


# =============================================================================
# REPORT COMMAND
# =============================================================================


def _parse_report_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="metawatch-report",
        description="Report on stored scan results of a sitemap.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  metawatch-report https://example.com/sitemap.xml
  metawatch-report https://example.com/sitemap.xml --format csv -o report.csv
  metawatch-report https://example.com/sitemap.xml --format history --url https://example.com/a
  metawatch-report https://example.com/sitemap.xml --format duplicates
""",
    )
    parser.add_argument("sitemap_url", help="Sitemap URL the results were stored for")
    parser.add_argument(
        "--format",
        choices=["summary", "json", "csv", "tree", "history", "duplicates"],
        default="summary",
        dest="report_format",
        help="Report type (default: summary)",
    )
    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Restrict the change history to one URL",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory for stored results (default: $METAWATCH_DATA_DIR or ./data)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Write the report to a file instead of stdout",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


async def _run_report_async(args: argparse.Namespace) -> int:
    """Main async entry point for report."""
    settings = _settings(args)
    scanner = Scanner(JsonFileStore(settings.data_dir), settings)

    if args.report_format == "history":
        events = await scanner.ledger.history(args.sitemap_url, args.url)
        write_output(format_history(events), args.output)
        return EXIT_OK

    outcome = await scanner.scan_results(args.sitemap_url)
    if not outcome.merged:
        logging.error("No stored results for %s", args.sitemap_url)
        return EXIT_ERROR

    if args.report_format == "json":
        text = to_json(build_json_report(outcome.merged))
    elif args.report_format == "csv":
        text = build_csv_report(outcome.merged)
    elif args.report_format == "tree":
        text = format_tree(outcome.tree)
    elif args.report_format == "duplicates":
        text = format_duplicates(find_duplicate_descriptions(outcome.merged))
    else:
        text = format_console_report(outcome.merged, summary=outcome.summary)

    write_output(text, args.output)
    return EXIT_OK


def report_main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the report command."""
    args = _parse_report_args(argv)
    _setup_logging(args.verbose)
    _load_config()

    try:
        return asyncio.run(_run_report_async(args))
    except KeyboardInterrupt:
        logging.info("Interrupted")
        return EXIT_INTERRUPTED
    except Exception as exc:
        logging.error("Error: %s", exc)
        if args.verbose:
            logging.exception("Full traceback:")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
