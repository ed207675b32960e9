"""Settings, scan options and Crawl4AI configuration factories."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from crawl4ai import BrowserConfig, CrawlerRunConfig
from crawl4ai.async_configs import CacheMode

from .models import ScanMode, normalize_scan_mode

LOGGER = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SEO-Checker-Bot/1.0"
DEFAULT_DATA_DIR = "data"

DEFAULT_MAX_PAGES = 100
DEFAULT_CHUNK_SIZE = 10
DEFAULT_DELAY = 1.0
DEFAULT_CHUNK_PAUSE = 2.0
DEFAULT_TIMEOUT = 10.0


@dataclass
class Settings:
    """Process-wide settings, read from the environment at call time."""

    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))
    user_agent: str = DEFAULT_USER_AGENT
    ai_provider: str = "claude"
    anthropic_api_key: Optional[str] = None
    claude_model: str = "claude-3-5-sonnet-20241022"
    grok_api_key: Optional[str] = None
    grok_model: str = "grok-2-latest"
    ai_max_tokens: int = 1000
    ai_temperature: float = 0.7

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=Path(os.getenv("METAWATCH_DATA_DIR", DEFAULT_DATA_DIR)),
            user_agent=os.getenv("METAWATCH_USER_AGENT", DEFAULT_USER_AGENT),
            ai_provider=os.getenv("AI_PROVIDER", "claude").strip().lower(),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            claude_model=os.getenv("CLAUDE_MODEL", "claude-3-5-sonnet-20241022"),
            grok_api_key=os.getenv("GROK_API_KEY"),
            grok_model=os.getenv("GROK_MODEL", "grok-2-latest"),
            ai_max_tokens=_parse_int(os.getenv("CLAUDE_MAX_TOKENS"), 1000),
            ai_temperature=_parse_float(os.getenv("CLAUDE_TEMPERATURE"), 0.7),
        )


@dataclass
class ScanOptions:
    """Per-scan knobs. Delays and timeouts are in seconds."""

    scan_mode: ScanMode = ScanMode.full
    max_pages: int = DEFAULT_MAX_PAGES
    chunk_size: int = DEFAULT_CHUNK_SIZE
    delay: float = DEFAULT_DELAY
    chunk_pause: float = DEFAULT_CHUNK_PAUSE
    timeout: float = DEFAULT_TIMEOUT
    use_browser: bool = True
    cache_mode: Optional[str] = None

    def __post_init__(self) -> None:
        self.scan_mode = normalize_scan_mode(self.scan_mode)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "ScanOptions":
        """Parse loosely typed request options.

        Missing, zero or unparsable values fall back to the defaults. Delays
        accept milliseconds under ``delay``/``timeout`` when the value is
        clearly a millisecond figure (>= 100).
        """
        raw = raw or {}
        return cls(
            scan_mode=normalize_scan_mode(raw.get("scanMode") or raw.get("scan_mode")),
            max_pages=_parse_int(raw.get("maxPages") or raw.get("max_pages"), DEFAULT_MAX_PAGES),
            chunk_size=_parse_int(
                raw.get("chunkSize") or raw.get("chunk_size"), DEFAULT_CHUNK_SIZE
            ),
            delay=_parse_seconds(raw.get("delay"), DEFAULT_DELAY),
            chunk_pause=_parse_seconds(
                raw.get("chunkPause") or raw.get("chunk_pause"), DEFAULT_CHUNK_PAUSE
            ),
            timeout=_parse_seconds(raw.get("timeout"), DEFAULT_TIMEOUT),
            use_browser=_parse_bool(
                raw.get("useBrowser", raw.get("use_browser")), default=True
            ),
            cache_mode=raw.get("cacheMode") or raw.get("cache_mode"),
        )


def _parse_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _parse_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_seconds(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if parsed < 0:
        return default
    if parsed >= 100:
        return parsed / 1000.0
    return parsed


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _convert_cache_mode(value: Optional[str], default: CacheMode) -> CacheMode:
    if not value:
        return default
    candidate = value.strip().replace("CacheMode.", "")
    try:
        return CacheMode[candidate.upper()]
    except KeyError:
        pass
    try:
        return CacheMode(candidate.lower())
    except ValueError:
        LOGGER.warning(
            "Unknown cache_mode '%s'; falling back to %s.", value, default.name
        )
        return default


def build_browser_config(settings: Optional[Settings] = None) -> BrowserConfig:
    """Headless browser used for rendering pages during a scan."""
    settings = settings or Settings.from_env()
    return BrowserConfig(
        headless=True,
        user_agent=settings.user_agent,
        use_persistent_context=False,
        verbose=False,
    )


def build_fetch_run_config(options: Optional[ScanOptions] = None) -> CrawlerRunConfig:
    """Run config for fetching a page's rendered HTML (no markdown needed)."""
    options = options or ScanOptions()
    return CrawlerRunConfig(
        verbose=False,
        wait_until="networkidle",
        page_timeout=int(options.timeout * 1000),
        cache_mode=_convert_cache_mode(options.cache_mode, CacheMode.BYPASS),
        semaphore_count=1,
        stream=False,
    )
