"""Exceptions raised by metawatch."""

from __future__ import annotations

from typing import Optional


class MetawatchError(Exception):
    """Base class for all metawatch errors."""


class SitemapError(MetawatchError):
    """Raised when a sitemap cannot be fetched or parsed."""

    def __init__(self, message: str, sitemap_url: str = ""):
        self.sitemap_url = sitemap_url
        super().__init__(message)


class ScanInProgressError(MetawatchError):
    """Raised when a scan is requested while another one is running."""

    def __init__(self, active_scan_id: Optional[str] = None):
        self.active_scan_id = active_scan_id
        super().__init__("Analysis already in progress")


class StoreError(MetawatchError):
    """Raised when a persisted resource cannot be written."""

    def __init__(self, message: str, key: str = ""):
        self.key = key
        super().__init__(message)


class NotFoundError(MetawatchError):
    """Raised when a stored entity does not exist."""

    def __init__(self, message: str, key: str = ""):
        self.key = key
        super().__init__(message)


class AIError(MetawatchError):
    """Raised when the AI provider call fails."""

    def __init__(self, message: str, provider: str = ""):
        self.provider = provider
        super().__init__(message)
