"""Data structures shared by the scanner, the stores and the presentation layer.

Everything that is persisted or handed to a consumer goes through the explicit
``to_dict`` / ``from_dict`` pairs below. Keys are camelCase so that result
files written by earlier versions of the tool load unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class PageStatus(str, Enum):
    """SEO verdict for a single page."""

    good = "good"
    warning = "warning"
    error = "error"


class ReviewStatus(str, Enum):
    """Human workflow state for a page."""

    new = "new"
    in_progress = "in_progress"
    reviewed = "reviewed"


class ChangeEventType(str, Enum):
    """Kind of field delta recorded in the change ledger."""

    new_url = "new_url"
    title = "title"
    meta_description = "meta_description"


class ScanMode(str, Enum):
    """Which sitemap URLs a scan actually fetches."""

    full = "full"
    incremental = "incremental"
    selective = "selective"


# Coarse change markers stored on PageResult.change_type
CHANGE_NEW = "new"
CHANGE_MODIFIED = "modified"

# Statuses written by older releases of the extractor
LEGACY_STATUSES = {"needs_attention": PageStatus.warning}


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_status(raw: Any) -> PageStatus:
    """Map any stored status value onto the closed ``PageStatus`` set.

    Legacy ``needs_attention`` and unknown values become ``warning``.
    """
    if isinstance(raw, PageStatus):
        return raw
    value = str(raw or "").strip().lower()
    if value in LEGACY_STATUSES:
        return LEGACY_STATUSES[value]
    try:
        return PageStatus(value)
    except ValueError:
        return PageStatus.warning


def normalize_scan_mode(raw: Any) -> ScanMode:
    """Parse a scan mode, defaulting to ``full``."""
    if isinstance(raw, ScanMode):
        return raw
    try:
        return ScanMode(str(raw or "").strip().lower())
    except ValueError:
        return ScanMode.full


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class PageResult:
    """Latest known analysis state of one page."""

    url: str
    title: Optional[str] = None
    meta_description: Optional[str] = None
    status: PageStatus = PageStatus.error
    issues: List[str] = field(default_factory=list)
    last_crawled: Optional[str] = None
    last_analyzed: Optional[str] = None
    has_changed: bool = False
    change_type: Optional[str] = None
    fetch_error: Optional[str] = None
    http_status: Optional[int] = None
    technical_seo: Dict[str, Any] = field(default_factory=dict)
    data_layer: Dict[str, Any] = field(default_factory=dict)
    last_modified: Optional[str] = None
    sitemap_url: Optional[str] = None

    @property
    def character_count(self) -> int:
        return len(self.meta_description) if self.meta_description else 0

    @property
    def has_meta_description(self) -> bool:
        return bool(self.meta_description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "metaDescription": self.meta_description,
            "characterCount": self.character_count,
            "hasMetaDescription": self.has_meta_description,
            "status": self.status.value,
            "issues": list(self.issues),
            "lastCrawled": self.last_crawled,
            "lastAnalyzed": self.last_analyzed,
            "hasChanged": self.has_changed,
            "changeType": self.change_type,
            "fetchError": self.fetch_error,
            "httpStatus": self.http_status,
            "technicalSeo": dict(self.technical_seo),
            "dataLayer": dict(self.data_layer),
            "lastModified": self.last_modified,
            "sitemapUrl": self.sitemap_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PageResult":
        """Build a result from a stored mapping.

        Derived fields (``characterCount``, ``hasMetaDescription``) and any
        review overlay keys are ignored; they are recomputed on the way out.
        """
        change_type = data.get("changeType")
        return cls(
            url=str(data.get("url") or ""),
            title=_optional_str(data.get("title")),
            meta_description=_optional_str(data.get("metaDescription")),
            status=normalize_status(data.get("status")),
            issues=[str(issue) for issue in data.get("issues") or []],
            last_crawled=_optional_str(data.get("lastCrawled")),
            last_analyzed=_optional_str(data.get("lastAnalyzed")),
            has_changed=bool(data.get("hasChanged", False)),
            change_type=change_type if change_type in (CHANGE_NEW, CHANGE_MODIFIED) else None,
            fetch_error=_optional_str(data.get("fetchError")),
            http_status=_optional_int(data.get("httpStatus")),
            technical_seo=dict(data.get("technicalSeo") or {}),
            data_layer=dict(data.get("dataLayer") or {}),
            last_modified=_optional_str(data.get("lastModified")),
            sitemap_url=_optional_str(data.get("sitemapUrl")),
        )


@dataclass(slots=True)
class ReviewRecord:
    """Human review state for one URL, independent of any sitemap."""

    status: ReviewStatus = ReviewStatus.new
    assignee: Optional[str] = None
    notes: Optional[str] = None
    last_reviewed: Optional[str] = None
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "assignee": self.assignee,
            "notes": self.notes,
            "lastReviewed": self.last_reviewed,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReviewRecord":
        try:
            status = ReviewStatus(str(data.get("status") or "new").strip())
        except ValueError:
            status = ReviewStatus.new
        return cls(
            status=status,
            assignee=_optional_str(data.get("assignee")),
            notes=_optional_str(data.get("notes")),
            last_reviewed=_optional_str(data.get("lastReviewed")),
            last_updated=_optional_str(data.get("lastUpdated")),
        )


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One detected field delta. Never mutated once recorded."""

    url: str
    change_type: ChangeEventType
    new_value: Optional[str]
    timestamp: str
    old_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "changeType": self.change_type.value,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeEvent":
        return cls(
            url=str(data.get("url") or ""),
            change_type=ChangeEventType(data.get("changeType")),
            old_value=_optional_str(data.get("oldValue")),
            new_value=_optional_str(data.get("newValue")),
            timestamp=str(data.get("timestamp") or ""),
        )


@dataclass(slots=True)
class MergedResult:
    """A page result with the review overlay applied, ready for display."""

    page: PageResult
    review_status: ReviewStatus = ReviewStatus.new
    assignee: Optional[str] = None
    notes: Optional[str] = None
    last_reviewed: Optional[str] = None

    @property
    def url(self) -> str:
        return self.page.url

    @property
    def status(self) -> PageStatus:
        return self.page.status

    @property
    def has_meta_description(self) -> bool:
        return self.page.has_meta_description

    def to_dict(self) -> Dict[str, Any]:
        data = self.page.to_dict()
        data["reviewStatus"] = self.review_status.value
        data["assignee"] = self.assignee
        data["notes"] = self.notes
        data["lastReviewed"] = self.last_reviewed
        return data


def merge_review(page: PageResult, review: Optional[ReviewRecord]) -> MergedResult:
    """Layer review state onto a page result.

    Total for a missing review: the overlay then reads
    ``review_status="new"`` with every other field ``None``.
    """
    if review is None:
        return MergedResult(page=page)
    return MergedResult(
        page=page,
        review_status=review.status,
        assignee=review.assignee,
        notes=review.notes,
        last_reviewed=review.last_reviewed,
    )


@dataclass(slots=True)
class Summary:
    """Aggregate counts over a result set."""

    total: int = 0
    good: int = 0
    warning: int = 0
    error: int = 0
    with_meta_description: int = 0
    missing_meta_description: int = 0
    percentage_with_meta: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "good": self.good,
            "warning": self.warning,
            "error": self.error,
            "withMetaDescription": self.with_meta_description,
            "missingMetaDescription": self.missing_meta_description,
            "percentageWithMeta": self.percentage_with_meta,
        }
