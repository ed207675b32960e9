"""Meta tag extraction and SEO scoring for fetched pages."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .models import PageResult, PageStatus, utc_now

if TYPE_CHECKING:
    from .fetcher import FetchResult

LOGGER = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 160

MISSING_DESCRIPTION = "Missing meta description"
FETCH_FAILED_PREFIX = "Failed to fetch"

# Issues produced by scoring itself; everything else came from content checks
_DERIVED_ISSUE_PREFIXES = (
    MISSING_DESCRIPTION,
    "Meta description too short",
    "Meta description too long",
    FETCH_FAILED_PREFIX,
)

_TERMINAL_PUNCTUATION = re.compile(r"[.!?]$")


@dataclass(slots=True)
class PageAnalysis:
    """Signals extracted from a single HTML document."""

    url: str
    title: Optional[str]
    meta_description: Optional[str]
    issues: List[str] = field(default_factory=list)
    status: PageStatus = PageStatus.error
    technical_signals: Dict[str, Any] = field(default_factory=dict)


def score_meta_description(
    meta_description: Optional[str],
) -> Tuple[PageStatus, List[str]]:
    """Length-based verdict for a meta description."""
    if not meta_description:
        return PageStatus.error, [MISSING_DESCRIPTION]

    length = len(meta_description)
    if length < MIN_DESCRIPTION_LENGTH:
        return PageStatus.warning, [
            f"Meta description too short ({length} chars) - "
            f"recommended {MIN_DESCRIPTION_LENGTH}-{MAX_DESCRIPTION_LENGTH} characters"
        ]
    if length > MAX_DESCRIPTION_LENGTH:
        return PageStatus.warning, [
            f"Meta description too long ({length} chars) - "
            f"recommended {MIN_DESCRIPTION_LENGTH}-{MAX_DESCRIPTION_LENGTH} characters"
        ]
    return PageStatus.good, []


def find_repeated_words(text: str) -> List[str]:
    """Words longer than three characters that occur more than once."""
    words = [word for word in text.lower().split() if len(word) > 3]
    counts = Counter(words)
    return [word for word, count in counts.items() if count > 1]


def find_content_issues(meta_description: Optional[str], title: Optional[str]) -> List[str]:
    """Heuristics beyond length; empty when there is no description at all."""
    if not meta_description:
        return []

    issues: List[str] = []
    lowered = meta_description.lower()

    if title and lowered == title.lower():
        issues.append("Meta description is identical to title")

    if "lorem ipsum" in lowered:
        issues.append("Contains placeholder text (Lorem ipsum)")

    repeated = find_repeated_words(meta_description)
    if repeated:
        issues.append(f"Contains repeated words: {', '.join(repeated)}")

    if not _TERMINAL_PUNCTUATION.search(meta_description):
        issues.append("Meta description should end with punctuation")

    return issues


def compose_status(
    meta_description: Optional[str], content_issues: List[str]
) -> Tuple[PageStatus, List[str]]:
    """Combine the length verdict with content heuristics."""
    status, issues = score_meta_description(meta_description)
    if status == PageStatus.error:
        return status, issues
    if content_issues:
        status = PageStatus.warning
    return status, issues + list(content_issues)


def is_derived_issue(issue: str) -> bool:
    return issue.startswith(_DERIVED_ISSUE_PREFIXES)


def rescore(page: PageResult) -> PageResult:
    """Recompute ``status`` and ``issues`` in place and return the page.

    Content heuristics already present in ``issues`` are kept in order;
    previously derived length/missing/fetch issues are recomputed.
    """
    if page.fetch_error is not None:
        page.status = PageStatus.error
        page.issues = [f"{FETCH_FAILED_PREFIX}: {page.fetch_error}"]
        return page

    content_issues = [issue for issue in page.issues if not is_derived_issue(issue)]
    page.status, page.issues = compose_status(page.meta_description, content_issues)
    return page


def extract_technical_signals(soup: BeautifulSoup) -> Dict[str, Any]:
    """Viewport, structured data, canonical and robots markers."""
    viewport = soup.find("meta", attrs={"name": "viewport"})
    canonical = soup.find("link", rel="canonical")
    robots = soup.find("meta", attrs={"name": "robots"})
    robots_content = robots.get("content") if robots else None
    robots_lower = (robots_content or "").lower()

    json_ld_types: List[str] = []
    json_ld_scripts = soup.find_all("script", attrs={"type": "application/ld+json"})
    for script in json_ld_scripts:
        try:
            parsed = json.loads(script.string or "")
        except (TypeError, ValueError):
            json_ld_types.append("Invalid JSON")
            continue
        if isinstance(parsed, dict):
            json_ld_types.append(str(parsed.get("@type") or "Unknown"))
        else:
            json_ld_types.append("Unknown")

    microdata = soup.select("[itemtype], [itemscope], [itemprop]")

    return {
        "hasViewport": viewport is not None,
        "viewportContent": viewport.get("content") if viewport else None,
        "hasJsonLd": bool(json_ld_scripts),
        "jsonLdCount": len(json_ld_scripts),
        "jsonLdSchemas": json_ld_types,
        "hasMicrodata": bool(microdata),
        "microdataCount": len(microdata),
        "hasCanonical": canonical is not None,
        "canonicalUrl": canonical.get("href") if canonical else None,
        "hasRobotsMeta": robots is not None,
        "robotsContent": robots_content,
        "isIndexable": "noindex" not in robots_lower,
        "isFollowable": "nofollow" not in robots_lower,
    }


def analyze(html: Optional[str], url: str) -> PageAnalysis:
    """Extract title, meta description and issues from an HTML document."""
    if not html:
        return PageAnalysis(
            url=url,
            title=None,
            meta_description=None,
            issues=["Failed to fetch page content"],
            status=PageStatus.error,
        )

    soup = BeautifulSoup(html, "html.parser")

    title_tag = soup.find("title")
    title = title_tag.get_text().strip() if title_tag else ""

    description_tag = soup.find("meta", attrs={"name": "description"})
    description = (description_tag.get("content") or "").strip() if description_tag else ""

    title_value = title or None
    description_value = description or None
    status, issues = compose_status(
        description_value, find_content_issues(description_value, title_value)
    )

    return PageAnalysis(
        url=url,
        title=title_value,
        meta_description=description_value,
        issues=issues,
        status=status,
        technical_signals=extract_technical_signals(soup),
    )


def build_page_result(fetched: "FetchResult") -> PageResult:
    """Turn a fetch outcome into an unreconciled ``PageResult``."""
    data_layer = dict(fetched.signals.get("dataLayer") or {})
    if not fetched.success or not fetched.html:
        page = PageResult(
            url=fetched.url,
            fetch_error=fetched.error or "Empty response body",
            http_status=fetched.status_code,
            data_layer=data_layer,
            last_analyzed=utc_now(),
        )
        return rescore(page)

    analysis = analyze(fetched.html, fetched.url)
    return PageResult(
        url=fetched.url,
        title=analysis.title,
        meta_description=analysis.meta_description,
        status=analysis.status,
        issues=analysis.issues,
        http_status=fetched.status_code,
        technical_seo=analysis.technical_signals,
        data_layer=data_layer,
        last_analyzed=utc_now(),
    )
