"""Project a flat result set onto a tree keyed by URL path segments."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol
from urllib.parse import urlparse

from .models import PageStatus, normalize_status

LOGGER = logging.getLogger(__name__)


class _HasUrlAndStatus(Protocol):
    url: str
    status: Any

    def to_dict(self) -> Dict[str, Any]: ...


@dataclass(slots=True)
class NodeStats:
    """Status counts rolled up over a subtree."""

    good: int = 0
    warning: int = 0
    error: int = 0
    total: int = 0

    def add_status(self, status: Any) -> None:
        bucket = normalize_status(status)
        if bucket == PageStatus.good:
            self.good += 1
        elif bucket == PageStatus.error:
            self.error += 1
        else:
            self.warning += 1
        self.total += 1

    def add(self, other: "NodeStats") -> None:
        self.good += other.good
        self.warning += other.warning
        self.error += other.error
        self.total += other.total

    def to_dict(self) -> Dict[str, int]:
        return {
            "good": self.good,
            "warning": self.warning,
            "error": self.error,
            "total": self.total,
        }


@dataclass(slots=True)
class TreeNode:
    """One path segment; ``urls`` holds results whose path ends here."""

    name: str
    path: str
    children: Dict[str, "TreeNode"] = field(default_factory=dict)
    urls: List[Any] = field(default_factory=list)
    stats: NodeStats = field(default_factory=NodeStats)

    def find(self, path: str) -> Optional["TreeNode"]:
        """Return the node at ``path`` (e.g. ``/blog/2024``), or None."""
        node: Optional[TreeNode] = self
        for segment in (part for part in path.split("/") if part):
            if node is None:
                return None
            node = node.children.get(segment)
        return node

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "children": {key: child.to_dict() for key, child in self.children.items()},
            "urls": [item.to_dict() for item in self.urls],
            "stats": self.stats.to_dict(),
        }


def _path_segments(url: str) -> Optional[List[str]]:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return [segment for segment in parsed.path.split("/") if segment]


def _rollup(node: TreeNode) -> NodeStats:
    stats = NodeStats()
    for item in node.urls:
        stats.add_status(item.status)
    for child in node.children.values():
        stats.add(_rollup(child))
    node.stats = stats
    return stats


def build_url_tree(results: Iterable[_HasUrlAndStatus]) -> TreeNode:
    """Build a fresh tree from ``results``; holds no state between calls.

    Each result is attached to the node of its last path segment only (the
    root for bare hosts). URLs that cannot be parsed are skipped with a
    warning; they stay in the flat result set.
    """
    root = TreeNode(name="/", path="/")

    for item in results:
        segments = _path_segments(item.url)
        if segments is None:
            LOGGER.warning("Skipping unparseable URL in tree: %r", item.url)
            continue

        node = root
        current_path = ""
        for segment in segments:
            current_path += "/" + segment
            child = node.children.get(segment)
            if child is None:
                child = TreeNode(name=segment, path=current_path)
                node.children[segment] = child
            node = child
        node.urls.append(item)

    _rollup(root)
    return root
