"""Output and formatting helpers for CLI commands."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import ChangeEvent
from .tree import TreeNode


def to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def format_tree(node: TreeNode, indent: str = "") -> str:
    """Indented outline of the URL tree with per-node status counts.

    Example output::

        / (3: 1 good, 1 warning, 1 error)
          blog (2: 1 good, 1 warning, 0 error)
            post-1 (1: 1 good, 0 warning, 0 error)
    """
    lines: List[str] = []
    _render_node(node, indent, lines)
    return "\n".join(lines)


def _render_node(node: TreeNode, indent: str, lines: List[str]) -> None:
    stats = node.stats
    lines.append(
        f"{indent}{node.name} ({stats.total}: {stats.good} good, "
        f"{stats.warning} warning, {stats.error} error)"
    )
    for name in sorted(node.children):
        _render_node(node.children[name], indent + "  ", lines)


def format_history(events: Iterable[ChangeEvent]) -> str:
    lines = []
    for event in events:
        lines.append(f"{event.timestamp}  {event.change_type.value:<16} {event.url}")
        if event.old_value is not None:
            lines.append(f"    - {event.old_value}")
        lines.append(f"    + {event.new_value if event.new_value is not None else '(none)'}")
    if not lines:
        return "No changes recorded."
    return "\n".join(lines)


def format_duplicates(data: Dict[str, Any]) -> str:
    groups = data.get("duplicates", [])
    if not groups:
        return "No duplicate meta descriptions found."
    lines = [
        f"{data.get('totalDuplicateGroups', len(groups))} duplicate group(s), "
        f"{data.get('affectedUrls', 0)} URL(s) affected",
        "",
    ]
    for index, group in enumerate(groups, 1):
        lines.append(f"{index}. ({group['count']} pages) {group['description']}")
        lines.extend(f"   {url}" for url in group["urls"])
        lines.append("")
    return "\n".join(lines).rstrip()


def write_output(text: str, output: Optional[str]) -> None:
    """Print ``text`` or write it to ``output``."""
    if not output:
        print(text)
        return
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    logging.info("Wrote %s", path)
