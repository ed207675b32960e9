"""Key-value persistence for scan results, reviews and change history.

Callers only see ``load(key)`` / ``save(key, value)``. The bundled
implementation keeps one JSON document per key inside a data directory and
replaces whole files on write (temp file + ``os.replace``), so a concurrent
reader sees either the previous or the new document, never a torn one.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Protocol

LOGGER = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def sitemap_key(sitemap_url: str) -> str:
    """Deterministic, filesystem-safe key for a sitemap URL."""
    digest = hashlib.sha256(sitemap_url.strip().encode("utf-8")).hexdigest()
    return digest[:20]


class KeyValueStore(Protocol):
    """Minimal persistence contract used by the stores."""

    async def load(self, key: str, default: Any = None) -> Any: ...

    async def save(self, key: str, value: Any) -> bool: ...

    def keys(self, prefix: str = "") -> List[str]: ...

    def modified_at(self, key: str) -> Optional[str]: ...


class JsonFileStore:
    """One pretty-printed JSON file per key under ``data_dir``."""

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)

    def path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.data_dir / f"{key}.json"

    async def load(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` when missing or unreadable."""
        return await asyncio.to_thread(self._read, key, default)

    async def save(self, key: str, value: Any) -> bool:
        """Persist ``value``; returns False (and logs) when the write fails."""
        try:
            await asyncio.to_thread(self._write, key, value)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("Failed to save %s: %s", key, exc)
            return False
        return True

    def keys(self, prefix: str = "") -> List[str]:
        """Keys currently present, optionally filtered by prefix."""
        if not self.data_dir.is_dir():
            return []
        return sorted(
            path.stem
            for path in self.data_dir.glob("*.json")
            if path.stem.startswith(prefix)
        )

    def modified_at(self, key: str) -> Optional[str]:
        """Last write time of a key as ISO-8601 UTC, or None."""
        path = self.path_for(key)
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()

    def _read(self, key: str, default: Any) -> Any:
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default
        except OSError as exc:
            LOGGER.warning("Could not read %s: %s", path, exc)
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring corrupt store file %s: %s", path, exc)
            return default

    def _write(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        payload = json.dumps(value, indent=2, ensure_ascii=False)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.data_dir, prefix=f".{key}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


class MemoryStore:
    """In-process store with the same contract, used by tests and dry runs."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def load(self, key: str, default: Any = None) -> Any:
        if key not in self.data:
            return default
        return json.loads(self.data[key])

    async def save(self, key: str, value: Any) -> bool:
        self.data[key] = json.dumps(value)
        return True

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(key for key in self.data if key.startswith(prefix))

    def modified_at(self, key: str) -> Optional[str]:
        return None
