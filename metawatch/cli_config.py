"""Configuration loading helpers for CLI entrypoints."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

LOGGER = logging.getLogger(__name__)


def load_config(
    *,
    config_dir: Path,
    config_env_file: Path,
    cwd: Path,
    load_env: Callable[[Path], bool],
    copy_file: Callable[[Path, Path], str],
) -> None:
    """Load .env configuration with fallback to the user config directory.

    Search order:
    1. ``.env`` in the current working directory
    2. ``config_env_file`` (``~/.config/metawatch/.env``)

    When neither exists, the ``.env.example`` shipped inside the package is
    copied to ``config_env_file`` as a starting point.
    """
    local_env = cwd / ".env"
    if local_env.is_file():
        load_env(local_env)
        return

    if config_env_file.is_file():
        load_env(config_env_file)
        return

    example_file = Path(__file__).parent / ".env.example"

    if example_file.is_file():
        try:
            config_dir.mkdir(parents=True, exist_ok=True)
            copy_file(example_file, config_env_file)
        except OSError as exc:
            LOGGER.warning("Could not create %s: %s", config_env_file, exc)
            return
        LOGGER.info(
            "Created config file at %s from .env.example. "
            "Add your ANTHROPIC_API_KEY or GROK_API_KEY there for AI suggestions.",
            config_env_file,
        )
        load_env(config_env_file)
