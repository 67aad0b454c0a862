"""Configuration defaults and environment overrides."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from lt_local.schema import STORAGE_KEY

# Durable writes requested within this window collapse into one
DEBOUNCE_SECONDS = 0.5

# Playback sampling and autosave cadence while playing
TICK_SECONDS = 1.0
AUTOSAVE_SECONDS = 5.0

# A video counts as completed once this share of it has been watched
COMPLETION_THRESHOLD = 0.9

# Resume only past this position, and only if not nearly finished
RESUME_FLOOR_SECONDS = 30
RESUME_MAX_COMPLETION = 0.95

# Watched more than this (but not completed) counts as in progress
IN_PROGRESS_MIN_SECONDS = 30


def default_db_path(environ: Mapping[str, str] | None = None) -> Path:
    """Database location under $XDG_DATA_HOME (default ~/.local/share)."""
    env = os.environ if environ is None else environ
    data_home = env.get("XDG_DATA_HOME")
    base = Path(data_home) if data_home else Path.home() / ".local" / "share"
    return base / "lt" / "state.db"


@dataclass
class Config:
    db_path: Path
    storage_key: str = STORAGE_KEY
    debounce_seconds: float = DEBOUNCE_SECONDS


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build the configuration from environment variables.

    Recognized variables:
        LT_DB_PATH: Path to the SQLite database.
        LT_DEBOUNCE_MS: Debounce window for deferred writes, in milliseconds.

    Raises:
        ValueError: If a variable holds an invalid value.
    """
    env = os.environ if environ is None else environ

    db_path = Path(env["LT_DB_PATH"]).expanduser() if env.get("LT_DB_PATH") else default_db_path(env)

    debounce_seconds = DEBOUNCE_SECONDS
    raw_debounce = env.get("LT_DEBOUNCE_MS")
    if raw_debounce:
        try:
            debounce_ms = int(raw_debounce)
        except ValueError:
            raise ValueError(f"LT_DEBOUNCE_MS must be an integer, got {raw_debounce!r}") from None
        if debounce_ms < 0:
            raise ValueError(f"LT_DEBOUNCE_MS must not be negative, got {debounce_ms}")
        debounce_seconds = debounce_ms / 1000

    return Config(db_path=db_path, debounce_seconds=debounce_seconds)
