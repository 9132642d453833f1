"""File path resolution using platformdirs.

SHIPRATE_DATA_DIR overrides the data directory. Otherwise paths use the
platform user data directory:
  macOS: ~/Library/Application Support/shiprate/
  Linux: ~/.local/share/shiprate/
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "shiprate"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB)."""
    override = os.environ.get("SHIPRATE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path, creating its directory."""
    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "shiprate.db"
