"""File path resolution using platformdirs.

Resolves where the vault keeps its SQLite database and where the CLI
looks for a user-level config file:
  macOS: ~/Library/Application Support/agentvault/
  Linux: ~/.local/share/agentvault/
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "agentvault"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB).

    AGENTVAULT_DATA_DIR overrides the platform default.
    """
    override = os.environ.get("AGENTVAULT_DATA_DIR", "").strip()
    if override:
        return Path(override)
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "agentvault.db"


def ensure_dirs_exist() -> None:
    """Create the data directory if it doesn't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
