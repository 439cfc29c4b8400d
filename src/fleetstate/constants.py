"""Stable constants shared across the fleetstate store."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[str] = "0.6.0"
INITIAL_SCHEMA_VERSION: Final[str] = "0.0.0"

# Key under which the applied schema version is kept in the System table.
SYSTEM_DATABASE_VERSION_KEY: Final[str] = "DatabaseVersion"

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_DB_FILENAME: Final[str] = "fleetstate.sqlite3"
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

DEFAULT_CONFIG_FILE: Final[str] = "fleetstate.toml"
ENV_PREFIX: Final[str] = "FLEETSTATE_"

# Listing sentinel meaning "no LIMIT/OFFSET".
ALL_PER_PAGE: Final[int] = -1

__all__ = [
    "ALL_PER_PAGE",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_DB_FILENAME",
    "ENV_PREFIX",
    "INITIAL_SCHEMA_VERSION",
    "LOG_DIR",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "SYSTEM_DATABASE_VERSION_KEY",
]
