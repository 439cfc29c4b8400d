"""
fleetstate — package root.

File: src/fleetstate/__init__.py

Purpose
- Persistence and coordination layer for a fleet of stateful resources
  (clusters, installations, backups, database migrations and restorations)
  driven by independent supervisor processes.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.6.0"

__all__ = ["__version__"]
