"""Module entrypoint for ``python -m fleetstate``."""

from __future__ import annotations

from fleetstate.cli import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
