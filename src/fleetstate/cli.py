"""Operator CLI for a fleetstate database.

Common workflows::

    fleetstate migrate --dry-run          Show pending schema steps
    fleetstate pending installation       List unlocked pending work
    fleetstate force-unlock cluster ID    Recover a lock left by a crashed worker
    fleetstate status                     Installation state buckets
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from fleetstate import __version__
from fleetstate.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
)
from fleetstate.constants import INITIAL_SCHEMA_VERSION
from fleetstate.observability.logging import (
    LoggingConfig,
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from fleetstate.persistence.migrations import (
    MIGRATION_STEPS,
    current_version,
    latest_version,
    pending_steps,
)
from fleetstate.persistence.state_db import StateDB, StateDBError
from fleetstate.persistence.store import PENDING_WORK_KINDS, FleetStore, ResourceKind

_KIND_CHOICES = tuple(kind.value for kind in ResourceKind)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetstate",
        description="Inspect and maintain a fleetstate coordination database.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to fleetstate.toml (default: ./fleetstate.toml if present).",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Database path; overrides database.path from config.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit canonical JSON instead of tables.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser("migrate", help="Apply pending schema migrations.")
    migrate_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List pending steps without touching the database.",
    )
    migrate_parser.set_defaults(handler=_cmd_migrate)

    version_parser = subparsers.add_parser(
        "schema-version", help="Show the recorded and supported schema versions."
    )
    version_parser.set_defaults(handler=_cmd_schema_version)

    pending_parser = subparsers.add_parser(
        "pending", help="List unlocked resources awaiting their next step, oldest first."
    )
    pending_parser.add_argument(
        "kind", choices=tuple(kind.value for kind in PENDING_WORK_KINDS)
    )
    pending_parser.set_defaults(handler=_cmd_pending)

    unlock_parser = subparsers.add_parser(
        "force-unlock", help="Release a row lock regardless of its holder."
    )
    unlock_parser.add_argument("kind", choices=_KIND_CHOICES)
    unlock_parser.add_argument("resource_id")
    unlock_parser.set_defaults(handler=_cmd_force_unlock)

    status_parser = subparsers.add_parser("status", help="Summarize installation states.")
    status_parser.set_defaults(handler=_cmd_status)

    config_parser = subparsers.add_parser("config", help="Show the effective (redacted) config.")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        config = _load_effective_config(args)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code

    handle = setup_structured_logging(LoggingConfig.from_observability(config["observability"]))
    try:
        with correlation_scope(owner=config["locking"]["owner_id"]):
            return int(args.handler(args, config))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except StateDBError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging(handle)


def cli_entrypoint() -> None:
    """Console-script entrypoint."""

    raise SystemExit(main())


def _cmd_migrate(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    db = _state_db(config)
    if args.dry_run:
        if db.path.exists():
            version = current_version(db)
            steps = pending_steps(db)
        else:
            version = INITIAL_SCHEMA_VERSION
            steps = list(MIGRATION_STEPS)
        payload = {
            "command": "migrate",
            "dry_run": True,
            "current_version": version,
            "pending": [
                {"from": step.from_version, "to": step.to_version, "name": step.name}
                for step in steps
            ],
        }
        if args.json:
            _emit_json(payload)
            return 0
        if not steps:
            _console().print(f"schema is up to date at {version}")
            return 0
        table = Table(title=f"Pending migrations for {db.path}")
        for column in ("From", "To", "Step"):
            table.add_column(column)
        for step in steps:
            table.add_row(step.from_version, step.to_version, step.name)
        _console().print(table)
        return 0

    before = current_version(db)
    after = db.migrate()
    if args.json:
        _emit_json({"command": "migrate", "dry_run": False, "from": before, "to": after})
    elif before == after:
        _console().print(f"schema is up to date at {after}")
    else:
        _console().print(f"migrated {db.path} from {before} to {after}")
    return 0


def _cmd_schema_version(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    db = _state_db(config)
    if not db.path.exists():
        raise CLIError(f"database not found: {db.path}", exit_code=1)
    recorded = current_version(db)
    supported = latest_version()
    if args.json:
        _emit_json({"command": "schema-version", "recorded": recorded, "supported": supported})
        return 0
    _console().print(f"recorded: {recorded}")
    _console().print(f"supported: {supported}")
    return 0


def _cmd_pending(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = FleetStore(_state_db(config))
    kind = ResourceKind(args.kind)
    resources = store.get_unlocked_pending_work(kind)

    if args.json:
        _emit_json(
            {
                "command": "pending",
                "kind": kind.value,
                "resources": [asdict(resource) for resource in resources],
            }
        )
        return 0

    table = Table(title=f"Unlocked pending {kind.value} work ({len(resources)})")
    for column in ("ID", "State", "Created"):
        table.add_column(column)
    for resource in resources:
        created = getattr(resource, "create_at", 0) or getattr(resource, "request_at", 0)
        table.add_row(resource.id, resource.state, str(created))
    _console().print(table)
    return 0


def _cmd_force_unlock(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = FleetStore(_state_db(config))
    kind = ResourceKind(args.kind)
    owner = config["locking"]["owner_id"]
    with correlation_scope(resource_kind=kind.value, resource_id=args.resource_id):
        released = store.locks(kind).release(args.resource_id, owner, force=True)

    if args.json:
        _emit_json(
            {
                "command": "force-unlock",
                "kind": kind.value,
                "id": args.resource_id,
                "released": released,
            }
        )
        return 0
    if released:
        _console().print(f"released lock on {kind.value} {args.resource_id}")
    else:
        _console().print(f"{kind.value} {args.resource_id} was not locked")
    return 0


def _cmd_status(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = FleetStore(_state_db(config))
    status = store.installations.status_counts()

    if args.json:
        _emit_json(
            {
                "command": "status",
                "schema_version": store.schema_version,
                "installations": asdict(status),
            }
        )
        return 0

    table = Table(title=f"Installations (schema {store.schema_version})")
    table.add_column("Bucket")
    table.add_column("Count", justify="right")
    for bucket, count in asdict(status).items():
        table.add_row(bucket.replace("_", " "), str(count))
    _console().print(table)
    return 0


def _cmd_config(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    redacted = redact_config(config)
    if args.json:
        _emit_json({"command": "config", "config": redacted})
        return 0
    _console().print_json(data=redacted)
    return 0


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if args.db_path is not None:
        overrides["database.path"] = str(Path(args.db_path).expanduser().resolve())
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _state_db(config: Mapping[str, Any]) -> StateDB:
    database = config["database"]
    return StateDB(database["path"], busy_timeout_ms=database["busy_timeout_ms"])


def _console() -> Console:
    return Console(highlight=False)


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "cli_entrypoint", "main"]
