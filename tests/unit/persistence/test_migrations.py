"""Schema version chain, System table bookkeeping, and forward-only migration tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fleetstate.constants import (
    INITIAL_SCHEMA_VERSION,
    STATE_DB_SCHEMA_VERSION,
    SYSTEM_DATABASE_VERSION_KEY,
)
from fleetstate.persistence import migrations
from fleetstate.persistence.migrations import (
    MIGRATION_STEPS,
    MigrationStep,
    current_version,
    latest_version,
    parse_version,
    pending_steps,
    validate_chain,
)
from fleetstate.persistence.state_db import StateDB, StateDBMigrationError

from . import db_path

if TYPE_CHECKING:
    from pathlib import Path


def _recorded_version(db: StateDB) -> str | None:
    row = db.query_one(
        'SELECT "Value" AS Value FROM System WHERE "Key" = ?',
        (SYSTEM_DATABASE_VERSION_KEY,),
    )
    return None if row is None else str(row["Value"])


def test_fresh_database_reports_initial_version_and_every_step_pending(tmp_path: Path) -> None:
    db = StateDB(db_path(tmp_path))

    assert current_version(db) == INITIAL_SCHEMA_VERSION
    assert pending_steps(db) == list(MIGRATION_STEPS)


def test_migrate_records_latest_version_in_system_table(tmp_path: Path) -> None:
    db = StateDB(db_path(tmp_path))

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert _recorded_version(db) == STATE_DB_SCHEMA_VERSION
    assert db.schema_version() == STATE_DB_SCHEMA_VERSION
    assert pending_steps(db) == []


def test_migrate_resumes_from_recorded_version(tmp_path: Path) -> None:
    db = StateDB(db_path(tmp_path))
    partial = MIGRATION_STEPS[:3]

    assert migrations.migrate(db, partial) == partial[-1].to_version
    assert [step.to_version for step in pending_steps(db)] == [
        step.to_version for step in MIGRATION_STEPS[3:]
    ]

    assert migrations.migrate(db) == STATE_DB_SCHEMA_VERSION


def test_newer_database_is_refused(tmp_path: Path) -> None:
    db = StateDB(db_path(tmp_path))
    db.migrate()
    db.execute(
        'UPDATE System SET "Value" = ? WHERE "Key" = ?',
        ("99.0.0", SYSTEM_DATABASE_VERSION_KEY),
    )

    with pytest.raises(StateDBMigrationError, match="newer than supported"):
        db.migrate()


def test_failed_step_leaves_version_and_ddl_untouched(tmp_path: Path) -> None:
    db = StateDB(db_path(tmp_path))
    db.migrate()

    broken = MigrationStep(
        STATE_DB_SCHEMA_VERSION,
        "0.7.0",
        "broken_step",
        (
            "CREATE TABLE IF NOT EXISTS Scratch (ID TEXT PRIMARY KEY)",
            "CREATE TABLE Cluster (ID TEXT)",
        ),
    )
    with pytest.raises(StateDBMigrationError, match="broken_step"):
        migrations.migrate(db, (*MIGRATION_STEPS, broken))

    assert _recorded_version(db) == STATE_DB_SCHEMA_VERSION
    assert db.query_one("SELECT name FROM sqlite_master WHERE name = 'Scratch'") is None


def test_chain_validation_rejects_gaps_and_backward_steps() -> None:
    with pytest.raises(StateDBMigrationError, match="chain gap"):
        validate_chain((MIGRATION_STEPS[0], MIGRATION_STEPS[2]))

    with pytest.raises(StateDBMigrationError, match="must move forward"):
        MigrationStep("0.2.0", "0.1.0", "backwards", ())


@pytest.mark.parametrize("raw", ["1.0", "a.b.c", "1.2.3.4", ""])
def test_parse_version_rejects_malformed_values(raw: str) -> None:
    with pytest.raises(StateDBMigrationError, match="invalid schema version"):
        parse_version(raw)


def test_versions_order_numerically() -> None:
    assert parse_version("0.10.0") > parse_version("0.9.9")
    assert latest_version() == STATE_DB_SCHEMA_VERSION
    assert latest_version(()) == INITIAL_SCHEMA_VERSION
