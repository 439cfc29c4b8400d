"""Versioned schema evolution recorded in the singleton ``System`` table.

Each :class:`MigrationStep` moves the schema from one dotted version to the
next. Steps are applied strictly in order starting from the version recorded
under ``DatabaseVersion``; every step runs inside one transaction and advances
the recorded version in that same transaction, so an interrupted step leaves
both its DDL and the version untouched. Statements use ``IF NOT EXISTS`` so a
rerun of a step is harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from fleetstate.constants import (
    INITIAL_SCHEMA_VERSION,
    STATE_DB_SCHEMA_VERSION,
    SYSTEM_DATABASE_VERSION_KEY,
)
from fleetstate.persistence.state_db import StateDBError, StateDBMigrationError

if TYPE_CHECKING:
    from fleetstate.persistence.state_db import StateDB, TransactionScope

_LOGGER = logging.getLogger(__name__)


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse ``MAJOR.MINOR.PATCH`` into an integer tuple for ordering."""
    parts = version.split(".")
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        raise StateDBMigrationError(
            f"invalid schema version {version!r}; expected MAJOR.MINOR.PATCH"
        )
    major, minor, patch = (int(part) for part in parts)
    return major, minor, patch


@dataclass(frozen=True, slots=True)
class MigrationStep:
    from_version: str
    to_version: str
    name: str
    statements: tuple[str, ...]

    def __post_init__(self) -> None:
        if parse_version(self.to_version) <= parse_version(self.from_version):
            raise StateDBMigrationError(
                f"migration {self.name!r} must move forward "
                f"({self.from_version} -> {self.to_version})"
            )


_SYSTEM_TABLE_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS System (
        "Key" TEXT PRIMARY KEY NOT NULL,
        "Value" TEXT NOT NULL
    )
    """,
)

_CLUSTER_INSTALLATION_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS Cluster (
        ID TEXT PRIMARY KEY NOT NULL,
        State TEXT NOT NULL,
        Name TEXT NOT NULL DEFAULT '',
        Provider TEXT NOT NULL DEFAULT '',
        Provisioner TEXT NOT NULL DEFAULT '',
        ProviderMetadata TEXT,
        ProvisionerMetadata TEXT,
        UtilityMetadata TEXT,
        Networking TEXT NOT NULL DEFAULT '',
        AllowInstallations INTEGER NOT NULL DEFAULT 1 CHECK (AllowInstallations IN (0, 1)),
        CreateAt INTEGER NOT NULL,
        DeleteAt INTEGER NOT NULL DEFAULT 0,
        APISecurityLock INTEGER NOT NULL DEFAULT 0 CHECK (APISecurityLock IN (0, 1)),
        SchedulingLockAcquiredBy TEXT,
        SchedulingLockAcquiredAt INTEGER NOT NULL DEFAULT 0,
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS Installation (
        ID TEXT PRIMARY KEY NOT NULL,
        OwnerID TEXT NOT NULL DEFAULT '',
        State TEXT NOT NULL,
        Name TEXT NOT NULL DEFAULT '',
        GroupID TEXT,
        GroupSequence INTEGER,
        Version TEXT NOT NULL DEFAULT '',
        Image TEXT NOT NULL DEFAULT '',
        DatabaseType TEXT NOT NULL DEFAULT '',
        FilestoreType TEXT NOT NULL DEFAULT '',
        License TEXT NOT NULL DEFAULT '',
        Size TEXT NOT NULL DEFAULT '',
        Affinity TEXT NOT NULL DEFAULT '',
        CRVersion TEXT NOT NULL DEFAULT '',
        Env TEXT,
        PriorityEnv TEXT,
        GroupOverrides TEXT,
        CreateAt INTEGER NOT NULL,
        DeleteAt INTEGER NOT NULL DEFAULT 0,
        DeletionPendingExpiry INTEGER NOT NULL DEFAULT 0,
        APISecurityLock INTEGER NOT NULL DEFAULT 0 CHECK (APISecurityLock IN (0, 1)),
        DeletionLocked INTEGER NOT NULL DEFAULT 0 CHECK (DeletionLocked IN (0, 1)),
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
)

_BACKUP_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS InstallationBackup (
        ID TEXT PRIMARY KEY NOT NULL,
        InstallationID TEXT NOT NULL,
        State TEXT NOT NULL,
        ClusterInstallationID TEXT NOT NULL DEFAULT '',
        BackedUpDatabaseType TEXT NOT NULL DEFAULT '',
        DataResidence TEXT,
        RequestAt INTEGER NOT NULL,
        StartAt INTEGER NOT NULL DEFAULT 0,
        DeleteAt INTEGER NOT NULL DEFAULT 0,
        APISecurityLock INTEGER NOT NULL DEFAULT 0 CHECK (APISecurityLock IN (0, 1)),
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
)

_OPERATION_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS InstallationDBMigrationOperation (
        ID TEXT PRIMARY KEY NOT NULL,
        InstallationID TEXT NOT NULL,
        State TEXT NOT NULL,
        RequestAt INTEGER NOT NULL,
        SourceDatabase TEXT NOT NULL DEFAULT '',
        DestinationDatabase TEXT NOT NULL DEFAULT '',
        SourceMultiTenant TEXT,
        DestinationMultiTenant TEXT,
        BackupID TEXT NOT NULL DEFAULT '',
        InstallationDBRestorationOperationID TEXT NOT NULL DEFAULT '',
        CompleteAt INTEGER NOT NULL DEFAULT 0,
        DeleteAt INTEGER NOT NULL DEFAULT 0,
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS InstallationDBRestorationOperation (
        ID TEXT PRIMARY KEY NOT NULL,
        InstallationID TEXT NOT NULL,
        BackupID TEXT NOT NULL,
        State TEXT NOT NULL,
        RequestAt INTEGER NOT NULL,
        TargetInstallationState TEXT NOT NULL DEFAULT '',
        ClusterInstallationID TEXT NOT NULL DEFAULT '',
        CompleteAt INTEGER NOT NULL DEFAULT 0,
        DeleteAt INTEGER NOT NULL DEFAULT 0,
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
)

_DATABASE_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS DatabaseCluster (
        ID TEXT PRIMARY KEY NOT NULL,
        RawInstallationIDs TEXT NOT NULL DEFAULT '[]',
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS DatabaseSchema (
        ID TEXT PRIMARY KEY NOT NULL,
        LogicalDatabaseID TEXT NOT NULL,
        InstallationID TEXT NOT NULL,
        Name TEXT NOT NULL,
        CreateAt INTEGER NOT NULL,
        DeleteAt INTEGER NOT NULL DEFAULT 0,
        LockAcquiredBy TEXT,
        LockAcquiredAt INTEGER NOT NULL DEFAULT 0
    )
    """,
)

_PENDING_WORK_INDEX_STATEMENTS: Final[tuple[str, ...]] = (
    "CREATE INDEX IF NOT EXISTS IX_Cluster_Pending ON Cluster(State, LockAcquiredAt, CreateAt)",
    """
    CREATE INDEX IF NOT EXISTS IX_Installation_Pending
    ON Installation(State, LockAcquiredAt, CreateAt)
    """,
    "CREATE INDEX IF NOT EXISTS IX_Installation_GroupID ON Installation(GroupID)",
    """
    CREATE INDEX IF NOT EXISTS IX_InstallationBackup_Pending
    ON InstallationBackup(State, LockAcquiredAt, RequestAt)
    """,
    """
    CREATE INDEX IF NOT EXISTS IX_InstallationBackup_InstallationID
    ON InstallationBackup(InstallationID)
    """,
    """
    CREATE INDEX IF NOT EXISTS IX_InstallationDBMigrationOperation_Pending
    ON InstallationDBMigrationOperation(State, LockAcquiredAt, RequestAt)
    """,
    """
    CREATE INDEX IF NOT EXISTS IX_InstallationDBRestorationOperation_Pending
    ON InstallationDBRestorationOperation(State, LockAcquiredAt, RequestAt)
    """,
    """
    CREATE INDEX IF NOT EXISTS IX_DatabaseSchema_InstallationID
    ON DatabaseSchema(InstallationID)
    """,
)

MIGRATION_STEPS: Final[tuple[MigrationStep, ...]] = (
    MigrationStep("0.0.0", "0.1.0", "system_table", _SYSTEM_TABLE_STATEMENTS),
    MigrationStep(
        "0.1.0", "0.2.0", "clusters_and_installations", _CLUSTER_INSTALLATION_STATEMENTS
    ),
    MigrationStep("0.2.0", "0.3.0", "installation_backups", _BACKUP_STATEMENTS),
    MigrationStep(
        "0.3.0", "0.4.0", "db_migration_and_restoration_operations", _OPERATION_STATEMENTS
    ),
    MigrationStep("0.4.0", "0.5.0", "database_clusters_and_schemas", _DATABASE_STATEMENTS),
    MigrationStep("0.5.0", "0.6.0", "pending_work_indexes", _PENDING_WORK_INDEX_STATEMENTS),
)


def validate_chain(steps: tuple[MigrationStep, ...] = MIGRATION_STEPS) -> None:
    """Check that ``steps`` form one gap-free chain from the initial version."""
    expected = INITIAL_SCHEMA_VERSION
    for step in steps:
        if step.from_version != expected:
            raise StateDBMigrationError(
                f"migration chain gap: step {step.name!r} starts at {step.from_version}, "
                f"expected {expected}"
            )
        expected = step.to_version


validate_chain()
if MIGRATION_STEPS[-1].to_version != STATE_DB_SCHEMA_VERSION:
    raise StateDBMigrationError(
        f"latest migration {MIGRATION_STEPS[-1].to_version} does not match "
        f"STATE_DB_SCHEMA_VERSION {STATE_DB_SCHEMA_VERSION}"
    )


def latest_version(steps: tuple[MigrationStep, ...] = MIGRATION_STEPS) -> str:
    return steps[-1].to_version if steps else INITIAL_SCHEMA_VERSION


def current_version(db: StateDB) -> str:
    """Return the recorded schema version; ``0.0.0`` when nothing was applied yet."""
    table = db.query_one(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'System'",
        operation="inspect System table",
    )
    if table is None:
        return INITIAL_SCHEMA_VERSION
    row = db.query_one(
        'SELECT "Value" AS Value FROM System WHERE "Key" = ?',
        (SYSTEM_DATABASE_VERSION_KEY,),
        operation="read schema version",
    )
    if row is None:
        return INITIAL_SCHEMA_VERSION
    value = row["Value"]
    if not isinstance(value, str):
        raise StateDBMigrationError("System.DatabaseVersion must be text")
    parse_version(value)
    return value


def pending_steps(
    db: StateDB,
    steps: tuple[MigrationStep, ...] = MIGRATION_STEPS,
) -> list[MigrationStep]:
    """Return the steps that ``migrate`` would apply, in order."""
    return _steps_from(current_version(db), steps)


def migrate(db: StateDB, steps: tuple[MigrationStep, ...] = MIGRATION_STEPS) -> str:
    """Apply every pending step in order and return the resulting version."""
    validate_chain(steps)
    version = current_version(db)
    for step in _steps_from(version, steps):
        _LOGGER.info(
            "applying schema migration",
            extra={
                "migration": step.name,
                "from_version": step.from_version,
                "to_version": step.to_version,
            },
        )
        try:
            with db.begin() as scope:
                for statement in step.statements:
                    scope.execute(statement, operation=f"apply migration {step.to_version}")
                _record_version(scope, step.to_version)
                scope.commit()
        except StateDBMigrationError:
            raise
        except StateDBError as exc:
            raise StateDBMigrationError(
                f"migration {step.from_version} -> {step.to_version} ({step.name}) failed: {exc}"
            ) from exc
        version = step.to_version
    return version


def _steps_from(version: str, steps: tuple[MigrationStep, ...]) -> list[MigrationStep]:
    latest = latest_version(steps)
    if parse_version(version) > parse_version(latest):
        raise StateDBMigrationError(
            "database schema is newer than supported by this binary "
            f"(db={version}, code={latest})"
        )
    pending: list[MigrationStep] = []
    current = version
    for step in steps:
        if step.from_version == current:
            pending.append(step)
            current = step.to_version
    if current != latest:
        raise StateDBMigrationError(
            f"no migration path from schema version {version} to {latest}"
        )
    return pending


def _record_version(scope: TransactionScope, version: str) -> None:
    # 0.0.0 -> 0.1.0 creates the System table in this same transaction.
    scope.execute(
        """
        INSERT INTO System ("Key", "Value") VALUES (?, ?)
        ON CONFLICT("Key") DO UPDATE SET "Value" = excluded."Value"
        """,
        (SYSTEM_DATABASE_VERSION_KEY, version),
        operation=f"record schema version {version}",
    )


__all__ = [
    "MIGRATION_STEPS",
    "MigrationStep",
    "current_version",
    "latest_version",
    "migrate",
    "parse_version",
    "pending_steps",
    "validate_chain",
]
