"""``FleetStore`` facade: one migrated database, one repository per resource kind."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from enum import StrEnum
from pathlib import Path
from typing import Final

from fleetstate.domain.ids import get_millis, new_id
from fleetstate.persistence.locking import LockManager
from fleetstate.persistence.repositories import (
    ClusterRepository,
    DatabaseClusterRepository,
    DatabaseSchemaRepository,
    DBMigrationOperationRepository,
    DBRestorationOperationRepository,
    InstallationBackupRepository,
    InstallationRepository,
    ResourceRepository,
)
from fleetstate.persistence.state_db import DEFAULT_BUSY_TIMEOUT_MS, StateDB
from fleetstate.persistence.transitions import StateTransitionCoordinator


class ResourceKind(StrEnum):
    CLUSTER = "cluster"
    INSTALLATION = "installation"
    BACKUP = "backup"
    DB_MIGRATION = "db-migration"
    DB_RESTORATION = "db-restoration"
    DATABASE_CLUSTER = "database-cluster"
    DATABASE_SCHEMA = "database-schema"


# Kinds whose rows carry a State column and therefore have pending work.
PENDING_WORK_KINDS: Final[tuple[ResourceKind, ...]] = (
    ResourceKind.CLUSTER,
    ResourceKind.INSTALLATION,
    ResourceKind.BACKUP,
    ResourceKind.DB_MIGRATION,
    ResourceKind.DB_RESTORATION,
)


class FleetStore:
    """Entry point used by supervisors. Migrates the schema on construction."""

    def __init__(
        self,
        db: StateDB,
        *,
        clock: Callable[[], int] = get_millis,
        id_factory: Callable[[], str] = new_id,
        migrate: bool = True,
    ) -> None:
        self.db = db
        self.schema_version = db.migrate() if migrate else db.schema_version()
        self.transitions = StateTransitionCoordinator(db, clock=clock, id_factory=id_factory)

        shared = {"transitions": self.transitions, "clock": clock, "id_factory": id_factory}
        self.clusters = ClusterRepository(db, **shared)
        self.installations = InstallationRepository(db, **shared)
        self.backups = InstallationBackupRepository(db, **shared)
        self.db_migrations = DBMigrationOperationRepository(db, **shared)
        self.db_restorations = DBRestorationOperationRepository(db, **shared)
        self.database_clusters = DatabaseClusterRepository(db, **shared)
        self.database_schemas = DatabaseSchemaRepository(db, **shared)

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> FleetStore:
        return cls(StateDB(path, busy_timeout_ms=busy_timeout_ms))

    @property
    def _pending_repositories(self) -> Mapping[ResourceKind, ResourceRepository[object, object]]:
        return {
            ResourceKind.CLUSTER: self.clusters,
            ResourceKind.INSTALLATION: self.installations,
            ResourceKind.BACKUP: self.backups,
            ResourceKind.DB_MIGRATION: self.db_migrations,
            ResourceKind.DB_RESTORATION: self.db_restorations,
        }

    def locks(self, kind: ResourceKind | str) -> LockManager:
        """Return the row-lock manager for ``kind``."""
        resolved = ResourceKind(kind)
        repositories = {
            **self._pending_repositories,
            ResourceKind.DATABASE_CLUSTER: self.database_clusters,
            ResourceKind.DATABASE_SCHEMA: self.database_schemas,
        }
        return repositories[resolved].locks

    def get_unlocked_pending_work(self, kind: ResourceKind | str) -> list[object]:
        resolved = ResourceKind(kind)
        repository = self._pending_repositories.get(resolved)
        if repository is None:
            raise ValueError(f"{resolved} rows have no state and no pending work")
        return list(repository.get_unlocked_pending_work())


__all__ = ["PENDING_WORK_KINDS", "FleetStore", "ResourceKind"]
