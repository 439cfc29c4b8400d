"""Per-kind CRUD, filtered listing, locking and state surfaces.

Each repository binds the shared primitives (``LockManager``,
``PendingWorkSelector``, ``StateTransitionCoordinator``) to one table. Absence
is not an error: ``get`` returns ``None`` for unknown IDs. Lock contention is
not an error either: ``lock``/``unlock`` return ``False``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, ClassVar, Generic, TypeVar

from fleetstate.constants import ALL_PER_PAGE
from fleetstate.domain.guards import InvariantViolationError, ensure_saveable
from fleetstate.domain.ids import get_millis, new_id
from fleetstate.domain.models import (
    Cluster,
    ClusterFilter,
    DatabaseCluster,
    DatabaseClusterFilter,
    DatabaseSchema,
    DatabaseSchemaFilter,
    DBMigrationFilter,
    DBRestorationFilter,
    Installation,
    InstallationBackup,
    InstallationBackupFilter,
    InstallationDBMigrationOperation,
    InstallationDBRestorationOperation,
    InstallationFilter,
    InstallationsStatus,
    Paging,
)
from fleetstate.domain.states import (
    BACKUP_STATES_PENDING_WORK,
    BACKUP_STATES_RUNNING,
    CLUSTER_STATES_PENDING_WORK,
    DB_MIGRATION_STATES_PENDING_WORK,
    DB_RESTORATION_STATES_PENDING_WORK,
    INSTALLATION_STATES_PENDING_WORK,
    InstallationState,
    state_values,
)
from fleetstate.persistence import queries as q
from fleetstate.persistence.codecs import encode_data_residence
from fleetstate.persistence.locking import LockManager
from fleetstate.persistence.pending import PendingWorkSelector
from fleetstate.persistence.rows import (
    Row,
    backup_from_row,
    backup_to_row,
    cluster_from_row,
    cluster_to_row,
    database_cluster_from_row,
    database_cluster_to_row,
    database_schema_from_row,
    database_schema_to_row,
    db_migration_from_row,
    db_migration_to_row,
    db_restoration_from_row,
    db_restoration_to_row,
    installation_from_row,
    installation_to_row,
)
from fleetstate.persistence.state_db import StateDBError
from fleetstate.persistence.transitions import (
    BackupFields,
    ClusterFields,
    DatabaseClusterFields,
    DBMigrationFields,
    DBRestorationFields,
    FieldSet,
    InstallationFields,
    StateTransitionCoordinator,
)

if TYPE_CHECKING:
    import sqlite3

    from fleetstate.persistence.state_db import StateDB


T = TypeVar("T")
F = TypeVar("F")


class _BaseRepository(Generic[T, F]):
    kind: ClassVar[str]
    table: ClassVar[str]
    order_column: ClassVar[str]
    list_descending: ClassVar[bool] = False
    has_tombstone: ClassVar[bool] = True

    def __init__(
        self,
        db: StateDB,
        *,
        transitions: StateTransitionCoordinator | None = None,
        clock: Callable[[], int] = get_millis,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._db = db
        self._clock = clock
        self._id_factory = id_factory
        self._transitions = transitions or StateTransitionCoordinator(
            db, clock=clock, id_factory=id_factory
        )
        self._locks = LockManager(db, self.table, kind=self.kind)

    @property
    def locks(self) -> LockManager:
        return self._locks

    def _select(self) -> q.SelectQuery:
        raise NotImplementedError

    def _decode(self, row: Row) -> T:
        raise NotImplementedError

    def _encode(self, entity: T) -> dict[str, q.SQLValue]:
        raise NotImplementedError

    def _apply_filter(self, query: q.SelectQuery, filter_: F) -> q.SelectQuery:
        return query

    def _prepare_create(self, entity: T) -> None:
        raise NotImplementedError

    def create(self, entity: T) -> T:
        """Insert ``entity`` unlocked, assigning its ID and creation timestamp."""
        self._prepare_create(entity)
        entity.lock_acquired_by = None  # type: ignore[attr-defined]
        entity.lock_acquired_at = 0  # type: ignore[attr-defined]
        self._db.execute(
            q.insert(self.table, self._encode(entity)).compile(),
            operation=f"create {self.kind}",
        )
        return entity

    def get(self, resource_id: str) -> T | None:
        row = self._db.query_one(
            self._select().where_eq("ID", resource_id).compile(),
            operation=f"get {self.kind}",
        )
        return None if row is None else self._decode(row)

    def list(self, filter_: F) -> list[T]:
        paging: Paging = filter_.paging  # type: ignore[attr-defined]
        query = self._apply_filter(self._select(), filter_)
        query = q.apply_paging(query, paging, tombstone=self.has_tombstone)
        query = query.order_by(self.order_column, descending=self.list_descending)
        rows = self._db.query_all(query.compile(), operation=f"list {self.kind}")
        return [self._decode(row) for row in rows]

    def lock(self, resource_id: str, owner: str) -> bool:
        return self._locks.acquire([resource_id], owner)

    def unlock(self, resource_id: str, owner: str, force: bool = False) -> bool:
        return self._locks.release([resource_id], owner, force=force)

    def lock_many(self, resource_ids: Sequence[str], owner: str) -> bool:
        return self._locks.acquire(resource_ids, owner)

    def unlock_many(self, resource_ids: Sequence[str], owner: str, force: bool = False) -> bool:
        return self._locks.release(resource_ids, owner, force=force)

    def _update_columns(
        self,
        resource_id: str,
        values: Mapping[str, q.SQLValue],
        *,
        operation: str,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        query = q.update(self.table).set_many(values).where_eq("ID", resource_id)
        return self._db.execute(query.compile(), conn=conn, operation=operation)

    def _soft_delete(self, resource_id: str) -> None:
        query = (
            q.update(self.table)
            .set("DeleteAt", self._clock())
            .where_eq("ID", resource_id)
            .where_eq("DeleteAt", 0)
        )
        self._db.execute(query.compile(), operation=f"delete {self.kind}")


class ResourceRepository(_BaseRepository[T, F]):
    """Repository for kinds carrying the full envelope (State and DeleteAt)."""

    pending_states: ClassVar[Iterable[StrEnum]]
    fields_type: ClassVar[type[FieldSet]]

    def __init__(
        self,
        db: StateDB,
        *,
        transitions: StateTransitionCoordinator | None = None,
        clock: Callable[[], int] = get_millis,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        super().__init__(db, transitions=transitions, clock=clock, id_factory=id_factory)
        self._pending: PendingWorkSelector[T] = PendingWorkSelector(
            db,
            self._select,
            self._decode,
            self.pending_states,
            self.order_column,
            kind=self.kind,
        )

    def get_unlocked_pending_work(self) -> list[T]:
        """Unlocked rows in a pending-work state, oldest first."""
        return self._pending.select()

    def update_state(self, entity: T) -> None:
        self._transitions.update_state(entity)

    def update_fields(self, entity: T, field_set: FieldSet) -> None:
        if not isinstance(field_set, self.fields_type):
            raise TypeError(
                f"{self.kind} updates take {self.fields_type.__name__}, "
                f"got {type(field_set).__name__}"
            )
        self._transitions.update_fields(entity, field_set)

    def delete(self, resource_id: str) -> None:
        """Soft delete: set DeleteAt once; repeated calls leave it unchanged."""
        self._soft_delete(resource_id)


class _APILockMixin:
    _db: StateDB
    table: ClassVar[str]
    kind: ClassVar[str]

    def lock_api(self, resource_id: str) -> None:
        self._set_api_lock(resource_id, True)

    def unlock_api(self, resource_id: str) -> None:
        self._set_api_lock(resource_id, False)

    def _set_api_lock(self, resource_id: str, locked: bool) -> None:
        query = q.update(self.table).set("APISecurityLock", int(locked)).where_eq("ID", resource_id)
        self._db.execute(query.compile(), operation=f"set {self.kind} API security lock")


class ClusterRepository(_APILockMixin, ResourceRepository[Cluster, ClusterFilter]):
    kind = "cluster"
    table = q.CLUSTER_TABLE
    order_column = "CreateAt"
    pending_states = CLUSTER_STATES_PENDING_WORK
    fields_type = ClusterFields

    def __init__(
        self,
        db: StateDB,
        *,
        transitions: StateTransitionCoordinator | None = None,
        clock: Callable[[], int] = get_millis,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        super().__init__(db, transitions=transitions, clock=clock, id_factory=id_factory)
        self._scheduling_locks = LockManager(
            db,
            self.table,
            lock_by_column="SchedulingLockAcquiredBy",
            lock_at_column="SchedulingLockAcquiredAt",
            kind="cluster scheduling",
        )

    def _select(self) -> q.SelectQuery:
        return q.cluster_select()

    def _decode(self, row: Row) -> Cluster:
        return cluster_from_row(row)

    def _encode(self, entity: Cluster) -> dict[str, q.SQLValue]:
        return cluster_to_row(entity)

    def _prepare_create(self, entity: Cluster) -> None:
        entity.id = self._id_factory()
        entity.create_at = self._clock()
        entity.scheduling_lock_acquired_by = None
        entity.scheduling_lock_acquired_at = 0

    def update(self, cluster: Cluster) -> None:
        self._transitions.update_fields(
            cluster,
            ClusterFields(
                state=cluster.state,
                provider=cluster.provider,
                provisioner=cluster.provisioner,
                provider_metadata=cluster.provider_metadata,
                provisioner_metadata=cluster.provisioner_metadata,
                utility_metadata=cluster.utility_metadata,
                allow_installations=cluster.allow_installations,
            ),
        )

    def lock_scheduling(self, cluster_id: str, owner: str) -> bool:
        """Take the cluster's scheduling lock, independent of its row lock."""
        return self._scheduling_locks.acquire([cluster_id], owner)

    def unlock_scheduling(self, cluster_id: str, owner: str, force: bool = False) -> bool:
        return self._scheduling_locks.release([cluster_id], owner, force=force)


class InstallationRepository(
    _APILockMixin, ResourceRepository[Installation, InstallationFilter]
):
    kind = "installation"
    table = q.INSTALLATION_TABLE
    order_column = "CreateAt"
    pending_states = INSTALLATION_STATES_PENDING_WORK
    fields_type = InstallationFields

    def __init__(
        self,
        db: StateDB,
        *,
        transitions: StateTransitionCoordinator | None = None,
        clock: Callable[[], int] = get_millis,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        super().__init__(db, transitions=transitions, clock=clock, id_factory=id_factory)
        self._pending_deletion: PendingWorkSelector[Installation] = PendingWorkSelector(
            db,
            self._select,
            self._decode,
            (InstallationState.DELETION_PENDING,),
            self.order_column,
            kind="installation pending deletion",
        )

    def _select(self) -> q.SelectQuery:
        return q.installation_select()

    def _decode(self, row: Row) -> Installation:
        return installation_from_row(row)

    def _encode(self, entity: Installation) -> dict[str, q.SQLValue]:
        return installation_to_row(entity)

    def _prepare_create(self, entity: Installation) -> None:
        entity.id = self._id_factory()
        entity.create_at = self._clock()

    def _apply_filter(self, query: q.SelectQuery, filter_: InstallationFilter) -> q.SelectQuery:
        if filter_.installation_ids:
            query = query.where_in("ID", filter_.installation_ids)
        if filter_.owner_id:
            query = query.where_eq("OwnerID", filter_.owner_id)
        if filter_.group_id:
            query = query.where_eq("GroupID", filter_.group_id)
        if filter_.state:
            query = query.where_eq("State", filter_.state)
        if filter_.name:
            query = query.where_eq("Name", filter_.name)
        return query

    def update(self, installation: Installation) -> None:
        """Persist the installation's configuration and state.

        Rejected with ``InvariantViolationError`` if group config was merged in.
        """
        ensure_saveable(installation)
        row = installation_to_row(installation)
        values = {
            column: row[column]
            for column in (
                "Name",
                "OwnerID",
                "GroupID",
                "GroupSequence",
                "Version",
                "Image",
                "DatabaseType",
                "FilestoreType",
                "Size",
                "Affinity",
                "License",
                "Env",
                "PriorityEnv",
                "State",
                "CRVersion",
            )
        }
        self._update_columns(installation.id, values, operation="update installation")

    def update_group_sequence(self, installation: Installation) -> None:
        """Record the group sequence the installation was last merged with."""
        if not installation.config_merged_with_group:
            raise InvariantViolationError(
                "installation config was not merged with group config before being saved"
            )
        installation.group_sequence = installation.config_merge_group_sequence
        self._update_columns(
            installation.id,
            {"GroupSequence": installation.group_sequence},
            operation="update installation group sequence",
        )

    def update_states(
        self,
        installation_ids: Sequence[str],
        state: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        if not installation_ids:
            return 0
        query = (
            q.update(self.table)
            .set("State", str(state))
            .where_in("ID", installation_ids)
        )
        return self._db.execute(query.compile(), conn=conn, operation="update installation states")

    def recover(self, installation: Installation) -> None:
        """Bring a deleted installation back, restoring it to ``installation.state``."""
        query = (
            q.update(self.table)
            .set("State", str(installation.state))
            .set("DeleteAt", 0)
            .where_eq("ID", installation.id)
            .where_eq("State", str(InstallationState.DELETED))
            .where(q.ne("DeleteAt", 0))
        )
        self._db.execute(query.compile(), operation="recover installation")
        installation.delete_at = 0

    def get_unlocked_pending_deletion(self) -> list[Installation]:
        return self._pending_deletion.select()

    def _state_counts(self, filter_: InstallationFilter) -> dict[str, int]:
        query = self._apply_filter(self._select(), filter_)
        query = q.apply_paging(
            query,
            Paging(per_page=ALL_PER_PAGE, include_deleted=filter_.paging.include_deleted),
        ).counted("State")
        rows = self._db.query_all(query.compile(), operation="count installations by state")
        counts: dict[str, int] = {}
        for row in rows:
            state, count = row["State"], row["Count"]
            if isinstance(state, str) and isinstance(count, int):
                counts[state] = count
        return counts

    def count(self, filter_: InstallationFilter) -> int:
        return sum(self._state_counts(filter_).values())

    def status_counts(self) -> InstallationsStatus:
        """Summarize live installations by state bucket."""
        counts = self._state_counts(InstallationFilter(paging=Paging.all_pages_not_deleted()))
        total = sum(counts.values())
        stable = counts.get(InstallationState.STABLE, 0)
        hibernating = counts.get(InstallationState.HIBERNATING, 0)
        pending_deletion = counts.get(InstallationState.DELETION_PENDING, 0)
        return InstallationsStatus(
            total=total,
            stable=stable,
            hibernating=hibernating,
            pending_deletion=pending_deletion,
            updating=total - stable - hibernating - pending_deletion,
        )


class InstallationBackupRepository(
    _APILockMixin, ResourceRepository[InstallationBackup, InstallationBackupFilter]
):
    kind = "installation backup"
    table = q.BACKUP_TABLE
    order_column = "RequestAt"
    list_descending = True
    pending_states = BACKUP_STATES_PENDING_WORK
    fields_type = BackupFields

    def _select(self) -> q.SelectQuery:
        return q.backup_select()

    def _decode(self, row: Row) -> InstallationBackup:
        return backup_from_row(row)

    def _encode(self, entity: InstallationBackup) -> dict[str, q.SQLValue]:
        return backup_to_row(entity)

    def _prepare_create(self, entity: InstallationBackup) -> None:
        entity.id = self._id_factory()
        entity.request_at = self._clock()

    def _apply_filter(
        self, query: q.SelectQuery, filter_: InstallationBackupFilter
    ) -> q.SelectQuery:
        if filter_.ids:
            query = query.where_in("ID", filter_.ids)
        if filter_.installation_id:
            query = query.where_eq("InstallationID", filter_.installation_id)
        if filter_.cluster_installation_id:
            query = query.where_eq("ClusterInstallationID", filter_.cluster_installation_id)
        if filter_.states:
            query = query.where_in("State", filter_.states)
        return query

    def trigger(self, backup: InstallationBackup, installation: Installation) -> InstallationBackup:
        return self._transitions.trigger_installation_backup(backup, installation)

    def is_backup_running(self, installation_id: str) -> bool:
        query = (
            q.backup_select()
            .where_eq("InstallationID", installation_id)
            .where_in("State", state_values(BACKUP_STATES_RUNNING))
            .where_eq("DeleteAt", 0)
            .counted()
        )
        row = self._db.query_one(query.compile(), operation="count running installation backups")
        return row is not None and isinstance(row["Count"], int) and row["Count"] > 0

    def update_scheduling_data(self, backup: InstallationBackup) -> None:
        self._update_columns(
            backup.id,
            {
                "DataResidence": encode_data_residence(backup.data_residence),
                "ClusterInstallationID": backup.cluster_installation_id,
            },
            operation="update installation backup scheduling data",
        )

    def update_start_time(self, backup: InstallationBackup) -> None:
        self._update_columns(
            backup.id,
            {"StartAt": backup.start_at},
            operation="update installation backup start time",
        )


class DBMigrationOperationRepository(
    ResourceRepository[InstallationDBMigrationOperation, DBMigrationFilter]
):
    kind = "installation db migration operation"
    table = q.DB_MIGRATION_TABLE
    order_column = "RequestAt"
    list_descending = True
    pending_states = DB_MIGRATION_STATES_PENDING_WORK
    fields_type = DBMigrationFields

    def _select(self) -> q.SelectQuery:
        return q.db_migration_select()

    def _decode(self, row: Row) -> InstallationDBMigrationOperation:
        return db_migration_from_row(row)

    def _encode(self, entity: InstallationDBMigrationOperation) -> dict[str, q.SQLValue]:
        return db_migration_to_row(entity)

    def _prepare_create(self, entity: InstallationDBMigrationOperation) -> None:
        entity.id = self._id_factory()
        entity.request_at = self._clock()

    def _apply_filter(self, query: q.SelectQuery, filter_: DBMigrationFilter) -> q.SelectQuery:
        if filter_.ids:
            query = query.where_in("ID", filter_.ids)
        if filter_.installation_id:
            query = query.where_eq("InstallationID", filter_.installation_id)
        if filter_.states:
            query = query.where_in("State", filter_.states)
        return query

    def trigger(
        self,
        operation: InstallationDBMigrationOperation,
        installation: Installation,
    ) -> InstallationDBMigrationOperation:
        return self._transitions.trigger_installation_db_migration(operation, installation)

    def update(self, operation: InstallationDBMigrationOperation) -> None:
        self._transitions.update_fields(
            operation,
            DBMigrationFields(
                state=operation.state,
                backup_id=operation.backup_id,
                installation_db_restoration_operation_id=(
                    operation.installation_db_restoration_operation_id
                ),
                complete_at=operation.complete_at,
            ),
        )


class DBRestorationOperationRepository(
    ResourceRepository[InstallationDBRestorationOperation, DBRestorationFilter]
):
    kind = "installation db restoration operation"
    table = q.DB_RESTORATION_TABLE
    order_column = "RequestAt"
    list_descending = True
    pending_states = DB_RESTORATION_STATES_PENDING_WORK
    fields_type = DBRestorationFields

    def _select(self) -> q.SelectQuery:
        return q.db_restoration_select()

    def _decode(self, row: Row) -> InstallationDBRestorationOperation:
        return db_restoration_from_row(row)

    def _encode(self, entity: InstallationDBRestorationOperation) -> dict[str, q.SQLValue]:
        return db_restoration_to_row(entity)

    def _prepare_create(self, entity: InstallationDBRestorationOperation) -> None:
        entity.id = self._id_factory()
        entity.request_at = self._clock()

    def _apply_filter(self, query: q.SelectQuery, filter_: DBRestorationFilter) -> q.SelectQuery:
        if filter_.ids:
            query = query.where_in("ID", filter_.ids)
        if filter_.installation_id:
            query = query.where_eq("InstallationID", filter_.installation_id)
        if filter_.cluster_installation_id:
            query = query.where_eq("ClusterInstallationID", filter_.cluster_installation_id)
        if filter_.states:
            query = query.where_in("State", filter_.states)
        return query

    def trigger(
        self,
        installation: Installation,
        backup: InstallationBackup,
    ) -> InstallationDBRestorationOperation:
        return self._transitions.trigger_installation_restoration(installation, backup)

    def update(self, operation: InstallationDBRestorationOperation) -> None:
        self._transitions.update_fields(
            operation,
            DBRestorationFields(
                state=operation.state,
                cluster_installation_id=operation.cluster_installation_id,
                complete_at=operation.complete_at,
            ),
        )


class DatabaseClusterRepository(_BaseRepository[DatabaseCluster, DatabaseClusterFilter]):
    """Shared database hosts. Rows carry only an ID, the installation list and a lock."""

    kind = "database cluster"
    table = q.DATABASE_CLUSTER_TABLE
    order_column = "ID"
    has_tombstone = False

    def _select(self) -> q.SelectQuery:
        return q.database_cluster_select()

    def _decode(self, row: Row) -> DatabaseCluster:
        return database_cluster_from_row(row)

    def _encode(self, entity: DatabaseCluster) -> dict[str, q.SQLValue]:
        return database_cluster_to_row(entity)

    def _prepare_create(self, entity: DatabaseCluster) -> None:
        if not entity.id:
            raise ValueError("database cluster ID cannot be empty")

    def _apply_filter(
        self, query: q.SelectQuery, filter_: DatabaseClusterFilter
    ) -> q.SelectQuery:
        if filter_.installation_id:
            query = query.where(q.like("RawInstallationIDs", f"%{filter_.installation_id}%"))
        return query

    def list(self, filter_: DatabaseClusterFilter) -> list[DatabaseCluster]:
        clusters = super().list(filter_)
        if filter_.installation_id:
            # LIKE narrows candidates; exact membership is checked on the decoded list.
            clusters = [c for c in clusters if c.contains(filter_.installation_id)]
        if filter_.num_of_installations_limit > 0:
            clusters = [
                c
                for c in clusters
                if len(c.installation_ids) <= filter_.num_of_installations_limit
            ]
        return clusters

    def update(self, cluster: DatabaseCluster) -> None:
        self._transitions.update_fields(
            cluster, DatabaseClusterFields(installation_ids=list(cluster.installation_ids))
        )

    def update_fields(self, cluster: DatabaseCluster, field_set: DatabaseClusterFields) -> None:
        self._transitions.update_fields(cluster, field_set)


class DatabaseSchemaRepository(_BaseRepository[DatabaseSchema, DatabaseSchemaFilter]):
    kind = "database schema"
    table = q.DATABASE_SCHEMA_TABLE
    order_column = "CreateAt"

    def _select(self) -> q.SelectQuery:
        return q.database_schema_select()

    def _decode(self, row: Row) -> DatabaseSchema:
        return database_schema_from_row(row)

    def _encode(self, entity: DatabaseSchema) -> dict[str, q.SQLValue]:
        return database_schema_to_row(entity)

    def _prepare_create(self, entity: DatabaseSchema) -> None:
        entity.id = self._id_factory()
        entity.create_at = self._clock()
        if not entity.name:
            entity.name = f"id_{entity.installation_id}"

    def _apply_filter(
        self, query: q.SelectQuery, filter_: DatabaseSchemaFilter
    ) -> q.SelectQuery:
        if filter_.logical_database_id:
            query = query.where_eq("LogicalDatabaseID", filter_.logical_database_id)
        if filter_.installation_id:
            query = query.where_eq("InstallationID", filter_.installation_id)
        return query

    def get_for_installation(self, installation_id: str) -> DatabaseSchema | None:
        schemas = self.list(
            DatabaseSchemaFilter(
                paging=Paging.all_pages_not_deleted(),
                installation_id=installation_id,
            )
        )
        if not schemas:
            return None
        if len(schemas) > 1:
            raise StateDBError(
                f"expected no more than one database schema for installation "
                f"{installation_id}, but got {len(schemas)}"
            )
        return schemas[0]

    def delete(self, resource_id: str) -> None:
        self._soft_delete(resource_id)


__all__ = [
    "ClusterRepository",
    "DBMigrationOperationRepository",
    "DBRestorationOperationRepository",
    "DatabaseClusterRepository",
    "DatabaseSchemaRepository",
    "InstallationBackupRepository",
    "InstallationRepository",
    "ResourceRepository",
]
