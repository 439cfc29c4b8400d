"""Atomic state transitions and column-scoped updates.

Composite transitions (``trigger_*``) insert a dependent operation row and
move the parent installation to its next state inside one
:class:`~fleetstate.persistence.state_db.TransactionScope`; other readers see
both writes or neither. Guard clauses run before the transaction begins, so a
rejected request never touches the database.

Column-scoped updates take a typed field set (``ClusterFields`` and friends):
only attributes explicitly given are written, which lets a lock holder update
its own columns without clobbering columns another path writes concurrently
(for example the API security lock).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Final

from fleetstate.domain.guards import (
    InvariantViolationError,
    determine_after_restoration_state,
    ensure_installation_ready_for_backup,
    ensure_installation_ready_for_db_migration,
    ensure_installation_ready_for_db_restoration,
    ensure_saveable,
)
from fleetstate.domain.ids import get_millis, new_id
from fleetstate.domain.models import (
    Cluster,
    DatabaseCluster,
    DataResidence,
    Installation,
    InstallationBackup,
    InstallationDBMigrationOperation,
    InstallationDBRestorationOperation,
)
from fleetstate.domain.states import (
    BACKUP_STATES_RUNNING,
    BackupState,
    DBMigrationState,
    DBRestorationState,
    InstallationState,
    state_values,
)
from fleetstate.persistence.codecs import (
    encode_data_residence,
    encode_json,
    encode_str_list,
    encode_str_map,
)
from fleetstate.persistence.queries import (
    BACKUP_TABLE,
    DB_MIGRATION_TABLE,
    DB_RESTORATION_TABLE,
    INSTALLATION_TABLE,
    SQLValue,
    SelectQuery,
    UpdateQuery,
    insert,
)
from fleetstate.persistence.rows import (
    backup_to_row,
    db_migration_to_row,
    db_restoration_to_row,
    table_for,
)
from fleetstate.persistence.state_db import StateDBConflictError

if TYPE_CHECKING:
    import sqlite3

    from fleetstate.persistence.state_db import StateDB, TransactionScope

_LOGGER = logging.getLogger(__name__)


class _Unset(Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = _Unset.UNSET


def _plain(value: Any) -> SQLValue:
    return value


def _flag(value: bool) -> SQLValue:
    return int(value)


def _text(value: Any) -> SQLValue:
    return str(value)


@dataclass(frozen=True, slots=True)
class FieldSet:
    """Base for typed partial updates.

    Subclasses declare one attribute per writable column (defaulting to
    ``UNSET``) and a ``_columns`` map of ``attribute -> (column, encoder)``.
    """

    _entity: ClassVar[type]
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]]

    def assignments(self) -> dict[str, SQLValue]:
        """Return ``column -> encoded value`` for every attribute that was set."""
        out: dict[str, SQLValue] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is UNSET:
                continue
            column, encode = self._columns[item.name]
            out[column] = encode(value)
        if not out:
            raise ValueError(f"{type(self).__name__} sets no fields")
        return out

    def apply_to(self, entity: object) -> None:
        """Mirror the set attributes onto the in-memory entity."""
        for item in fields(self):
            value = getattr(self, item.name)
            if value is not UNSET:
                setattr(entity, item.name, value)


@dataclass(frozen=True, slots=True)
class ClusterFields(FieldSet):
    _entity: ClassVar[type] = Cluster
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]] = {
        "state": ("State", _text),
        "name": ("Name", _plain),
        "provider": ("Provider", _plain),
        "provisioner": ("Provisioner", _plain),
        "provider_metadata": ("ProviderMetadata", encode_json),
        "provisioner_metadata": ("ProvisionerMetadata", encode_json),
        "utility_metadata": ("UtilityMetadata", encode_json),
        "networking": ("Networking", _plain),
        "allow_installations": ("AllowInstallations", _flag),
        "api_security_lock": ("APISecurityLock", _flag),
    }

    state: str | _Unset = UNSET
    name: str | _Unset = UNSET
    provider: str | _Unset = UNSET
    provisioner: str | _Unset = UNSET
    provider_metadata: dict[str, object] | None | _Unset = UNSET
    provisioner_metadata: dict[str, object] | None | _Unset = UNSET
    utility_metadata: dict[str, object] | None | _Unset = UNSET
    networking: str | _Unset = UNSET
    allow_installations: bool | _Unset = UNSET
    api_security_lock: bool | _Unset = UNSET


@dataclass(frozen=True, slots=True)
class InstallationFields(FieldSet):
    _entity: ClassVar[type] = Installation
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]] = {
        "state": ("State", _text),
        "owner_id": ("OwnerID", _plain),
        "name": ("Name", _plain),
        "group_id": ("GroupID", _plain),
        "group_sequence": ("GroupSequence", _plain),
        "version": ("Version", _plain),
        "image": ("Image", _plain),
        "license": ("License", _plain),
        "size": ("Size", _plain),
        "affinity": ("Affinity", _plain),
        "cr_version": ("CRVersion", _plain),
        "env": ("Env", encode_str_map),
        "priority_env": ("PriorityEnv", encode_str_map),
        "deletion_pending_expiry": ("DeletionPendingExpiry", _plain),
        "deletion_locked": ("DeletionLocked", _flag),
        "api_security_lock": ("APISecurityLock", _flag),
    }

    state: str | _Unset = UNSET
    owner_id: str | _Unset = UNSET
    name: str | _Unset = UNSET
    group_id: str | None | _Unset = UNSET
    group_sequence: int | None | _Unset = UNSET
    version: str | _Unset = UNSET
    image: str | _Unset = UNSET
    license: str | _Unset = UNSET
    size: str | _Unset = UNSET
    affinity: str | _Unset = UNSET
    cr_version: str | _Unset = UNSET
    env: dict[str, str] | _Unset = UNSET
    priority_env: dict[str, str] | _Unset = UNSET
    deletion_pending_expiry: int | _Unset = UNSET
    deletion_locked: bool | _Unset = UNSET
    api_security_lock: bool | _Unset = UNSET


@dataclass(frozen=True, slots=True)
class BackupFields(FieldSet):
    _entity: ClassVar[type] = InstallationBackup
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]] = {
        "state": ("State", _text),
        "cluster_installation_id": ("ClusterInstallationID", _plain),
        "backed_up_database_type": ("BackedUpDatabaseType", _plain),
        "data_residence": ("DataResidence", encode_data_residence),
        "start_at": ("StartAt", _plain),
        "api_security_lock": ("APISecurityLock", _flag),
    }

    state: str | _Unset = UNSET
    cluster_installation_id: str | _Unset = UNSET
    backed_up_database_type: str | _Unset = UNSET
    data_residence: DataResidence | None | _Unset = UNSET
    start_at: int | _Unset = UNSET
    api_security_lock: bool | _Unset = UNSET


@dataclass(frozen=True, slots=True)
class DBMigrationFields(FieldSet):
    _entity: ClassVar[type] = InstallationDBMigrationOperation
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]] = {
        "state": ("State", _text),
        "backup_id": ("BackupID", _plain),
        "installation_db_restoration_operation_id": (
            "InstallationDBRestorationOperationID",
            _plain,
        ),
        "complete_at": ("CompleteAt", _plain),
    }

    state: str | _Unset = UNSET
    backup_id: str | _Unset = UNSET
    installation_db_restoration_operation_id: str | _Unset = UNSET
    complete_at: int | _Unset = UNSET


@dataclass(frozen=True, slots=True)
class DBRestorationFields(FieldSet):
    _entity: ClassVar[type] = InstallationDBRestorationOperation
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]] = {
        "state": ("State", _text),
        "cluster_installation_id": ("ClusterInstallationID", _plain),
        "complete_at": ("CompleteAt", _plain),
    }

    state: str | _Unset = UNSET
    cluster_installation_id: str | _Unset = UNSET
    complete_at: int | _Unset = UNSET


@dataclass(frozen=True, slots=True)
class DatabaseClusterFields(FieldSet):
    _entity: ClassVar[type] = DatabaseCluster
    _columns: ClassVar[Mapping[str, tuple[str, Callable[[Any], SQLValue]]]] = {
        "installation_ids": ("RawInstallationIDs", encode_str_list),
    }

    installation_ids: list[str] | _Unset = UNSET


class StateTransitionCoordinator:
    """Composite and column-scoped writes for every resource kind."""

    def __init__(
        self,
        db: StateDB,
        *,
        clock: Callable[[], int] = get_millis,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._db = db
        self._clock = clock
        self._id_factory = id_factory

    def update_state(self, entity: object, *, conn: sqlite3.Connection | None = None) -> None:
        """Write only the State column of ``entity``."""
        table, kind = table_for(entity)
        state = getattr(entity, "state", None)
        if state is None:
            raise TypeError(f"{kind} has no state column")
        query = UpdateQuery(table).set("State", str(state)).where_eq("ID", _entity_id(entity))
        self._db.execute(query.compile(), conn=conn, operation=f"update {kind} state")

    def update_fields(
        self,
        entity: object,
        field_set: FieldSet,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Write exactly the columns set in ``field_set``, then mirror them onto ``entity``."""
        table, kind = table_for(entity)
        if not isinstance(entity, field_set._entity):
            raise TypeError(
                f"{type(field_set).__name__} cannot update a {type(entity).__name__}"
            )
        if isinstance(entity, Installation):
            ensure_saveable(entity)
        query = (
            UpdateQuery(table)
            .set_many(field_set.assignments())
            .where_eq("ID", _entity_id(entity))
        )
        self._db.execute(query.compile(), conn=conn, operation=f"update {kind} fields")
        field_set.apply_to(entity)

    def trigger_installation_db_migration(
        self,
        operation: InstallationDBMigrationOperation,
        installation: Installation,
    ) -> InstallationDBMigrationOperation:
        """Create a migration operation and move the installation to db-migration-in-progress."""
        ensure_saveable(installation)
        ensure_installation_ready_for_db_migration(installation)

        operation.installation_id = installation.id
        operation.state = DBMigrationState.REQUESTED
        operation.installation_db_restoration_operation_id = ""
        self._assign_identity(operation)

        with self._db.begin() as scope:
            scope.execute(
                insert(DB_MIGRATION_TABLE, db_migration_to_row(operation)).compile(),
                operation="create installation db migration operation",
            )
            self._set_installation_state(
                scope, installation, InstallationState.DB_MIGRATION_IN_PROGRESS
            )
            scope.commit()

        installation.state = InstallationState.DB_MIGRATION_IN_PROGRESS
        _LOGGER.info(
            "triggered installation db migration",
            extra={"installation_id": installation.id, "operation_id": operation.id},
        )
        return operation

    def trigger_installation_restoration(
        self,
        installation: Installation,
        backup: InstallationBackup,
    ) -> InstallationDBRestorationOperation:
        """Create a restoration operation; the installation moves to db-restoration-in-progress."""
        ensure_saveable(installation)
        ensure_installation_ready_for_db_restoration(installation, backup)
        target_state = determine_after_restoration_state(installation)

        operation = InstallationDBRestorationOperation(
            installation_id=installation.id,
            backup_id=backup.id,
            state=DBRestorationState.REQUESTED,
            target_installation_state=target_state,
        )
        self._assign_identity(operation)

        with self._db.begin() as scope:
            scope.execute(
                insert(DB_RESTORATION_TABLE, db_restoration_to_row(operation)).compile(),
                operation="create installation db restoration operation",
            )
            self._set_installation_state(
                scope, installation, InstallationState.DB_RESTORATION_IN_PROGRESS
            )
            scope.commit()

        installation.state = InstallationState.DB_RESTORATION_IN_PROGRESS
        _LOGGER.info(
            "triggered installation restoration",
            extra={
                "installation_id": installation.id,
                "operation_id": operation.id,
                "backup_id": backup.id,
            },
        )
        return operation

    def trigger_installation_backup(
        self,
        backup: InstallationBackup,
        installation: Installation,
    ) -> InstallationBackup:
        """Create a backup request unless one is already running for the installation."""
        ensure_saveable(installation)
        ensure_installation_ready_for_backup(installation)

        backup.installation_id = installation.id
        backup.state = BackupState.BACKUP_REQUESTED
        self._assign_identity(backup)

        with self._db.begin() as scope:
            self._require_installation_state(scope, installation)
            running = scope.query_one(
                SelectQuery(BACKUP_TABLE, ("ID",))
                .where_eq("InstallationID", installation.id)
                .where_in("State", state_values(BACKUP_STATES_RUNNING))
                .where_eq("DeleteAt", 0)
                .compile(),
                operation="check running installation backups",
            )
            if running is not None:
                raise InvariantViolationError(
                    f"backup for installation {installation.id} is already running"
                )
            scope.execute(
                insert(BACKUP_TABLE, backup_to_row(backup)).compile(),
                operation="create installation backup",
            )
            scope.commit()

        return backup

    def _assign_identity(
        self,
        operation: InstallationBackup
        | InstallationDBMigrationOperation
        | InstallationDBRestorationOperation,
    ) -> None:
        operation.id = self._id_factory()
        operation.request_at = self._clock()

    def _set_installation_state(
        self,
        scope: TransactionScope,
        installation: Installation,
        state: InstallationState,
    ) -> None:
        """Move the live installation from its observed state to ``state``.

        Raises ``StateDBConflictError`` (rolling back the scope) when the row
        is missing, deleted, or was moved on by another writer.
        """
        query = (
            UpdateQuery(INSTALLATION_TABLE)
            .set("State", str(state))
            .where_eq("ID", installation.id)
            .where_eq("State", str(installation.state))
            .where_eq("DeleteAt", 0)
        )
        count = scope.execute(query.compile(), operation="update installation state")
        if count != 1:
            raise StateDBConflictError(
                f"installation {installation.id} is no longer live in state "
                f"'{installation.state}'; not moving it to '{state}'"
            )

    def _require_installation_state(
        self, scope: TransactionScope, installation: Installation
    ) -> None:
        row = scope.query_one(
            SelectQuery(INSTALLATION_TABLE, ("ID",))
            .where_eq("ID", installation.id)
            .where_eq("State", str(installation.state))
            .where_eq("DeleteAt", 0)
            .compile(),
            operation="check installation state",
        )
        if row is None:
            raise StateDBConflictError(
                f"installation {installation.id} is no longer live in state "
                f"'{installation.state}'"
            )


def _entity_id(entity: object) -> str:
    entity_id = getattr(entity, "id", "")
    if not isinstance(entity_id, str) or not entity_id:
        raise ValueError(f"{type(entity).__name__} has no id")
    return entity_id


__all__ = [
    "UNSET",
    "BackupFields",
    "ClusterFields",
    "DBMigrationFields",
    "DBRestorationFields",
    "DatabaseClusterFields",
    "FieldSet",
    "InstallationFields",
    "StateTransitionCoordinator",
]
