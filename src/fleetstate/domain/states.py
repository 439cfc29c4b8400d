"""Per-kind state sets, pending-work membership, and request transition rules.

State values are persisted verbatim, so every string here is part of the
on-disk contract. Pending-work sets list the states a supervisor acts on during
its next polling cycle; any state not listed is either terminal or waiting on an
external request.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Final


class ClusterState(StrEnum):
    STABLE = "stable"
    CREATION_REQUESTED = "creation-requested"
    CREATION_IN_PROGRESS = "creation-in-progress"
    WAITING_FOR_NODES = "waiting-for-nodes"
    PROVISION_IN_PROGRESS = "provision-in-progress"
    CREATION_FAILED = "creation-failed"
    PROVISIONING_REQUESTED = "provisioning-requested"
    REFRESH_METADATA = "refresh-metadata"
    PROVISIONING_FAILED = "provisioning-failed"
    UPGRADE_REQUESTED = "upgrade-requested"
    UPGRADE_FAILED = "upgrade-failed"
    RESIZE_REQUESTED = "resize-requested"
    RESIZE_FAILED = "resize-failed"
    NODEGROUPS_CREATION_REQUESTED = "nodegroups-creation-requested"
    NODEGROUPS_CREATION_FAILED = "nodegroups-creation-failed"
    NODEGROUPS_DELETION_REQUESTED = "nodegroups-deletion-requested"
    NODEGROUPS_DELETION_FAILED = "nodegroups-deletion-failed"
    DELETION_REQUESTED = "deletion-requested"
    DELETION_FAILED = "deletion-failed"
    DELETED = "deleted"


class InstallationState(StrEnum):
    STABLE = "stable"
    CREATION_REQUESTED = "creation-requested"
    CREATION_PRE_PROVISIONING = "creation-pre-provisioning"
    CREATION_IN_PROGRESS = "creation-in-progress"
    CREATION_DNS = "creation-configuring-dns"
    CREATION_FAILED = "creation-failed"
    CREATION_NO_COMPATIBLE_CLUSTERS = "creation-no-compatible-clusters"
    CREATION_FINAL_TASKS = "creation-final-tasks"
    HIBERNATION_REQUESTED = "hibernation-requested"
    HIBERNATION_IN_PROGRESS = "hibernation-in-progress"
    HIBERNATING = "hibernating"
    UPDATE_REQUESTED = "update-requested"
    UPDATE_IN_PROGRESS = "update-in-progress"
    UPDATE_FAILED = "update-failed"
    DB_MIGRATION_IN_PROGRESS = "db-migration-in-progress"
    DB_MIGRATION_ROLLBACK_IN_PROGRESS = "db-migration-rollback-in-progress"
    DB_RESTORATION_IN_PROGRESS = "db-restoration-in-progress"
    DB_RESTORATION_FAILED = "db-restoration-failed"
    DELETION_PENDING_REQUESTED = "deletion-pending-requested"
    DELETION_PENDING_IN_PROGRESS = "deletion-pending-in-progress"
    DELETION_PENDING = "deletion-pending"
    DELETION_CANCELLATION_REQUESTED = "deletion-cancellation-requested"
    DELETION_REQUESTED = "deletion-requested"
    DELETION_IN_PROGRESS = "deletion-in-progress"
    DELETION_FINAL_CLEANUP = "deletion-final-cleanup"
    DELETION_FAILED = "deletion-failed"
    DELETED = "deleted"


class BackupState(StrEnum):
    BACKUP_REQUESTED = "backup-requested"
    BACKUP_IN_PROGRESS = "backup-in-progress"
    BACKUP_SUCCEEDED = "backup-succeeded"
    BACKUP_FAILED = "backup-failed"
    DELETION_REQUESTED = "deletion-requested"
    DELETED = "deleted"
    DELETION_FAILED = "deletion-failed"


class DBMigrationState(StrEnum):
    REQUESTED = "installation-db-migration-requested"
    BACKUP_IN_PROGRESS = "installation-db-migration-installation-backup-in-progress"
    # The persisted value contains a space; keep it byte-for-byte.
    DATABASE_SWITCH = "installation-db-migration-database switch"
    REFRESH_SECRETS = "installation-db-migration-refresh-secrets"
    TRIGGER_RESTORATION = "installation-db-migration-trigger-restoration"
    RESTORATION_IN_PROGRESS = "installation-db-migration-restoration-in-progress"
    UPDATING_INSTALLATION_CONFIG = "installation-db-migration-updating-installation-config"
    FINALIZING = "installation-db-migration-finalizing"
    FAILING = "installation-db-migration-failing"
    SUCCEEDED = "installation-db-migration-succeeded"
    FAILED = "installation-db-migration-failed"
    COMMITTED = "installation-db-migration-committed"
    ROLLBACK_REQUESTED = "installation-db-migration-rollback-requested"
    ROLLBACK_FINISHED = "installation-db-migration-rollback-finished"
    DELETION_REQUESTED = "installation-db-migration-deletion-requested"
    DELETED = "installation-db-migration-deleted"


class DBRestorationState(StrEnum):
    REQUESTED = "installation-db-restoration-requested"
    IN_PROGRESS = "installation-db-restoration-in-progress"
    FINALIZING = "installation-db-restoration-finishing"
    SUCCEEDED = "installation-db-restoration-succeeded"
    FAILING = "installation-db-restoration-failing"
    FAILED = "installation-db-restoration-failed"
    INVALID = "installation-db-restoration-invalid"
    DELETION_REQUESTED = "installation-db-restoration-deletion-requested"
    DELETED = "installation-db-restoration-deleted"


CLUSTER_STATES_PENDING_WORK: Final[frozenset[ClusterState]] = frozenset(
    {
        ClusterState.CREATION_REQUESTED,
        ClusterState.CREATION_IN_PROGRESS,
        ClusterState.WAITING_FOR_NODES,
        ClusterState.PROVISION_IN_PROGRESS,
        ClusterState.PROVISIONING_REQUESTED,
        ClusterState.REFRESH_METADATA,
        ClusterState.UPGRADE_REQUESTED,
        ClusterState.RESIZE_REQUESTED,
        ClusterState.NODEGROUPS_CREATION_REQUESTED,
        ClusterState.NODEGROUPS_DELETION_REQUESTED,
        ClusterState.DELETION_REQUESTED,
    }
)

INSTALLATION_STATES_PENDING_WORK: Final[frozenset[InstallationState]] = frozenset(
    {
        InstallationState.CREATION_REQUESTED,
        InstallationState.CREATION_PRE_PROVISIONING,
        InstallationState.CREATION_IN_PROGRESS,
        InstallationState.CREATION_NO_COMPATIBLE_CLUSTERS,
        InstallationState.CREATION_FINAL_TASKS,
        InstallationState.CREATION_DNS,
        InstallationState.HIBERNATION_REQUESTED,
        InstallationState.HIBERNATION_IN_PROGRESS,
        InstallationState.UPDATE_REQUESTED,
        InstallationState.UPDATE_IN_PROGRESS,
        InstallationState.DB_MIGRATION_IN_PROGRESS,
        InstallationState.DB_MIGRATION_ROLLBACK_IN_PROGRESS,
        InstallationState.DB_RESTORATION_IN_PROGRESS,
        InstallationState.DELETION_PENDING_REQUESTED,
        InstallationState.DELETION_PENDING_IN_PROGRESS,
        InstallationState.DELETION_CANCELLATION_REQUESTED,
        InstallationState.DELETION_REQUESTED,
        InstallationState.DELETION_IN_PROGRESS,
        InstallationState.DELETION_FINAL_CLEANUP,
    }
)

BACKUP_STATES_PENDING_WORK: Final[frozenset[BackupState]] = frozenset(
    {
        BackupState.BACKUP_REQUESTED,
        BackupState.BACKUP_IN_PROGRESS,
        BackupState.DELETION_REQUESTED,
    }
)

BACKUP_STATES_RUNNING: Final[frozenset[BackupState]] = frozenset(
    {
        BackupState.BACKUP_REQUESTED,
        BackupState.BACKUP_IN_PROGRESS,
    }
)

DB_MIGRATION_STATES_PENDING_WORK: Final[frozenset[DBMigrationState]] = frozenset(
    {
        DBMigrationState.REQUESTED,
        DBMigrationState.BACKUP_IN_PROGRESS,
        DBMigrationState.DATABASE_SWITCH,
        DBMigrationState.REFRESH_SECRETS,
        DBMigrationState.TRIGGER_RESTORATION,
        DBMigrationState.RESTORATION_IN_PROGRESS,
        DBMigrationState.UPDATING_INSTALLATION_CONFIG,
        DBMigrationState.FINALIZING,
        DBMigrationState.FAILING,
        DBMigrationState.ROLLBACK_REQUESTED,
        DBMigrationState.DELETION_REQUESTED,
    }
)

DB_RESTORATION_STATES_PENDING_WORK: Final[frozenset[DBRestorationState]] = frozenset(
    {
        DBRestorationState.REQUESTED,
        DBRestorationState.IN_PROGRESS,
        DBRestorationState.FINALIZING,
        DBRestorationState.FAILING,
        DBRestorationState.DELETION_REQUESTED,
    }
)

# Installation states counted as "deleting" in status reports.
INSTALLATION_STATES_DELETING: Final[frozenset[InstallationState]] = frozenset(
    {
        InstallationState.DELETION_REQUESTED,
        InstallationState.DELETION_IN_PROGRESS,
        InstallationState.DELETION_FINAL_CLEANUP,
        InstallationState.DELETION_FAILED,
    }
)

_INSTALLATION_DELETABLE_FROM: Final[frozenset[InstallationState]] = frozenset(
    {
        InstallationState.STABLE,
        InstallationState.CREATION_REQUESTED,
        InstallationState.CREATION_PRE_PROVISIONING,
        InstallationState.CREATION_IN_PROGRESS,
        InstallationState.CREATION_DNS,
        InstallationState.CREATION_NO_COMPATIBLE_CLUSTERS,
        InstallationState.CREATION_FINAL_TASKS,
        InstallationState.CREATION_FAILED,
        InstallationState.UPDATE_REQUESTED,
        InstallationState.UPDATE_IN_PROGRESS,
        InstallationState.UPDATE_FAILED,
        InstallationState.HIBERNATION_REQUESTED,
        InstallationState.HIBERNATION_IN_PROGRESS,
        InstallationState.HIBERNATING,
        InstallationState.DELETION_PENDING,
        InstallationState.DELETION_REQUESTED,
        InstallationState.DELETION_IN_PROGRESS,
        InstallationState.DELETION_FINAL_CLEANUP,
        InstallationState.DELETION_FAILED,
    }
)

INSTALLATION_REQUEST_TRANSITIONS: Final[Mapping[str, frozenset[str]]] = {
    InstallationState.CREATION_REQUESTED: frozenset(
        {InstallationState.CREATION_REQUESTED, InstallationState.CREATION_FAILED}
    ),
    InstallationState.HIBERNATION_REQUESTED: frozenset({InstallationState.STABLE}),
    InstallationState.UPDATE_REQUESTED: frozenset(
        {
            InstallationState.STABLE,
            InstallationState.HIBERNATING,
            InstallationState.UPDATE_REQUESTED,
            InstallationState.UPDATE_IN_PROGRESS,
            InstallationState.UPDATE_FAILED,
        }
    ),
    InstallationState.DELETION_PENDING_REQUESTED: frozenset(
        {
            InstallationState.STABLE,
            InstallationState.HIBERNATING,
            InstallationState.UPDATE_FAILED,
            InstallationState.CREATION_FAILED,
        }
    ),
    InstallationState.DELETION_REQUESTED: _INSTALLATION_DELETABLE_FROM,
}

CLUSTER_REQUEST_TRANSITIONS: Final[Mapping[str, frozenset[str]]] = {
    ClusterState.CREATION_REQUESTED: frozenset(
        {ClusterState.CREATION_REQUESTED, ClusterState.CREATION_FAILED}
    ),
    ClusterState.PROVISIONING_REQUESTED: frozenset(
        {
            ClusterState.STABLE,
            ClusterState.PROVISIONING_REQUESTED,
            ClusterState.PROVISIONING_FAILED,
        }
    ),
    ClusterState.UPGRADE_REQUESTED: frozenset(
        {
            ClusterState.STABLE,
            ClusterState.UPGRADE_REQUESTED,
            ClusterState.UPGRADE_FAILED,
        }
    ),
    ClusterState.RESIZE_REQUESTED: frozenset(
        {
            ClusterState.STABLE,
            ClusterState.RESIZE_REQUESTED,
            ClusterState.RESIZE_FAILED,
        }
    ),
    ClusterState.NODEGROUPS_CREATION_REQUESTED: frozenset(
        {
            ClusterState.STABLE,
            ClusterState.NODEGROUPS_CREATION_REQUESTED,
            ClusterState.NODEGROUPS_CREATION_FAILED,
        }
    ),
    ClusterState.NODEGROUPS_DELETION_REQUESTED: frozenset(
        {
            ClusterState.STABLE,
            ClusterState.NODEGROUPS_DELETION_REQUESTED,
            ClusterState.NODEGROUPS_DELETION_FAILED,
        }
    ),
    ClusterState.DELETION_REQUESTED: frozenset(
        {
            ClusterState.STABLE,
            ClusterState.CREATION_REQUESTED,
            ClusterState.CREATION_FAILED,
            ClusterState.PROVISIONING_FAILED,
            ClusterState.UPGRADE_REQUESTED,
            ClusterState.UPGRADE_FAILED,
            ClusterState.RESIZE_REQUESTED,
            ClusterState.RESIZE_FAILED,
            ClusterState.DELETION_REQUESTED,
            ClusterState.DELETION_FAILED,
        }
    ),
}

BACKUP_REQUEST_TRANSITIONS: Final[Mapping[str, frozenset[str]]] = {
    BackupState.DELETION_REQUESTED: frozenset(
        {
            BackupState.BACKUP_REQUESTED,
            BackupState.BACKUP_IN_PROGRESS,
            BackupState.BACKUP_SUCCEEDED,
            BackupState.BACKUP_FAILED,
            BackupState.DELETION_REQUESTED,
            BackupState.DELETION_FAILED,
        }
    ),
}

DB_MIGRATION_REQUEST_TRANSITIONS: Final[Mapping[str, frozenset[str]]] = {
    DBMigrationState.ROLLBACK_REQUESTED: frozenset({DBMigrationState.SUCCEEDED}),
    DBMigrationState.COMMITTED: frozenset({DBMigrationState.SUCCEEDED}),
}


def _valid_transition(
    table: Mapping[str, frozenset[str]],
    current_state: str,
    new_state: str,
) -> bool:
    allowed_from = table.get(new_state)
    if allowed_from is None:
        return False
    return current_state in allowed_from


def valid_installation_transition(current_state: str, new_state: str) -> bool:
    """Return whether an API request may move an installation into ``new_state``."""
    return _valid_transition(INSTALLATION_REQUEST_TRANSITIONS, current_state, new_state)


def valid_cluster_transition(current_state: str, new_state: str) -> bool:
    return _valid_transition(CLUSTER_REQUEST_TRANSITIONS, current_state, new_state)


def valid_backup_transition(current_state: str, new_state: str) -> bool:
    return _valid_transition(BACKUP_REQUEST_TRANSITIONS, current_state, new_state)


def valid_db_migration_transition(current_state: str, new_state: str) -> bool:
    return _valid_transition(DB_MIGRATION_REQUEST_TRANSITIONS, current_state, new_state)


def state_values(states: Iterable[StrEnum]) -> tuple[str, ...]:
    """Return a deterministic, sorted tuple of the raw values for SQL ``IN`` lists."""
    return tuple(sorted(str(state) for state in states))


__all__ = [
    "BACKUP_REQUEST_TRANSITIONS",
    "BACKUP_STATES_PENDING_WORK",
    "BACKUP_STATES_RUNNING",
    "CLUSTER_REQUEST_TRANSITIONS",
    "CLUSTER_STATES_PENDING_WORK",
    "DB_MIGRATION_REQUEST_TRANSITIONS",
    "DB_MIGRATION_STATES_PENDING_WORK",
    "DB_RESTORATION_STATES_PENDING_WORK",
    "INSTALLATION_REQUEST_TRANSITIONS",
    "INSTALLATION_STATES_DELETING",
    "INSTALLATION_STATES_PENDING_WORK",
    "BackupState",
    "ClusterState",
    "DBMigrationState",
    "DBRestorationState",
    "InstallationState",
    "state_values",
    "valid_backup_transition",
    "valid_cluster_transition",
    "valid_db_migration_transition",
    "valid_installation_transition",
]
