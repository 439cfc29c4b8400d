"""State set and request transition table tests."""

from __future__ import annotations

import pytest

from fleetstate.domain.states import (
    BACKUP_STATES_PENDING_WORK,
    BACKUP_STATES_RUNNING,
    CLUSTER_STATES_PENDING_WORK,
    DB_MIGRATION_STATES_PENDING_WORK,
    DB_RESTORATION_STATES_PENDING_WORK,
    INSTALLATION_STATES_PENDING_WORK,
    BackupState,
    ClusterState,
    DBMigrationState,
    DBRestorationState,
    InstallationState,
    state_values,
    valid_backup_transition,
    valid_cluster_transition,
    valid_db_migration_transition,
    valid_installation_transition,
)


def test_persisted_values_are_stable() -> None:
    assert InstallationState.CREATION_DNS == "creation-configuring-dns"
    assert DBMigrationState.DATABASE_SWITCH == "installation-db-migration-database switch"
    assert DBRestorationState.FINALIZING == "installation-db-restoration-finishing"
    assert BackupState.BACKUP_SUCCEEDED == "backup-succeeded"


@pytest.mark.parametrize(
    ("pending", "terminal"),
    [
        (CLUSTER_STATES_PENDING_WORK, {ClusterState.STABLE, ClusterState.DELETED}),
        (
            INSTALLATION_STATES_PENDING_WORK,
            {InstallationState.STABLE, InstallationState.HIBERNATING, InstallationState.DELETED},
        ),
        (BACKUP_STATES_PENDING_WORK, {BackupState.BACKUP_SUCCEEDED, BackupState.DELETED}),
        (
            DB_MIGRATION_STATES_PENDING_WORK,
            {DBMigrationState.SUCCEEDED, DBMigrationState.FAILED, DBMigrationState.DELETED},
        ),
        (
            DB_RESTORATION_STATES_PENDING_WORK,
            {DBRestorationState.SUCCEEDED, DBRestorationState.FAILED, DBRestorationState.DELETED},
        ),
    ],
)
def test_terminal_states_are_never_pending(pending: frozenset[str], terminal: set[str]) -> None:
    assert pending.isdisjoint(terminal)


def test_running_backups_are_a_subset_of_pending_work() -> None:
    assert BACKUP_STATES_RUNNING <= BACKUP_STATES_PENDING_WORK


def test_state_values_are_sorted_raw_strings() -> None:
    values = state_values(BACKUP_STATES_RUNNING)

    assert values == ("backup-in-progress", "backup-requested")
    assert all(type(value) is str for value in values)


def test_request_transition_tables() -> None:
    assert valid_installation_transition(
        InstallationState.STABLE, InstallationState.HIBERNATION_REQUESTED
    )
    assert not valid_installation_transition(
        InstallationState.HIBERNATING, InstallationState.HIBERNATION_REQUESTED
    )
    assert valid_installation_transition(
        InstallationState.DELETION_PENDING, InstallationState.DELETION_REQUESTED
    )
    assert not valid_installation_transition(
        InstallationState.DELETED, InstallationState.DELETION_REQUESTED
    )
    assert valid_cluster_transition(ClusterState.RESIZE_FAILED, ClusterState.RESIZE_REQUESTED)
    assert not valid_cluster_transition(ClusterState.STABLE, ClusterState.STABLE)
    assert valid_backup_transition(BackupState.BACKUP_FAILED, BackupState.DELETION_REQUESTED)
    assert not valid_backup_transition(BackupState.DELETED, BackupState.DELETION_REQUESTED)
    assert valid_db_migration_transition(
        DBMigrationState.SUCCEEDED, DBMigrationState.COMMITTED
    )
    assert not valid_db_migration_transition(
        DBMigrationState.FAILED, DBMigrationState.ROLLBACK_REQUESTED
    )
