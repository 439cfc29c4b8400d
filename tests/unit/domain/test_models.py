"""Domain model helper and guard tests."""

from __future__ import annotations

import pytest

from fleetstate.domain.guards import (
    InvariantViolationError,
    determine_after_restoration_state,
    ensure_installation_ready_for_backup,
    ensure_installation_ready_for_db_migration,
    ensure_installation_ready_for_db_restoration,
    ensure_saveable,
)
from fleetstate.domain.models import (
    Cluster,
    DatabaseCluster,
    Installation,
    InstallationBackup,
)
from fleetstate.domain.states import BackupState, InstallationState


def _installation(state: str = InstallationState.HIBERNATING) -> Installation:
    return Installation(
        id="inst-1",
        state=state,
        group_id="g1",
        version="9.5.0",
        image="fleet/app",
        env={"A": "1", "B": "2"},
    )


def test_lock_and_tombstone_views() -> None:
    cluster = Cluster(id="c1")
    assert not cluster.is_locked
    assert not cluster.is_deleted

    cluster.lock_acquired_at = 5
    cluster.delete_at = 6
    assert cluster.is_locked
    assert cluster.is_deleted


def test_merge_with_group_records_overridden_values() -> None:
    installation = _installation()

    installation.merge_with_group(
        "g1", sequence=4, version="10.0.0", image="fleet/app", env={"A": "9", "C": "3"}
    )

    assert installation.version == "10.0.0"
    assert installation.env == {"A": "9", "B": "2", "C": "3"}
    assert installation.group_overrides == {
        "Installation Version": "9.5.0",
        "Installation Env: A": "1",
    }
    assert installation.group_sequence == 4
    assert installation.config_merged_with_group
    assert installation.config_merge_group_sequence == 4


def test_merge_with_group_rejects_foreign_group() -> None:
    installation = _installation()

    with pytest.raises(ValueError, match="belongs to group"):
        installation.merge_with_group("g2", sequence=1)
    with pytest.raises(ValueError, match="must not be empty"):
        installation.merge_with_group("", sequence=1)
    assert not installation.config_merged_with_group


def test_merge_flags_do_not_affect_equality() -> None:
    merged = _installation()
    merged.merge_with_group("g1", sequence=0)
    merged.group_sequence = None

    assert merged == _installation()
    assert merged.is_in_group


def test_database_cluster_membership() -> None:
    cluster = DatabaseCluster(id="db-1")

    cluster.add_installation("i1")
    cluster.add_installation("i1")
    cluster.add_installation("i2")

    assert cluster.installation_ids == ["i1", "i2"]
    assert cluster.contains("i2")
    assert cluster.remove_installation("i1")
    assert not cluster.contains("i1")


def test_saveable_guard() -> None:
    installation = _installation()
    ensure_saveable(installation)

    installation.merge_with_group("g1", sequence=1)
    with pytest.raises(InvariantViolationError, match="merged group config"):
        ensure_saveable(installation)


@pytest.mark.parametrize(
    ("state", "allowed"),
    [
        (InstallationState.HIBERNATING, True),
        (InstallationState.DB_MIGRATION_IN_PROGRESS, True),
        (InstallationState.STABLE, False),
        (InstallationState.DB_RESTORATION_IN_PROGRESS, False),
    ],
)
def test_backup_guard_and_restoration_target(state: str, allowed: bool) -> None:
    installation = _installation(state)

    if allowed:
        ensure_installation_ready_for_backup(installation)
        assert determine_after_restoration_state(installation) == state
    else:
        with pytest.raises(InvariantViolationError):
            ensure_installation_ready_for_backup(installation)
        with pytest.raises(InvariantViolationError, match="not supported"):
            determine_after_restoration_state(installation)


def test_db_migration_guard_requires_hibernation() -> None:
    ensure_installation_ready_for_db_migration(_installation())

    with pytest.raises(InvariantViolationError, match="only hibernated"):
        ensure_installation_ready_for_db_migration(
            _installation(InstallationState.DB_MIGRATION_IN_PROGRESS)
        )


def test_restoration_guard_checks_backup_before_installation_state() -> None:
    installation = _installation(InstallationState.STABLE)
    backup = InstallationBackup(
        id="b1", installation_id="inst-1", state=BackupState.BACKUP_IN_PROGRESS
    )

    with pytest.raises(InvariantViolationError, match="succeeded state"):
        ensure_installation_ready_for_db_restoration(installation, backup)

    backup.state = BackupState.BACKUP_SUCCEEDED
    with pytest.raises(InvariantViolationError, match="only hibernated installations"):
        ensure_installation_ready_for_db_restoration(installation, backup)

    ensure_installation_ready_for_db_restoration(_installation(), backup)
