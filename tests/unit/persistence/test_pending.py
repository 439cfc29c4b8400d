"""Pending work discovery ordering and lock exclusion tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fleetstate.domain.states import (
    BackupState,
    ClusterState,
    InstallationState,
)
from fleetstate.persistence.pending import PendingWorkSelector
from fleetstate.persistence.queries import cluster_select
from fleetstate.persistence.rows import cluster_from_row
from fleetstate.persistence.store import PENDING_WORK_KINDS, ResourceKind

from . import StepClock, make_backup, make_cluster, make_installation, make_store

if TYPE_CHECKING:
    from pathlib import Path


def test_pending_work_is_returned_oldest_first(tmp_path: Path) -> None:
    store = make_store(tmp_path, clock=StepClock(step=-1_000))
    # The clock runs backwards so creation order and timestamp order disagree.
    created = [store.installations.create(make_installation(name=f"i{n}")) for n in range(3)]

    pending = store.installations.get_unlocked_pending_work()

    assert [i.id for i in pending] == [i.id for i in reversed(created)]
    assert [i.create_at for i in pending] == sorted(i.create_at for i in created)


def test_terminal_and_idle_states_are_not_pending(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    waiting = store.installations.create(make_installation(name="waiting"))
    store.installations.create(make_installation(state=InstallationState.STABLE, name="s"))
    store.installations.create(make_installation(state=InstallationState.DELETED, name="d"))

    pending = store.installations.get_unlocked_pending_work()

    assert [i.id for i in pending] == [waiting.id]


def test_worker_handoff_scenario(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    installation = store.installations.create(make_installation())

    assert installation.id in {i.id for i in store.installations.get_unlocked_pending_work()}
    assert store.installations.lock(installation.id, "worker-1") is True
    assert installation.id not in {i.id for i in store.installations.get_unlocked_pending_work()}

    assert store.installations.unlock(installation.id, "worker-1") is True
    assert installation.id in {i.id for i in store.installations.get_unlocked_pending_work()}
    assert store.installations.lock(installation.id, "worker-2") is True


def test_request_ordered_kinds_use_request_timestamp(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    installation = store.installations.create(make_installation())
    first = store.backups.create(make_backup(installation_id=installation.id))
    second = store.backups.create(
        make_backup(installation_id=installation.id, state=BackupState.BACKUP_IN_PROGRESS)
    )
    store.backups.create(
        make_backup(installation_id=installation.id, state=BackupState.BACKUP_SUCCEEDED)
    )

    pending = store.backups.get_unlocked_pending_work()

    assert [b.id for b in pending] == [first.id, second.id]


def test_pending_deletion_is_selected_separately(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    doomed = store.installations.create(
        make_installation(state=InstallationState.DELETION_PENDING, name="doomed")
    )
    store.installations.create(make_installation(name="fresh"))

    assert [i.id for i in store.installations.get_unlocked_pending_deletion()] == [doomed.id]
    assert doomed.id not in {i.id for i in store.installations.get_unlocked_pending_work()}


def test_store_dispatches_pending_work_by_kind(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    cluster = store.clusters.create(make_cluster())

    assert [c.id for c in store.get_unlocked_pending_work("cluster")] == [cluster.id]
    for kind in PENDING_WORK_KINDS:
        assert isinstance(store.get_unlocked_pending_work(kind), list)

    with pytest.raises(ValueError, match="no pending work"):
        store.get_unlocked_pending_work(ResourceKind.DATABASE_CLUSTER)
    with pytest.raises(ValueError):
        store.get_unlocked_pending_work("not-a-kind")


def test_selector_requires_a_pending_state_set(tmp_path: Path) -> None:
    store = make_store(tmp_path)

    with pytest.raises(ValueError, match="must not be empty"):
        PendingWorkSelector(store.db, cluster_select, cluster_from_row, (), "CreateAt")


def test_selector_query_is_a_pure_read(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    selector = PendingWorkSelector(
        store.db,
        cluster_select,
        cluster_from_row,
        (ClusterState.CREATION_REQUESTED,),
        "CreateAt",
        kind="cluster",
    )
    store.clusters.create(make_cluster())

    first = selector.select()
    second = selector.select()

    assert first == second
    assert selector.states == ("creation-requested",)
    assert "LockAcquiredAt = ?" in selector.query().compile().sql
