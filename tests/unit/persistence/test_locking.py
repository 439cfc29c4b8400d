"""Row lock exclusion, release authorization, and batch semantics tests."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from fleetstate.persistence.locking import LockManager
from fleetstate.persistence.queries import CLUSTER_TABLE

from . import make_cluster, make_installation, make_store

if TYPE_CHECKING:
    from pathlib import Path

    from fleetstate.persistence.store import FleetStore

_LOCKING_LOGGER = "fleetstate.persistence.locking"
_OWNERS = ("worker-1", "worker-2", "worker-3")


def _cluster_ids(store: FleetStore, count: int) -> list[str]:
    return [store.clusters.create(make_cluster(name=f"c{i}")).id for i in range(count)]


def test_acquire_sets_owner_and_timestamp_and_excludes_other_owners(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)

    assert store.clusters.lock(cluster_id, "worker-1") is True
    assert store.clusters.lock(cluster_id, "worker-2") is False

    loaded = store.clusters.get(cluster_id)
    assert loaded is not None
    assert loaded.lock_acquired_by == "worker-1"
    assert loaded.lock_acquired_at > 0
    assert loaded.is_locked


def test_reacquiring_own_lock_reports_no_change(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)

    assert store.clusters.lock(cluster_id, "worker-1") is True
    assert store.clusters.lock(cluster_id, "worker-1") is False


def test_release_requires_ownership_unless_forced(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)
    store.clusters.lock(cluster_id, "worker-1")

    assert store.clusters.unlock(cluster_id, "worker-2") is False
    assert store.clusters.get(cluster_id).lock_acquired_by == "worker-1"  # type: ignore[union-attr]

    assert store.clusters.unlock(cluster_id, "worker-2", force=True) is True
    loaded = store.clusters.get(cluster_id)
    assert loaded is not None
    assert loaded.lock_acquired_by is None
    assert loaded.lock_acquired_at == 0


def test_release_is_idempotent(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)
    store.clusters.lock(cluster_id, "worker-1")

    assert store.clusters.unlock(cluster_id, "worker-1") is True
    assert store.clusters.unlock(cluster_id, "worker-1") is False
    assert store.clusters.unlock(cluster_id, "worker-1", force=True) is False


def test_unknown_id_is_contention_not_error(tmp_path: Path) -> None:
    store = make_store(tmp_path)

    assert store.clusters.lock("missing", "worker-1") is False
    assert store.clusters.unlock("missing", "worker-1") is False


def test_partial_batch_acquire_succeeds_and_warns(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    store = make_store(tmp_path)
    first, second = _cluster_ids(store, 2)
    store.clusters.lock(first, "worker-1")

    caplog.set_level(logging.WARNING, logger=_LOCKING_LOGGER)
    assert store.clusters.lock_many([first, second], "worker-2") is True

    warnings = [r for r in caplog.records if r.name == _LOCKING_LOGGER]
    assert len(warnings) == 1
    assert warnings[0].requested == 2  # type: ignore[attr-defined]
    assert warnings[0].affected == 1  # type: ignore[attr-defined]
    assert store.clusters.get(first).lock_acquired_by == "worker-1"  # type: ignore[union-attr]
    assert store.clusters.get(second).lock_acquired_by == "worker-2"  # type: ignore[union-attr]


def test_duplicate_ids_in_batch_are_collapsed(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)

    caplog.set_level(logging.WARNING, logger=_LOCKING_LOGGER)
    assert store.clusters.lock_many([cluster_id, cluster_id], "worker-1") is True
    assert store.clusters.unlock_many([cluster_id, cluster_id], "worker-1") is True

    assert [r for r in caplog.records if r.name == _LOCKING_LOGGER] == []


def test_batch_release_of_held_rows(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    cluster_ids = _cluster_ids(store, 3)

    assert store.clusters.lock_many(cluster_ids, "worker-1") is True
    assert store.clusters.unlock_many(cluster_ids, "worker-1") is True
    assert all(not store.clusters.get(c).is_locked for c in cluster_ids)  # type: ignore[union-attr]


@pytest.mark.parametrize(
    ("ids", "owner", "message"),
    [
        ([], "worker-1", "at least one id"),
        ([""], "worker-1", "non-empty strings"),
        (["x"], "", "lock owner"),
    ],
)
def test_invalid_lock_arguments_are_rejected(
    tmp_path: Path, ids: list[str], owner: str, message: str
) -> None:
    store = make_store(tmp_path)
    locks = store.locks("cluster")

    with pytest.raises(ValueError, match=message):
        locks.acquire(ids, owner)
    with pytest.raises(ValueError, match=message):
        locks.release(ids, owner)


def test_forced_release_does_not_need_an_owner(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)
    locks = store.locks("cluster")
    locks.acquire(cluster_id, "crashed-worker")

    assert locks.release(cluster_id, "", force=True) is True
    with pytest.raises(ValueError, match="lock owner"):
        locks.release(cluster_id, "")


def test_soft_deleted_rows_stay_lockable_and_releasable(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    installation = store.installations.create(make_installation())

    assert store.installations.lock(installation.id, "worker-1") is True
    store.installations.delete(installation.id)

    deleted = store.installations.get(installation.id)
    assert deleted is not None
    assert deleted.is_deleted
    assert deleted.lock_acquired_by == "worker-1"

    assert store.installations.unlock(installation.id, "worker-1") is True
    assert store.installations.lock(installation.id, "worker-2") is True
    relocked = store.installations.get(installation.id)
    assert relocked is not None
    assert relocked.lock_acquired_by == "worker-2"


def test_scheduling_lock_is_independent_of_row_lock(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    (cluster_id,) = _cluster_ids(store, 1)

    assert store.clusters.lock(cluster_id, "worker-1") is True
    assert store.clusters.lock_scheduling(cluster_id, "scheduler") is True
    assert store.clusters.lock_scheduling(cluster_id, "other-scheduler") is False

    loaded = store.clusters.get(cluster_id)
    assert loaded is not None
    assert loaded.lock_acquired_by == "worker-1"
    assert loaded.scheduling_lock_acquired_by == "scheduler"

    assert store.clusters.unlock_scheduling(cluster_id, "scheduler") is True
    assert store.clusters.get(cluster_id).lock_acquired_by == "worker-1"  # type: ignore[union-attr]


def test_lock_manager_works_inside_a_caller_transaction(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    installation = store.installations.create(make_installation())
    locks = LockManager(store.db, "Installation", kind="installation")

    with store.db.begin() as scope:
        assert locks.acquire(installation.id, "worker-1", conn=scope.conn) is True

    assert not store.installations.get(installation.id).is_locked  # type: ignore[union-attr]


def test_lock_manager_rejects_unsafe_column_names(tmp_path: Path) -> None:
    store = make_store(tmp_path)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        LockManager(store.db, CLUSTER_TABLE, lock_by_column="LockAcquiredBy; --")


_lock_ops = st.lists(
    st.tuples(
        st.sampled_from(("acquire", "release", "force")),
        st.sampled_from(_OWNERS),
    ),
    min_size=1,
    max_size=20,
)


@given(ops=_lock_ops)
@settings(
    max_examples=25,
    derandomize=True,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
def test_property_lock_sequences_match_single_holder_model(
    ops: list[tuple[str, str]], tmp_path: Path
) -> None:
    store = make_store(tmp_path, name=f"locks-{uuid4().hex}.sqlite3")
    (cluster_id,) = _cluster_ids(store, 1)
    holder: str | None = None

    for op, owner in ops:
        if op == "acquire":
            expected = holder is None
            assert store.clusters.lock(cluster_id, owner) is expected
            if expected:
                holder = owner
        elif op == "release":
            expected = holder == owner
            assert store.clusters.unlock(cluster_id, owner) is expected
            if expected:
                holder = None
        else:
            expected = holder is not None
            assert store.clusters.unlock(cluster_id, owner, force=True) is expected
            holder = None

        loaded = store.clusters.get(cluster_id)
        assert loaded is not None
        assert loaded.lock_acquired_by == holder
        assert loaded.is_locked is (holder is not None)
