"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

from fleetstate.domain import ids
from fleetstate.domain.models import (
    Cluster,
    DataResidence,
    Installation,
    InstallationBackup,
    InstallationDBMigrationOperation,
)
from fleetstate.domain.states import (
    BackupState,
    ClusterState,
    InstallationState,
)
from fleetstate.persistence.state_db import StateDB
from fleetstate.persistence.store import FleetStore

if TYPE_CHECKING:
    from pathlib import Path

BASE_MILLIS: Final[int] = 1_767_225_600_000


class StepClock:
    """Deterministic millisecond clock advancing by ``step`` on every read."""

    def __init__(self, start: int = BASE_MILLIS, step: int = 1_000) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


class SequentialIds:
    """ID factory producing valid, strictly increasing IDs."""

    def __init__(self, start: int = BASE_MILLIS) -> None:
        self._next = start

    def __call__(self) -> str:
        self._next += 1
        seed = self._next % 251 + 1
        return ids.new_id(timestamp_ms=self._next, randbytes=lambda size: bytes([seed]) * size)


def db_path(tmp_path: Path, name: str = "fleetstate.sqlite3") -> Path:
    return tmp_path / "state" / name


def make_store(
    tmp_path: Path,
    *,
    clock: StepClock | None = None,
    name: str = "fleetstate.sqlite3",
) -> FleetStore:
    return FleetStore(
        StateDB(db_path(tmp_path, name)),
        clock=clock or StepClock(),
        id_factory=SequentialIds(),
    )


def make_cluster(
    *,
    state: str = ClusterState.CREATION_REQUESTED,
    name: str = "cluster-a",
) -> Cluster:
    return Cluster(
        state=state,
        name=name,
        provider="aws",
        provisioner="kops",
        provider_metadata={"Zones": ["us-east-1a"]},
        networking="calico",
    )


def make_installation(
    *,
    state: str = InstallationState.CREATION_REQUESTED,
    owner_id: str = "owner-1",
    name: str = "inst-a",
    group_id: str | None = None,
) -> Installation:
    return Installation(
        owner_id=owner_id,
        state=state,
        name=name,
        group_id=group_id,
        version="9.5.0",
        image="fleet/app",
        database="perseus",
        filestore="bifrost",
        size="1000users",
        affinity="multitenant",
        env={"LOG_LEVEL": "info"},
    )


def make_backup(
    *,
    installation_id: str = "",
    state: str = BackupState.BACKUP_REQUESTED,
) -> InstallationBackup:
    return InstallationBackup(
        installation_id=installation_id,
        state=state,
        backed_up_database_type="perseus",
        data_residence=DataResidence(
            region="us-east-1",
            bucket="fleet-backups",
            path_prefix="installations",
            object_key="backup.tar.gz",
        ),
    )


def make_db_migration(
    *,
    source: str = "multi-tenant-rds-postgres",
    destination: str = "perseus",
) -> InstallationDBMigrationOperation:
    return InstallationDBMigrationOperation(
        source_database=source,
        destination_database=destination,
    )


def create_hibernating_installation(store: FleetStore, name: str = "inst-h") -> Installation:
    return store.installations.create(
        make_installation(state=InstallationState.HIBERNATING, name=name)
    )


__all__ = [
    "BASE_MILLIS",
    "SequentialIds",
    "StepClock",
    "create_hibernating_installation",
    "db_path",
    "make_backup",
    "make_cluster",
    "make_db_migration",
    "make_installation",
    "make_store",
]
