"""Dataclass domain models for coordinated fleet resources.

Every coordinated row carries the same envelope: an immutable ``id``, a
``state`` drawn from the per-kind sets in :mod:`fleetstate.domain.states`, a
creation timestamp (``create_at`` or ``request_at``), a ``delete_at`` tombstone
and the ``lock_acquired_by``/``lock_acquired_at`` pair. All timestamps are
milliseconds since the epoch; ``0`` means "unset".

Operation models reference their parents by plain ID strings only.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from fleetstate.constants import ALL_PER_PAGE


@dataclass(frozen=True, slots=True)
class Paging:
    """Page selection shared by every listing filter."""

    page: int = 0
    per_page: int = ALL_PER_PAGE
    include_deleted: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.page, bool) or not isinstance(self.page, int) or self.page < 0:
            raise ValueError(f"Paging.page must be an integer >= 0, got {self.page!r}")
        if isinstance(self.per_page, bool) or not isinstance(self.per_page, int):
            raise ValueError(f"Paging.per_page must be an integer, got {self.per_page!r}")
        if self.per_page < 0 and self.per_page != ALL_PER_PAGE:
            raise ValueError(
                f"Paging.per_page must be >= 0 or ALL_PER_PAGE ({ALL_PER_PAGE}), "
                f"got {self.per_page}"
            )

    @classmethod
    def all_pages_not_deleted(cls) -> Paging:
        return cls(page=0, per_page=ALL_PER_PAGE, include_deleted=False)

    @classmethod
    def all_pages_with_deleted(cls) -> Paging:
        return cls(page=0, per_page=ALL_PER_PAGE, include_deleted=True)


class _Lockable:
    """Mixin with derived views over the lock/tombstone envelope columns."""

    __slots__ = ()

    lock_acquired_by: str | None
    lock_acquired_at: int
    delete_at: int

    @property
    def is_locked(self) -> bool:
        return self.lock_acquired_at != 0

    @property
    def is_deleted(self) -> bool:
        return self.delete_at != 0


@dataclass(slots=True)
class Cluster(_Lockable):
    id: str = ""
    state: str = ""
    name: str = ""
    provider: str = ""
    provisioner: str = ""
    provider_metadata: dict[str, object] | None = None
    provisioner_metadata: dict[str, object] | None = None
    utility_metadata: dict[str, object] | None = None
    networking: str = ""
    allow_installations: bool = True
    create_at: int = 0
    delete_at: int = 0
    api_security_lock: bool = False
    scheduling_lock_acquired_by: str | None = None
    scheduling_lock_acquired_at: int = 0
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0


@dataclass(slots=True)
class Installation(_Lockable):
    id: str = ""
    owner_id: str = ""
    state: str = ""
    name: str = ""
    group_id: str | None = None
    group_sequence: int | None = None
    version: str = ""
    image: str = ""
    database: str = ""
    filestore: str = ""
    license: str = ""
    size: str = ""
    affinity: str = ""
    cr_version: str = ""
    env: dict[str, str] = field(default_factory=dict)
    priority_env: dict[str, str] = field(default_factory=dict)
    group_overrides: dict[str, str] | None = None
    create_at: int = 0
    delete_at: int = 0
    deletion_pending_expiry: int = 0
    api_security_lock: bool = False
    deletion_locked: bool = False
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0
    # Set once group configuration has been layered over this object. Never
    # persisted; a merged installation must not be saved back.
    config_merged_with_group: bool = field(default=False, compare=False, repr=False)
    config_merge_group_sequence: int = field(default=0, compare=False, repr=False)

    @property
    def is_in_group(self) -> bool:
        return self.group_id is not None and self.group_id != ""

    def merge_with_group(
        self,
        group_id: str,
        *,
        sequence: int,
        version: str | None = None,
        image: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Overlay group-level configuration onto this in-memory installation.

        Only the values the group sets are applied; the previous values are
        recorded in ``group_overrides`` so callers can display what changed.
        """

        if not group_id:
            raise ValueError("group_id must not be empty")
        if self.group_id != group_id:
            raise ValueError(
                f"installation {self.id} belongs to group {self.group_id!r}, not {group_id!r}"
            )

        overrides: dict[str, str] = dict(self.group_overrides or {})
        if version is not None and version != self.version:
            overrides["Installation Version"] = self.version
            self.version = version
        if image is not None and image != self.image:
            overrides["Installation Image"] = self.image
            self.image = image
        for key, value in sorted((env or {}).items()):
            previous = self.env.get(key)
            if previous is not None and previous != value:
                overrides[f"Installation Env: {key}"] = previous
            self.env[key] = value

        self.group_overrides = overrides or None
        self.group_sequence = sequence
        self.config_merged_with_group = True
        self.config_merge_group_sequence = sequence


@dataclass(frozen=True, slots=True)
class DataResidence:
    """Location of backup files in object storage."""

    region: str = ""
    url: str = ""
    bucket: str = ""
    path_prefix: str = ""
    object_key: str = ""

    def full_path(self) -> str:
        return str(PurePosixPath(self.path_prefix) / self.object_key)


@dataclass(slots=True)
class InstallationBackup(_Lockable):
    id: str = ""
    installation_id: str = ""
    state: str = ""
    cluster_installation_id: str = ""
    backed_up_database_type: str = ""
    data_residence: DataResidence | None = None
    request_at: int = 0
    start_at: int = 0
    delete_at: int = 0
    api_security_lock: bool = False
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0


@dataclass(frozen=True, slots=True)
class MultiTenantDBMigrationData:
    database_id: str


@dataclass(slots=True)
class InstallationDBMigrationOperation(_Lockable):
    id: str = ""
    installation_id: str = ""
    state: str = ""
    request_at: int = 0
    source_database: str = ""
    destination_database: str = ""
    source_multi_tenant: MultiTenantDBMigrationData | None = None
    destination_multi_tenant: MultiTenantDBMigrationData | None = None
    backup_id: str = ""
    installation_db_restoration_operation_id: str = ""
    complete_at: int = 0
    delete_at: int = 0
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0


@dataclass(slots=True)
class InstallationDBRestorationOperation(_Lockable):
    id: str = ""
    installation_id: str = ""
    backup_id: str = ""
    state: str = ""
    request_at: int = 0
    # Installation state applied once the restoration succeeds.
    target_installation_state: str = ""
    cluster_installation_id: str = ""
    complete_at: int = 0
    delete_at: int = 0
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0


@dataclass(slots=True)
class DatabaseCluster:
    """Shared database host; tracks the installations placed on it."""

    id: str = ""
    installation_ids: list[str] = field(default_factory=list)
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0

    @property
    def is_locked(self) -> bool:
        return self.lock_acquired_at != 0

    def add_installation(self, installation_id: str) -> None:
        if installation_id not in self.installation_ids:
            self.installation_ids.append(installation_id)

    def remove_installation(self, installation_id: str) -> bool:
        if installation_id not in self.installation_ids:
            return False
        self.installation_ids.remove(installation_id)
        return True

    def contains(self, installation_id: str) -> bool:
        return installation_id in self.installation_ids


@dataclass(slots=True)
class DatabaseSchema(_Lockable):
    id: str = ""
    logical_database_id: str = ""
    installation_id: str = ""
    name: str = ""
    create_at: int = 0
    delete_at: int = 0
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0


@dataclass(frozen=True, slots=True)
class ClusterFilter:
    paging: Paging = field(default_factory=Paging)


@dataclass(frozen=True, slots=True)
class InstallationFilter:
    paging: Paging = field(default_factory=Paging)
    installation_ids: tuple[str, ...] = ()
    owner_id: str = ""
    group_id: str = ""
    state: str = ""
    name: str = ""


@dataclass(frozen=True, slots=True)
class InstallationBackupFilter:
    paging: Paging = field(default_factory=Paging)
    ids: tuple[str, ...] = ()
    installation_id: str = ""
    cluster_installation_id: str = ""
    states: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DBMigrationFilter:
    paging: Paging = field(default_factory=Paging)
    ids: tuple[str, ...] = ()
    installation_id: str = ""
    states: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DBRestorationFilter:
    paging: Paging = field(default_factory=Paging)
    ids: tuple[str, ...] = ()
    installation_id: str = ""
    cluster_installation_id: str = ""
    states: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DatabaseClusterFilter:
    # DatabaseCluster rows carry no tombstone; include_deleted is ignored.
    paging: Paging = field(default_factory=Paging)
    installation_id: str = ""
    # Drop clusters already hosting more than this many installations; 0 disables.
    num_of_installations_limit: int = 0


@dataclass(frozen=True, slots=True)
class DatabaseSchemaFilter:
    paging: Paging = field(default_factory=Paging)
    logical_database_id: str = ""
    installation_id: str = ""


@dataclass(frozen=True, slots=True)
class InstallationsStatus:
    total: int
    stable: int
    hibernating: int
    pending_deletion: int
    updating: int


__all__ = [
    "Cluster",
    "ClusterFilter",
    "DBMigrationFilter",
    "DBRestorationFilter",
    "DataResidence",
    "DatabaseCluster",
    "DatabaseClusterFilter",
    "DatabaseSchema",
    "DatabaseSchemaFilter",
    "Installation",
    "InstallationBackup",
    "InstallationBackupFilter",
    "InstallationDBMigrationOperation",
    "InstallationDBRestorationOperation",
    "InstallationFilter",
    "InstallationsStatus",
    "MultiTenantDBMigrationData",
    "Paging",
]
