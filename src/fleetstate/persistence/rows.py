"""Field mapping between domain dataclasses and table rows."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Final

from fleetstate.domain.models import (
    Cluster,
    DatabaseCluster,
    DatabaseSchema,
    Installation,
    InstallationBackup,
    InstallationDBMigrationOperation,
    InstallationDBRestorationOperation,
)
from fleetstate.persistence.codecs import (
    CodecError,
    decode_data_residence,
    decode_json_object,
    decode_multi_tenant,
    decode_str_list,
    decode_str_map,
    encode_data_residence,
    encode_json,
    encode_multi_tenant,
    encode_str_list,
    encode_str_map,
)
from fleetstate.persistence.queries import (
    BACKUP_TABLE,
    CLUSTER_TABLE,
    DATABASE_CLUSTER_TABLE,
    DATABASE_SCHEMA_TABLE,
    DB_MIGRATION_TABLE,
    DB_RESTORATION_TABLE,
    INSTALLATION_TABLE,
    SQLValue,
)
from fleetstate.persistence.state_db import RowValue

Row = Mapping[str, RowValue]

# Model type -> (table, human-readable kind used in error and log messages).
ENTITY_TABLES: Final[Mapping[type, tuple[str, str]]] = {
    Cluster: (CLUSTER_TABLE, "cluster"),
    Installation: (INSTALLATION_TABLE, "installation"),
    InstallationBackup: (BACKUP_TABLE, "installation backup"),
    InstallationDBMigrationOperation: (DB_MIGRATION_TABLE, "installation db migration operation"),
    InstallationDBRestorationOperation: (
        DB_RESTORATION_TABLE,
        "installation db restoration operation",
    ),
    DatabaseCluster: (DATABASE_CLUSTER_TABLE, "database cluster"),
    DatabaseSchema: (DATABASE_SCHEMA_TABLE, "database schema"),
}


def table_for(entity: object) -> tuple[str, str]:
    try:
        return ENTITY_TABLES[type(entity)]
    except KeyError:
        raise TypeError(f"unsupported entity type {type(entity).__name__}") from None


def _str(row: Row, column: str) -> str:
    value = row[column]
    if value is None:
        return ""
    if not isinstance(value, str):
        raise CodecError(f"{column}: expected text, got {type(value).__name__}")
    return value


def _opt_str(row: Row, column: str) -> str | None:
    value = row[column]
    if value is None:
        return None
    if not isinstance(value, str):
        raise CodecError(f"{column}: expected text, got {type(value).__name__}")
    return value


def _int(row: Row, column: str) -> int:
    value = row[column]
    if value is None:
        return 0
    if not isinstance(value, int):
        raise CodecError(f"{column}: expected integer, got {type(value).__name__}")
    return value


def _opt_int(row: Row, column: str) -> int | None:
    value = row[column]
    if value is None:
        return None
    if not isinstance(value, int):
        raise CodecError(f"{column}: expected integer, got {type(value).__name__}")
    return value


def _bool(row: Row, column: str) -> bool:
    return _int(row, column) != 0


def cluster_to_row(cluster: Cluster) -> dict[str, SQLValue]:
    return {
        "ID": cluster.id,
        "State": str(cluster.state),
        "Name": cluster.name,
        "Provider": cluster.provider,
        "Provisioner": cluster.provisioner,
        "ProviderMetadata": encode_json(cluster.provider_metadata),
        "ProvisionerMetadata": encode_json(cluster.provisioner_metadata),
        "UtilityMetadata": encode_json(cluster.utility_metadata),
        "Networking": cluster.networking,
        "AllowInstallations": int(cluster.allow_installations),
        "CreateAt": cluster.create_at,
        "DeleteAt": cluster.delete_at,
        "APISecurityLock": int(cluster.api_security_lock),
        "SchedulingLockAcquiredBy": cluster.scheduling_lock_acquired_by,
        "SchedulingLockAcquiredAt": cluster.scheduling_lock_acquired_at,
        "LockAcquiredBy": cluster.lock_acquired_by,
        "LockAcquiredAt": cluster.lock_acquired_at,
    }


def cluster_from_row(row: Row) -> Cluster:
    return Cluster(
        id=_str(row, "ID"),
        state=_str(row, "State"),
        name=_str(row, "Name"),
        provider=_str(row, "Provider"),
        provisioner=_str(row, "Provisioner"),
        provider_metadata=decode_json_object(row["ProviderMetadata"], column="ProviderMetadata"),
        provisioner_metadata=decode_json_object(
            row["ProvisionerMetadata"], column="ProvisionerMetadata"
        ),
        utility_metadata=decode_json_object(row["UtilityMetadata"], column="UtilityMetadata"),
        networking=_str(row, "Networking"),
        allow_installations=_bool(row, "AllowInstallations"),
        create_at=_int(row, "CreateAt"),
        delete_at=_int(row, "DeleteAt"),
        api_security_lock=_bool(row, "APISecurityLock"),
        scheduling_lock_acquired_by=_opt_str(row, "SchedulingLockAcquiredBy"),
        scheduling_lock_acquired_at=_int(row, "SchedulingLockAcquiredAt"),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


def installation_to_row(installation: Installation) -> dict[str, SQLValue]:
    return {
        "ID": installation.id,
        "OwnerID": installation.owner_id,
        "State": str(installation.state),
        "Name": installation.name,
        "GroupID": installation.group_id,
        "GroupSequence": installation.group_sequence,
        "Version": installation.version,
        "Image": installation.image,
        "DatabaseType": installation.database,
        "FilestoreType": installation.filestore,
        "License": installation.license,
        "Size": installation.size,
        "Affinity": installation.affinity,
        "CRVersion": installation.cr_version,
        "Env": encode_str_map(installation.env),
        "PriorityEnv": encode_str_map(installation.priority_env),
        "GroupOverrides": encode_str_map(installation.group_overrides),
        "CreateAt": installation.create_at,
        "DeleteAt": installation.delete_at,
        "DeletionPendingExpiry": installation.deletion_pending_expiry,
        "APISecurityLock": int(installation.api_security_lock),
        "DeletionLocked": int(installation.deletion_locked),
        "LockAcquiredBy": installation.lock_acquired_by,
        "LockAcquiredAt": installation.lock_acquired_at,
    }


def installation_from_row(row: Row) -> Installation:
    return Installation(
        id=_str(row, "ID"),
        owner_id=_str(row, "OwnerID"),
        state=_str(row, "State"),
        name=_str(row, "Name"),
        group_id=_opt_str(row, "GroupID"),
        group_sequence=_opt_int(row, "GroupSequence"),
        version=_str(row, "Version"),
        image=_str(row, "Image"),
        database=_str(row, "DatabaseType"),
        filestore=_str(row, "FilestoreType"),
        license=_str(row, "License"),
        size=_str(row, "Size"),
        affinity=_str(row, "Affinity"),
        cr_version=_str(row, "CRVersion"),
        env=decode_str_map(row["Env"], column="Env") or {},
        priority_env=decode_str_map(row["PriorityEnv"], column="PriorityEnv") or {},
        group_overrides=decode_str_map(row["GroupOverrides"], column="GroupOverrides"),
        create_at=_int(row, "CreateAt"),
        delete_at=_int(row, "DeleteAt"),
        deletion_pending_expiry=_int(row, "DeletionPendingExpiry"),
        api_security_lock=_bool(row, "APISecurityLock"),
        deletion_locked=_bool(row, "DeletionLocked"),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


def backup_to_row(backup: InstallationBackup) -> dict[str, SQLValue]:
    return {
        "ID": backup.id,
        "InstallationID": backup.installation_id,
        "State": str(backup.state),
        "ClusterInstallationID": backup.cluster_installation_id,
        "BackedUpDatabaseType": backup.backed_up_database_type,
        "DataResidence": encode_data_residence(backup.data_residence),
        "RequestAt": backup.request_at,
        "StartAt": backup.start_at,
        "DeleteAt": backup.delete_at,
        "APISecurityLock": int(backup.api_security_lock),
        "LockAcquiredBy": backup.lock_acquired_by,
        "LockAcquiredAt": backup.lock_acquired_at,
    }


def backup_from_row(row: Row) -> InstallationBackup:
    return InstallationBackup(
        id=_str(row, "ID"),
        installation_id=_str(row, "InstallationID"),
        state=_str(row, "State"),
        cluster_installation_id=_str(row, "ClusterInstallationID"),
        backed_up_database_type=_str(row, "BackedUpDatabaseType"),
        data_residence=decode_data_residence(row["DataResidence"]),
        request_at=_int(row, "RequestAt"),
        start_at=_int(row, "StartAt"),
        delete_at=_int(row, "DeleteAt"),
        api_security_lock=_bool(row, "APISecurityLock"),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


def db_migration_to_row(operation: InstallationDBMigrationOperation) -> dict[str, SQLValue]:
    return {
        "ID": operation.id,
        "InstallationID": operation.installation_id,
        "State": str(operation.state),
        "RequestAt": operation.request_at,
        "SourceDatabase": operation.source_database,
        "DestinationDatabase": operation.destination_database,
        "SourceMultiTenant": encode_multi_tenant(operation.source_multi_tenant),
        "DestinationMultiTenant": encode_multi_tenant(operation.destination_multi_tenant),
        "BackupID": operation.backup_id,
        "InstallationDBRestorationOperationID": operation.installation_db_restoration_operation_id,
        "CompleteAt": operation.complete_at,
        "DeleteAt": operation.delete_at,
        "LockAcquiredBy": operation.lock_acquired_by,
        "LockAcquiredAt": operation.lock_acquired_at,
    }


def db_migration_from_row(row: Row) -> InstallationDBMigrationOperation:
    return InstallationDBMigrationOperation(
        id=_str(row, "ID"),
        installation_id=_str(row, "InstallationID"),
        state=_str(row, "State"),
        request_at=_int(row, "RequestAt"),
        source_database=_str(row, "SourceDatabase"),
        destination_database=_str(row, "DestinationDatabase"),
        source_multi_tenant=decode_multi_tenant(
            row["SourceMultiTenant"], column="SourceMultiTenant"
        ),
        destination_multi_tenant=decode_multi_tenant(
            row["DestinationMultiTenant"], column="DestinationMultiTenant"
        ),
        backup_id=_str(row, "BackupID"),
        installation_db_restoration_operation_id=_str(
            row, "InstallationDBRestorationOperationID"
        ),
        complete_at=_int(row, "CompleteAt"),
        delete_at=_int(row, "DeleteAt"),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


def db_restoration_to_row(operation: InstallationDBRestorationOperation) -> dict[str, SQLValue]:
    return {
        "ID": operation.id,
        "InstallationID": operation.installation_id,
        "BackupID": operation.backup_id,
        "State": str(operation.state),
        "RequestAt": operation.request_at,
        "TargetInstallationState": str(operation.target_installation_state),
        "ClusterInstallationID": operation.cluster_installation_id,
        "CompleteAt": operation.complete_at,
        "DeleteAt": operation.delete_at,
        "LockAcquiredBy": operation.lock_acquired_by,
        "LockAcquiredAt": operation.lock_acquired_at,
    }


def db_restoration_from_row(row: Row) -> InstallationDBRestorationOperation:
    return InstallationDBRestorationOperation(
        id=_str(row, "ID"),
        installation_id=_str(row, "InstallationID"),
        backup_id=_str(row, "BackupID"),
        state=_str(row, "State"),
        request_at=_int(row, "RequestAt"),
        target_installation_state=_str(row, "TargetInstallationState"),
        cluster_installation_id=_str(row, "ClusterInstallationID"),
        complete_at=_int(row, "CompleteAt"),
        delete_at=_int(row, "DeleteAt"),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


def database_cluster_to_row(cluster: DatabaseCluster) -> dict[str, SQLValue]:
    return {
        "ID": cluster.id,
        "RawInstallationIDs": encode_str_list(cluster.installation_ids),
        "LockAcquiredBy": cluster.lock_acquired_by,
        "LockAcquiredAt": cluster.lock_acquired_at,
    }


def database_cluster_from_row(row: Row) -> DatabaseCluster:
    return DatabaseCluster(
        id=_str(row, "ID"),
        installation_ids=decode_str_list(row["RawInstallationIDs"]),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


def database_schema_to_row(schema: DatabaseSchema) -> dict[str, SQLValue]:
    return {
        "ID": schema.id,
        "LogicalDatabaseID": schema.logical_database_id,
        "InstallationID": schema.installation_id,
        "Name": schema.name,
        "CreateAt": schema.create_at,
        "DeleteAt": schema.delete_at,
        "LockAcquiredBy": schema.lock_acquired_by,
        "LockAcquiredAt": schema.lock_acquired_at,
    }


def database_schema_from_row(row: Row) -> DatabaseSchema:
    return DatabaseSchema(
        id=_str(row, "ID"),
        logical_database_id=_str(row, "LogicalDatabaseID"),
        installation_id=_str(row, "InstallationID"),
        name=_str(row, "Name"),
        create_at=_int(row, "CreateAt"),
        delete_at=_int(row, "DeleteAt"),
        lock_acquired_by=_opt_str(row, "LockAcquiredBy"),
        lock_acquired_at=_int(row, "LockAcquiredAt"),
    )


__all__ = [
    "ENTITY_TABLES",
    "Row",
    "backup_from_row",
    "backup_to_row",
    "cluster_from_row",
    "cluster_to_row",
    "database_cluster_from_row",
    "database_cluster_to_row",
    "database_schema_from_row",
    "database_schema_to_row",
    "db_migration_from_row",
    "db_migration_to_row",
    "db_restoration_from_row",
    "db_restoration_to_row",
    "installation_from_row",
    "installation_to_row",
    "table_for",
]
