"""Immutable statement builders and the per-kind column catalogue.

Every builder is a frozen dataclass; modifiers return a new instance and
``compile()`` renders a parameterized :class:`Query`. Per-kind constructor
functions (``cluster_select()`` and friends) build a fresh description on each
call, so nothing shared is ever mutated between callers.

Identifiers are validated against a strict pattern because they are spliced
into SQL text; values always travel as bound parameters.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Final, Literal

from fleetstate.constants import ALL_PER_PAGE
from fleetstate.domain.models import Paging

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]

_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CLUSTER_TABLE: Final[str] = "Cluster"
INSTALLATION_TABLE: Final[str] = "Installation"
BACKUP_TABLE: Final[str] = "InstallationBackup"
DB_MIGRATION_TABLE: Final[str] = "InstallationDBMigrationOperation"
DB_RESTORATION_TABLE: Final[str] = "InstallationDBRestorationOperation"
DATABASE_CLUSTER_TABLE: Final[str] = "DatabaseCluster"
DATABASE_SCHEMA_TABLE: Final[str] = "DatabaseSchema"
SYSTEM_TABLE: Final[str] = "System"

CLUSTER_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "State",
    "Name",
    "Provider",
    "Provisioner",
    "ProviderMetadata",
    "ProvisionerMetadata",
    "UtilityMetadata",
    "Networking",
    "AllowInstallations",
    "CreateAt",
    "DeleteAt",
    "APISecurityLock",
    "SchedulingLockAcquiredBy",
    "SchedulingLockAcquiredAt",
    "LockAcquiredBy",
    "LockAcquiredAt",
)

INSTALLATION_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "OwnerID",
    "State",
    "Name",
    "GroupID",
    "GroupSequence",
    "Version",
    "Image",
    "DatabaseType",
    "FilestoreType",
    "License",
    "Size",
    "Affinity",
    "CRVersion",
    "Env",
    "PriorityEnv",
    "GroupOverrides",
    "CreateAt",
    "DeleteAt",
    "DeletionPendingExpiry",
    "APISecurityLock",
    "DeletionLocked",
    "LockAcquiredBy",
    "LockAcquiredAt",
)

BACKUP_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "InstallationID",
    "State",
    "ClusterInstallationID",
    "BackedUpDatabaseType",
    "DataResidence",
    "RequestAt",
    "StartAt",
    "DeleteAt",
    "APISecurityLock",
    "LockAcquiredBy",
    "LockAcquiredAt",
)

DB_MIGRATION_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "InstallationID",
    "State",
    "RequestAt",
    "SourceDatabase",
    "DestinationDatabase",
    "SourceMultiTenant",
    "DestinationMultiTenant",
    "BackupID",
    "InstallationDBRestorationOperationID",
    "CompleteAt",
    "DeleteAt",
    "LockAcquiredBy",
    "LockAcquiredAt",
)

DB_RESTORATION_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "InstallationID",
    "BackupID",
    "State",
    "RequestAt",
    "TargetInstallationState",
    "ClusterInstallationID",
    "CompleteAt",
    "DeleteAt",
    "LockAcquiredBy",
    "LockAcquiredAt",
)

DATABASE_CLUSTER_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "RawInstallationIDs",
    "LockAcquiredBy",
    "LockAcquiredAt",
)

DATABASE_SCHEMA_COLUMNS: Final[tuple[str, ...]] = (
    "ID",
    "LogicalDatabaseID",
    "InstallationID",
    "Name",
    "CreateAt",
    "DeleteAt",
    "LockAcquiredBy",
    "LockAcquiredAt",
)


def validate_identifier(name: str) -> str:
    """Return ``name`` unchanged if it is a safe SQL identifier, else raise ``ValueError``."""
    if not isinstance(name, str) or _IDENTIFIER_RE.fullmatch(name) is None:
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


@dataclass(frozen=True, slots=True)
class Query:
    """Compiled SQL text plus its bound parameters."""

    sql: str
    params: tuple[SQLValue, ...] = ()


@dataclass(frozen=True, slots=True)
class Condition:
    sql: str
    params: tuple[SQLValue, ...] = ()


def eq(column: str, value: SQLValue) -> Condition:
    return Condition(f"{validate_identifier(column)} = ?", (value,))


def ne(column: str, value: SQLValue) -> Condition:
    return Condition(f"{validate_identifier(column)} <> ?", (value,))


def like(column: str, pattern: str) -> Condition:
    return Condition(f"{validate_identifier(column)} LIKE ?", (pattern,))


def is_in(column: str, values: Iterable[SQLValue]) -> Condition:
    bound = tuple(values)
    if not bound:
        raise ValueError(f"IN condition on {column!r} needs at least one value")
    placeholders = ", ".join("?" for _ in bound)
    return Condition(f"{validate_identifier(column)} IN ({placeholders})", bound)


def _where_clause(conditions: Sequence[Condition]) -> tuple[str, tuple[SQLValue, ...]]:
    if not conditions:
        return "", ()
    params: list[SQLValue] = []
    for condition in conditions:
        params.extend(condition.params)
    return " WHERE " + " AND ".join(f"({c.sql})" for c in conditions), tuple(params)


@dataclass(frozen=True, slots=True)
class SelectQuery:
    table: str
    columns: tuple[str, ...] = ("*",)
    conditions: tuple[Condition, ...] = ()
    ordering: tuple[tuple[str, Literal["ASC", "DESC"]], ...] = ()
    group_by: tuple[str, ...] = ()
    count: bool = False
    limit: int | None = None
    offset: int | None = None

    def __post_init__(self) -> None:
        validate_identifier(self.table)
        for column in self.columns:
            if column != "*":
                validate_identifier(column)
        for column in self.group_by:
            validate_identifier(column)

    def where(self, *conditions: Condition) -> SelectQuery:
        return replace(self, conditions=self.conditions + conditions)

    def where_eq(self, column: str, value: SQLValue) -> SelectQuery:
        return self.where(eq(column, value))

    def where_in(self, column: str, values: Iterable[SQLValue]) -> SelectQuery:
        return self.where(is_in(column, values))

    def order_by(self, column: str, *, descending: bool = False) -> SelectQuery:
        direction: Literal["ASC", "DESC"] = "DESC" if descending else "ASC"
        return replace(self, ordering=self.ordering + ((validate_identifier(column), direction),))

    def paged(self, *, limit: int, offset: int = 0) -> SelectQuery:
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be >= 0")
        return replace(self, limit=limit, offset=offset)

    def counted(self, *group_columns: str) -> SelectQuery:
        """Turn this query into ``SELECT [group cols,] COUNT(*) AS Count``."""
        return replace(
            self,
            count=True,
            group_by=tuple(group_columns),
            ordering=(),
            limit=None,
            offset=None,
        )

    def compile(self) -> Query:
        if self.count:
            select_list = ", ".join((*self.group_by, "COUNT(*) AS Count"))
        else:
            select_list = ", ".join(self.columns)
        where_sql, params = _where_clause(self.conditions)
        sql = f"SELECT {select_list} FROM {self.table}{where_sql}"
        if self.group_by:
            sql += " GROUP BY " + ", ".join(self.group_by)
        if self.ordering:
            sql += " ORDER BY " + ", ".join(
                f"{col} {direction}" for col, direction in self.ordering
            )
        if self.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + (self.limit, self.offset or 0)
        return Query(sql, params)


@dataclass(frozen=True, slots=True)
class UpdateQuery:
    table: str
    assignments: tuple[tuple[str, SQLValue], ...] = ()
    conditions: tuple[Condition, ...] = ()

    def __post_init__(self) -> None:
        validate_identifier(self.table)
        for column, _ in self.assignments:
            validate_identifier(column)

    def set(self, column: str, value: SQLValue) -> UpdateQuery:
        return replace(self, assignments=self.assignments + ((column, value),))

    def set_many(self, values: Mapping[str, SQLValue]) -> UpdateQuery:
        return replace(self, assignments=self.assignments + tuple(values.items()))

    def where(self, *conditions: Condition) -> UpdateQuery:
        return replace(self, conditions=self.conditions + conditions)

    def where_eq(self, column: str, value: SQLValue) -> UpdateQuery:
        return self.where(eq(column, value))

    def where_in(self, column: str, values: Iterable[SQLValue]) -> UpdateQuery:
        return self.where(is_in(column, values))

    def compile(self) -> Query:
        if not self.assignments:
            raise ValueError(f"UPDATE {self.table} needs at least one assignment")
        if not self.conditions:
            raise ValueError(f"refusing to compile UPDATE {self.table} without a WHERE clause")
        set_sql = ", ".join(f"{column} = ?" for column, _ in self.assignments)
        where_sql, where_params = _where_clause(self.conditions)
        params = tuple(value for _, value in self.assignments) + where_params
        return Query(f"UPDATE {self.table} SET {set_sql}{where_sql}", params)


@dataclass(frozen=True, slots=True)
class InsertQuery:
    table: str
    values: tuple[tuple[str, SQLValue], ...] = ()

    def __post_init__(self) -> None:
        validate_identifier(self.table)
        for column, _ in self.values:
            validate_identifier(column)

    def set_many(self, values: Mapping[str, SQLValue]) -> InsertQuery:
        return replace(self, values=self.values + tuple(values.items()))

    def compile(self) -> Query:
        if not self.values:
            raise ValueError(f"INSERT INTO {self.table} needs at least one column")
        columns = ", ".join(column for column, _ in self.values)
        placeholders = ", ".join("?" for _ in self.values)
        return Query(
            f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders})",
            tuple(value for _, value in self.values),
        )


def apply_paging(query: SelectQuery, paging: Paging, *, tombstone: bool = True) -> SelectQuery:
    """Apply the ``DeleteAt = 0`` filter and the LIMIT/OFFSET window from ``paging``.

    Tables without a tombstone column pass ``tombstone=False``.
    """
    if tombstone and not paging.include_deleted:
        query = query.where_eq("DeleteAt", 0)
    if paging.per_page == ALL_PER_PAGE:
        return query
    return query.paged(limit=paging.per_page, offset=paging.page * paging.per_page)


def cluster_select() -> SelectQuery:
    return SelectQuery(CLUSTER_TABLE, CLUSTER_COLUMNS)


def installation_select() -> SelectQuery:
    return SelectQuery(INSTALLATION_TABLE, INSTALLATION_COLUMNS)


def backup_select() -> SelectQuery:
    return SelectQuery(BACKUP_TABLE, BACKUP_COLUMNS)


def db_migration_select() -> SelectQuery:
    return SelectQuery(DB_MIGRATION_TABLE, DB_MIGRATION_COLUMNS)


def db_restoration_select() -> SelectQuery:
    return SelectQuery(DB_RESTORATION_TABLE, DB_RESTORATION_COLUMNS)


def database_cluster_select() -> SelectQuery:
    return SelectQuery(DATABASE_CLUSTER_TABLE, DATABASE_CLUSTER_COLUMNS)


def database_schema_select() -> SelectQuery:
    return SelectQuery(DATABASE_SCHEMA_TABLE, DATABASE_SCHEMA_COLUMNS)


def update(table: str) -> UpdateQuery:
    return UpdateQuery(table)


def insert(table: str, values: Mapping[str, SQLValue]) -> InsertQuery:
    return InsertQuery(table).set_many(values)


__all__ = [
    "BACKUP_COLUMNS",
    "BACKUP_TABLE",
    "CLUSTER_COLUMNS",
    "CLUSTER_TABLE",
    "DATABASE_CLUSTER_COLUMNS",
    "DATABASE_CLUSTER_TABLE",
    "DATABASE_SCHEMA_COLUMNS",
    "DATABASE_SCHEMA_TABLE",
    "DB_MIGRATION_COLUMNS",
    "DB_MIGRATION_TABLE",
    "DB_RESTORATION_COLUMNS",
    "DB_RESTORATION_TABLE",
    "INSTALLATION_COLUMNS",
    "INSTALLATION_TABLE",
    "SYSTEM_TABLE",
    "Condition",
    "InsertQuery",
    "Query",
    "SQLParams",
    "SQLValue",
    "SelectQuery",
    "UpdateQuery",
    "apply_paging",
    "backup_select",
    "cluster_select",
    "database_cluster_select",
    "database_schema_select",
    "db_migration_select",
    "db_restoration_select",
    "eq",
    "insert",
    "installation_select",
    "is_in",
    "like",
    "ne",
    "update",
    "validate_identifier",
]
