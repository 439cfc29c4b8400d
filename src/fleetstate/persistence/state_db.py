"""SQLite connection lifecycle, transaction scoping, and store error taxonomy.

Connections are short-lived: every helper opens one, runs, and closes it, so
no process keeps a long-running lock on the database file. Multi-statement
work goes through :class:`TransactionScope`, which always rolls back on exit
unless :meth:`TransactionScope.commit` was reached.

This layer never retries. Busy/locked failures are surfaced as
:class:`StateDBBusyError` and the retry policy belongs to the caller.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType
from typing import Final, NoReturn

from fleetstate.persistence.queries import Query, SQLParams, SQLValue

RowValue = str | int | float | bytes | None
Statement = str | Query

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

_LOGGER = logging.getLogger(__name__)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when SQLite reports the database busy or locked. Transient."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDBIntegrityError(StateDBError):
    """Raised when a write violates a constraint (e.g. a duplicate ID)."""


class StateDBConflictError(StateDBError):
    """Raised when a conditional write finds its row gone or in another state."""


class TransactionScope:
    """Scoped handle to one atomic unit of work.

    Use as a context manager::

        with db.begin() as scope:
            scope.execute(...)
            scope.execute(...)
            scope.commit()

    Leaving the block without ``commit()`` (normally or by exception) rolls
    the transaction back. One scope wraps one operation; nesting raises.
    """

    def __init__(
        self,
        db: StateDB,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> None:
        self._db = db
        self._borrowed_conn = conn
        self._immediate = immediate
        self._conn: sqlite3.Connection | None = None
        self._committed = False
        self._finished = False

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StateDBError("transaction scope is not active")
        return self._conn

    @property
    def committed(self) -> bool:
        return self._committed

    def __enter__(self) -> TransactionScope:
        if self._conn is not None or self._finished:
            raise StateDBError("transaction scope cannot be re-entered")

        conn = self._borrowed_conn
        if conn is not None and conn.in_transaction:
            raise StateDBError(
                f"nested transaction scopes are not supported for {self._db.path}"
            )
        owned = conn is None
        if conn is None:
            conn = self._db.connect()

        begin_sql = "BEGIN IMMEDIATE" if self._immediate else "BEGIN"
        try:
            self._db._execute(conn, begin_sql, (), operation="begin transaction")
        except BaseException:
            if owned:
                conn.close()
            raise
        self._conn = conn
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.rollback_unless_committed()
        finally:
            conn = self._conn
            self._conn = None
            self._finished = True
            if conn is not None and self._borrowed_conn is None:
                conn.close()

    def commit(self) -> None:
        conn = self.conn
        if self._committed:
            raise StateDBError("transaction scope already committed")
        self._db._execute(conn, "COMMIT", (), operation="commit transaction")
        self._committed = True

    def rollback_unless_committed(self) -> None:
        """Roll back iff ``commit()`` never succeeded. Failures are logged, not raised."""
        conn = self._conn
        if self._committed or conn is None or not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            _LOGGER.exception(
                "rollback of uncommitted transaction failed",
                extra={"db_path": str(self._db.path)},
            )

    def execute(
        self,
        statement: Statement,
        params: SQLParams = (),
        *,
        operation: str = "execute statement",
    ) -> int:
        return self._db.execute(statement, params, conn=self.conn, operation=operation)

    def query_all(
        self,
        statement: Statement,
        params: SQLParams = (),
        *,
        operation: str = "query all",
    ) -> list[dict[str, RowValue]]:
        return self._db.query_all(statement, params, conn=self.conn, operation=operation)

    def query_one(
        self,
        statement: Statement,
        params: SQLParams = (),
        *,
        operation: str = "query one",
    ) -> dict[str, RowValue] | None:
        return self._db.query_one(statement, params, conn=self.conn, operation=operation)


class StateDB:
    """SQLite state DB handle with short-lived connections and actionable errors."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if isinstance(busy_timeout_ms, bool) or not isinstance(busy_timeout_ms, int):
            raise ValueError("busy_timeout_ms must be an integer")
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms

    @property
    def path(self) -> Path:
        return self._path

    @property
    def busy_timeout_ms(self) -> int:
        return self._busy_timeout_ms

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the state DB."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="connect")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def begin(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> TransactionScope:
        """Return a new :class:`TransactionScope`; enter it to start the transaction."""

        return TransactionScope(self, conn=conn, immediate=immediate)

    def migrate(self) -> str:
        """Apply pending schema migrations and return the resulting version."""

        from fleetstate.persistence import migrations

        return migrations.migrate(self)

    def schema_version(self) -> str:
        from fleetstate.persistence import migrations

        return migrations.current_version(self)

    def execute(
        self,
        statement: Statement,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
        operation: str = "execute statement",
    ) -> int:
        """Execute a parameterized statement and return the affected row count.

        Without ``conn`` the statement runs on its own connection in
        autocommit mode, which SQLite applies atomically.
        """

        sql, bound = _resolve_statement(statement, params)
        if conn is not None:
            return self._execute(conn, sql, bound, operation=operation).rowcount

        with self.connection() as owned_conn:
            return self._execute(owned_conn, sql, bound, operation=operation).rowcount

    def query_all(
        self,
        statement: Statement,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
        operation: str = "query all",
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as typed dictionaries."""

        sql, bound = _resolve_statement(statement, params)
        if conn is not None:
            cursor = self._execute(conn, sql, bound, operation=operation)
            return [_row_to_dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute(owned_conn, sql, bound, operation=operation)
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        statement: Statement,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
        operation: str = "query one",
    ) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a typed dictionary."""

        sql, bound = _resolve_statement(statement, params)
        if conn is not None:
            row = self._execute(conn, sql, bound, operation=operation).fetchone()
            return None if row is None else _row_to_dict(row)

        with self.connection() as owned_conn:
            row = self._execute(owned_conn, sql, bound, operation=operation).fetchone()
            return None if row is None else _row_to_dict(row)

    def backup(self, destination: str | Path) -> Path:
        """Create a consistent snapshot using SQLite backup API."""

        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as source:
            target = sqlite3.connect(
                destination_path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            try:
                source.backup(target)
                target.execute("PRAGMA journal_mode=WAL")
            except sqlite3.Error as exc:
                self._raise_actionable_error(exc, operation=f"backup to {destination_path}")
            finally:
                target.close()

        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(
            f"PRAGMA integrity_check({max_errors})", operation="integrity check"
        )
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="configure connection")
        if journal_row is None:
            raise StateDBError(f"failed to configure journal_mode for {self._path}")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StateDBError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: Sequence[SQLValue],
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as exc:
            raise StateDBIntegrityError(
                f"{operation} violated a constraint in {self._path}: {exc}"
            ) from exc
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation=operation)

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> NoReturn:
        if self._is_corruption_error(exc):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StateDB.integrity_check()` and restore from `StateDB.backup(...)` if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path}: {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _resolve_statement(statement: Statement, params: SQLParams) -> tuple[str, tuple[SQLValue, ...]]:
    if isinstance(statement, Query):
        if params:
            raise ValueError("params must not be passed alongside a compiled Query")
        return statement.sql, statement.params
    return statement, tuple(params)


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "RowValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBConflictError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBIntegrityError",
    "StateDBMigrationError",
    "Statement",
    "TransactionScope",
    "canonical_json",
]
