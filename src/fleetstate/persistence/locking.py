"""Generic per-row mutual exclusion built on single-statement conditional writes.

A lock is the ``(LockAcquiredBy, LockAcquiredAt)`` column pair on a resource
row. Acquire sets both only on rows whose ``LockAcquiredAt`` is ``0``; release
clears both only on rows the caller owns (or on any locked row when forced).
Each operation is one ``UPDATE`` statement, so SQLite's write serialization is
the only thing needed for exclusion across processes.

Contention is not an error: both operations return ``False`` when no row
changed. Batches are best-effort; a partial batch still returns ``True`` and
logs a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from fleetstate.domain.ids import get_millis
from fleetstate.persistence.queries import UpdateQuery, eq, is_in, ne, validate_identifier

if TYPE_CHECKING:
    import sqlite3

    from fleetstate.persistence.state_db import StateDB

_LOGGER = logging.getLogger(__name__)


class LockManager:
    """Row lock primitive for one table and one ``(by, at)`` column pair."""

    def __init__(
        self,
        db: StateDB,
        table: str,
        *,
        lock_by_column: str = "LockAcquiredBy",
        lock_at_column: str = "LockAcquiredAt",
        kind: str | None = None,
    ) -> None:
        self._db = db
        self._table = validate_identifier(table)
        self._by = validate_identifier(lock_by_column)
        self._at = validate_identifier(lock_at_column)
        self._kind = kind or table

    @property
    def table(self) -> str:
        return self._table

    @property
    def kind(self) -> str:
        return self._kind

    def acquire(
        self,
        ids: str | Sequence[str],
        owner: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Lock every currently unlocked row among ``ids`` for ``owner``.

        Returns ``True`` iff at least one row changed. Re-acquiring a lock the
        caller already holds returns ``False``.
        """
        id_list = _normalize_ids(ids)
        _require_owner(owner)
        query = (
            UpdateQuery(self._table)
            .set(self._by, owner)
            .set(self._at, get_millis())
            .where(is_in("ID", id_list), eq(self._at, 0))
        )
        count = self._db.execute(
            query.compile(), conn=conn, operation=f"lock {self._kind}"
        )
        if 0 < count < len(id_list):
            _LOGGER.warning(
                "acquired lock on only part of the requested %s rows",
                self._kind,
                extra={
                    "table": self._table,
                    "owner": owner,
                    "requested": len(id_list),
                    "affected": count,
                },
            )
        return count > 0

    def release(
        self,
        ids: str | Sequence[str],
        owner: str,
        *,
        force: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Clear the lock on ``ids``.

        Without ``force`` only rows held by ``owner`` are released. With
        ``force`` every locked row among ``ids`` is released regardless of
        holder, which is how locks left by a crashed worker are recovered.
        """
        id_list = _normalize_ids(ids)
        if not force:
            _require_owner(owner)
        ownership = ne(self._at, 0) if force else eq(self._by, owner)
        query = (
            UpdateQuery(self._table)
            .set(self._by, None)
            .set(self._at, 0)
            .where(is_in("ID", id_list), ownership)
        )
        count = self._db.execute(
            query.compile(), conn=conn, operation=f"unlock {self._kind}"
        )
        if count < len(id_list):
            _LOGGER.warning(
                "released lock on fewer %s rows than requested",
                self._kind,
                extra={
                    "table": self._table,
                    "owner": owner,
                    "force": force,
                    "requested": len(id_list),
                    "affected": count,
                },
            )
        return count > 0


def _normalize_ids(ids: str | Sequence[str]) -> list[str]:
    id_list = [ids] if isinstance(ids, str) else list(ids)
    if not id_list:
        raise ValueError("at least one id is required")
    if any(not isinstance(item, str) or not item for item in id_list):
        raise ValueError("ids must be non-empty strings")
    return list(dict.fromkeys(id_list))


def _require_owner(owner: str) -> None:
    if not isinstance(owner, str) or not owner:
        raise ValueError("lock owner must be a non-empty string")


__all__ = ["LockManager"]
