"""Read-only discovery of unlocked resources awaiting their next state-machine step."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from fleetstate.domain.states import state_values
from fleetstate.persistence.queries import SelectQuery, validate_identifier

if TYPE_CHECKING:
    import sqlite3

    from fleetstate.persistence.state_db import RowValue, StateDB

T = TypeVar("T")


class PendingWorkSelector(Generic[T]):
    """Select live, unlocked rows whose State is in a pending set, oldest first.

    Selection makes no locking guarantee. Two workers may both see the same
    candidate; only one of them will win the subsequent ``LockManager.acquire``
    and the other should simply move on to the next candidate.
    """

    def __init__(
        self,
        db: StateDB,
        query_factory: Callable[[], SelectQuery],
        decoder: Callable[[Mapping[str, RowValue]], T],
        pending_states: Iterable[StrEnum],
        order_column: str,
        *,
        kind: str = "resource",
    ) -> None:
        self._db = db
        self._query_factory = query_factory
        self._decoder = decoder
        self._states = state_values(pending_states)
        if not self._states:
            raise ValueError(f"{kind}: pending state set must not be empty")
        self._order_column = validate_identifier(order_column)
        self._kind = kind

    @property
    def states(self) -> tuple[str, ...]:
        return self._states

    def query(self) -> SelectQuery:
        return (
            self._query_factory()
            .where_in("State", self._states)
            .where_eq("LockAcquiredAt", 0)
            .order_by(self._order_column)
        )

    def select(self, *, conn: sqlite3.Connection | None = None) -> list[T]:
        rows = self._db.query_all(
            self.query().compile(),
            conn=conn,
            operation=f"select unlocked pending {self._kind}",
        )
        return [self._decoder(row) for row in rows]


__all__ = ["PendingWorkSelector"]
