"""Synchronous precondition checks evaluated before any store write."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fleetstate.domain.states import BackupState, InstallationState

if TYPE_CHECKING:
    from fleetstate.domain.models import Installation, InstallationBackup


class InvariantViolationError(ValueError):
    """Raised when a write is rejected because the resource is in a disallowed state."""


_RESTORABLE_INSTALLATION_STATES = frozenset(
    {InstallationState.HIBERNATING, InstallationState.DB_MIGRATION_IN_PROGRESS}
)


def ensure_saveable(installation: Installation) -> None:
    """Reject persisting an installation whose config was merged with its group."""
    if installation.config_merged_with_group:
        raise InvariantViolationError(
            f"unable to save installation {installation.id}: it has merged group config"
        )


def ensure_installation_ready_for_backup(installation: Installation) -> None:
    if installation.state not in _RESTORABLE_INSTALLATION_STATES:
        raise InvariantViolationError(
            "invalid installation state, only hibernated installations or installations "
            f"being migrated can be backed up, state is {installation.state!r}"
        )


def ensure_installation_ready_for_db_restoration(
    installation: Installation,
    backup: InstallationBackup,
) -> None:
    if installation.id != backup.installation_id:
        raise InvariantViolationError("backup belongs to a different installation")
    if backup.state != BackupState.BACKUP_SUCCEEDED:
        raise InvariantViolationError(
            f"only backups in succeeded state can be restored, the state is {backup.state!r}"
        )
    if backup.delete_at > 0:
        raise InvariantViolationError("backup files are deleted")
    if installation.state not in _RESTORABLE_INSTALLATION_STATES:
        raise InvariantViolationError(
            "invalid installation state, only hibernated installations can be restored, "
            f"state is {installation.state!r}"
        )


def ensure_installation_ready_for_db_migration(installation: Installation) -> None:
    if installation.state != InstallationState.HIBERNATING:
        raise InvariantViolationError(
            "only hibernated installations can be migrated, "
            f"installation state is {installation.state!r}"
        )


def determine_after_restoration_state(installation: Installation) -> str:
    """Return the installation state to apply once a restoration succeeds."""
    if installation.state in _RESTORABLE_INSTALLATION_STATES:
        return str(installation.state)
    raise InvariantViolationError(
        f"restoration is not supported for installation in state {installation.state!r}"
    )


__all__ = [
    "InvariantViolationError",
    "determine_after_restoration_state",
    "ensure_installation_ready_for_backup",
    "ensure_installation_ready_for_db_migration",
    "ensure_installation_ready_for_db_restoration",
    "ensure_saveable",
]
