"""CLI command routing, exit codes, and JSON output."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from fleetstate.cli import CLIError, build_parser, main
from fleetstate.domain.models import Installation
from fleetstate.domain.states import InstallationState
from fleetstate.observability.logging import correlation_scope
from fleetstate.persistence.migrations import MIGRATION_STEPS, latest_version
from fleetstate.persistence.store import FleetStore, ResourceKind


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("FLEETSTATE_"):
            monkeypatch.delenv(name)


def _run_json(capsys: pytest.CaptureFixture[str], *argv: str) -> dict[str, object]:
    assert main(["--json", *argv]) == 0
    return json.loads(capsys.readouterr().out)


def _seed_installation(path: Path, name: str = "inst-a") -> tuple[FleetStore, Installation]:
    store = FleetStore.open(path)
    installation = store.installations.create(
        Installation(
            name=name,
            owner_id="owner-1",
            version="9.5.0",
            image="fleet/app",
            size="1000users",
            state=InstallationState.CREATION_REQUESTED,
        )
    )
    return store, installation


def test_dry_run_lists_every_step_without_creating_the_database(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "db" / "fleet.sqlite3"

    payload = _run_json(capsys, "--db", str(path), "migrate", "--dry-run")

    assert payload["current_version"] == "0.0.0"
    assert len(payload["pending"]) == len(MIGRATION_STEPS)  # type: ignore[arg-type]
    assert not path.exists()


def test_migrate_then_report_schema_version(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = str(tmp_path / "fleet.sqlite3")

    migrated = _run_json(capsys, "--db", path, "migrate")
    again = _run_json(capsys, "--db", path, "migrate")
    version = _run_json(capsys, "--db", path, "schema-version")

    assert migrated == {
        "command": "migrate",
        "dry_run": False,
        "from": "0.0.0",
        "to": latest_version(),
    }
    assert again["from"] == again["to"] == latest_version()
    assert version["recorded"] == version["supported"] == latest_version()


def test_schema_version_of_missing_database_fails(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["--db", str(tmp_path / "absent.sqlite3"), "schema-version"]) == 1
    assert "database not found" in capsys.readouterr().err


def test_pending_lists_unlocked_work(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "fleet.sqlite3"
    store, first = _seed_installation(path, "inst-a")
    _, second = _seed_installation(path, "inst-b")
    assert store.locks(ResourceKind.INSTALLATION).acquire(second.id, "worker-1")

    payload = _run_json(capsys, "--db", str(path), "pending", "installation")

    resources = payload["resources"]
    assert isinstance(resources, list)
    assert [resource["id"] for resource in resources] == [first.id]


def test_force_unlock_reports_whether_a_lock_was_held(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "fleet.sqlite3"
    store, installation = _seed_installation(path)
    store.locks(ResourceKind.INSTALLATION).acquire(installation.id, "crashed-worker")

    argv = ("--db", str(path), "force-unlock", "installation", installation.id)

    released = _run_json(capsys, *argv)
    repeated = _run_json(capsys, *argv)

    assert released["released"] is True
    assert repeated["released"] is False
    reloaded = store.installations.get(installation.id)
    assert reloaded is not None
    assert reloaded.lock_acquired_at == 0


def test_status_counts_installations(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "fleet.sqlite3"
    _seed_installation(path)

    payload = _run_json(capsys, "--db", str(path), "status")

    assert payload["schema_version"] == latest_version()
    assert payload["installations"]["total"] == 1  # type: ignore[index]
    assert payload["installations"]["updating"] == 1  # type: ignore[index]


def test_config_command_shows_redacted_effective_config(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (tmp_path / "fleetstate.toml").write_text(
        '[locking]\nowner_id = "supervisor-7"\n', encoding="utf-8"
    )

    payload = _run_json(capsys, "config")

    config = payload["config"]
    assert config["locking"]["owner_id"] == "supervisor-7"  # type: ignore[index]
    assert config["database"]["path"].endswith("state/fleetstate.sqlite3")  # type: ignore[index]


def test_invalid_config_exits_with_code_two(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (tmp_path / "fleetstate.toml").write_text(
        "[database]\nbusy_timeout_ms = -1\n", encoding="utf-8"
    )

    assert main(["status"]) == 2
    assert "database.busy_timeout_ms" in capsys.readouterr().err


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_cli_error_unwinds_through_correlation_scope() -> None:
    with pytest.raises(CLIError) as excinfo:
        with correlation_scope(owner="fleetstate-cli"):
            raise CLIError("database not found: x", exit_code=1)

    assert excinfo.value.exit_code == 1
    assert str(excinfo.value) == "database not found: x"
    assert excinfo.value.__traceback__ is not None


def test_schema_version_error_inside_handler_returns_exit_code(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["--json", "--db", str(tmp_path / "nope.sqlite3"), "schema-version"]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("error: database not found")
