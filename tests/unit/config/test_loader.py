"""
fleetstate — unit tests for the config loader

Covers precedence (CLI > env > file > defaults), env var naming and type
coercion, path normalization relative to the config file, and redacted dumps.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from fleetstate.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)
from fleetstate.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_apply_without_a_config_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["database"]["busy_timeout_ms"] == 5000
    expected = tmp_path.resolve() / "state" / "fleetstate.sqlite3"
    assert config["database"]["path"] == expected.as_posix()
    assert config["locking"]["owner_id"] == "fleetstate-cli"


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "fleetstate.toml",
        """
        [database]
        busy_timeout_ms = 100

        [locking]
        owner_id = "from-file"

        [observability]
        log_level = "DEBUG"
        """,
    )
    environ = {
        "FLEETSTATE_DATABASE_BUSY_TIMEOUT_MS": "200",
        "FLEETSTATE_LOCKING_OWNER_ID": "from-env",
    }

    config = load_config(
        config_path,
        environ=environ,
        cli_overrides={"locking.owner_id": "from-cli", "observability.log_level": None},
    )

    assert config["database"]["busy_timeout_ms"] == 200
    assert config["locking"]["owner_id"] == "from-cli"
    assert config["observability"]["log_level"] == "DEBUG"


def test_relative_paths_resolve_against_config_directory(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "fleetstate.toml",
        """
        [database]
        path = "../data/fleet.sqlite3"

        [observability]
        log_dir = "logs"
        """,
    )

    config = load_config(config_path, environ={})

    root = tmp_path.resolve()
    assert config["database"]["path"] == (root / "data" / "fleet.sqlite3").as_posix()
    assert config["observability"]["log_dir"] == (root / "conf" / "logs").as_posix()


def test_absolute_paths_are_kept(tmp_path: Path) -> None:
    target = (tmp_path.resolve() / "elsewhere" / "db.sqlite3").as_posix()

    config = load_config(
        _write_config(tmp_path / "fleetstate.toml", ""),
        environ={"FLEETSTATE_DATABASE_PATH": target},
    )

    assert config["database"]["path"] == target


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("true", True), ("YES", True), ("on", True), ("0", False), ("off", False)],
)
def test_boolean_env_coercion(tmp_path: Path, raw: str, expected: bool) -> None:
    config = load_config(
        _write_config(tmp_path / "fleetstate.toml", ""),
        environ={"FLEETSTATE_OBSERVABILITY_LOG_TO_STDOUT": raw},
    )

    assert config["observability"]["log_to_stdout"] is expected


@pytest.mark.parametrize(
    ("name", "raw", "message"),
    [
        (
            "FLEETSTATE_DATABASE_BUSY_TIMEOUT_MS",
            "soon",
            "FLEETSTATE_DATABASE_BUSY_TIMEOUT_MS -> database.busy_timeout_ms must be an integer",
        ),
        (
            "FLEETSTATE_OBSERVABILITY_JSON_LOGS",
            "maybe",
            "FLEETSTATE_OBSERVABILITY_JSON_LOGS -> observability.json_logs must be a boolean",
        ),
    ],
)
def test_bad_env_values_raise_load_errors(
    tmp_path: Path, name: str, raw: str, message: str
) -> None:
    with pytest.raises(ConfigLoadError, match=message):
        load_config(_write_config(tmp_path / "fleetstate.toml", ""), environ={name: raw})


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "fleetstate.toml", "[database\npath = 1")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_invalid_file_values_fail_validation(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "fleetstate.toml",
        """
        [database]
        busy_timeout_ms = "fast"
        retries = 3
        """,
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {"database.busy_timeout_ms", "database.retries"}


def test_bad_cli_override_key_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(
            _write_config(tmp_path / "fleetstate.toml", ""),
            environ={},
            cli_overrides={".": "x"},
        )


def test_env_names_follow_dotted_paths() -> None:
    assert env_name_for_path(("database", "busy_timeout_ms")) == (
        "FLEETSTATE_DATABASE_BUSY_TIMEOUT_MS"
    )


def test_dump_is_deterministic_compact_json(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "fleetstate.toml", "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert ", " not in first
    assert json.loads(first)["locking"] == {"owner_id": "fleetstate-cli"}
