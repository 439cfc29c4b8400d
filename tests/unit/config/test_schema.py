"""
fleetstate — unit tests for config schema validation

Covers defaults, structured issues with dotted paths, schema version guidance,
deterministic merging, and redaction.
"""

from __future__ import annotations

import pytest

from fleetstate.config.schema import (
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issues(config: object) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_defaults_are_valid_and_copied() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config == DEFAULT_CONFIG

    copy = default_config()
    copy["database"]["busy_timeout_ms"] = 1
    assert DEFAULT_CONFIG["database"]["busy_timeout_ms"] == 5000


def test_every_problem_is_reported_with_its_path() -> None:
    config = merge_config(
        default_config(),
        {
            "database": {"busy_timeout_ms": -5, "pool": 3},
            "locking": {"owner_id": "has spaces"},
            "observability": {"log_level": "TRACE", "json_logs": "yes"},
            "extra": {},
        },
    )

    issues = _issues(config)

    assert issues == {
        "database.busy_timeout_ms": "must be >= 0",
        "database.pool": "unknown field",
        "locking.owner_id": "may only contain letters, digits and _ . : @ -",
        "observability.log_level": (
            "invalid value 'TRACE'; expected one of: DEBUG, ERROR, INFO, WARNING"
        ),
        "observability.json_logs": "expected boolean, got str",
        "extra": "unknown field",
    }


def test_missing_sections_and_fields_are_reported() -> None:
    config = default_config()
    del config["locking"]  # type: ignore[misc]
    del config["database"]["path"]  # type: ignore[misc]

    issues = _issues(config)

    assert issues["locking"] == "missing required field"
    assert issues["database.path"] == "missing required field"


@pytest.mark.parametrize("value", [True, "5000", 1.5])
def test_integers_reject_bools_strings_and_floats(value: object) -> None:
    config = merge_config(default_config(), {"database": {"busy_timeout_ms": value}})

    assert _issues(config)["database.busy_timeout_ms"].startswith("expected integer")


def test_non_mapping_root_is_rejected() -> None:
    assert _issues(["not", "a", "mapping"]) == {"<root>": "expected object, got list"}


def test_schema_version_mismatch_carries_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})

    assert "upgrade the fleetstate package" in _issues(config)["meta.schema_version"]
    assert "older than supported" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    config = merge_config(default_config(), {"database": {"path": "  "}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert "invalid config:\n- database.path: must not be empty" in str(excinfo.value)
    assert excinfo.value.issues[0].path == "database.path"


def test_merge_is_deep_and_does_not_mutate_inputs() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
    overlay = {"a": {"b": 2}, "e": {"f": True}}

    merged = merge_config(base, overlay)
    merged["a"]["c"].append(3)

    assert merged == {"a": {"b": 2, "c": [1, 2, 3]}, "d": 1, "e": {"f": True}}
    assert base == {"a": {"b": 1, "c": [1, 2]}, "d": 1}


def test_redaction_masks_sensitive_keys_at_any_depth() -> None:
    redacted = redact_config(
        {
            "database": {"path": "/var/db", "password": "hunter2"},
            "providers": [{"apiToken": "abc", "name": "p"}],
            "client_secret": "s",
            "tokenizer": "kept",
        }
    )

    assert redacted == {
        "client_secret": "<redacted>",
        "database": {"password": "<redacted>", "path": "/var/db"},
        "providers": [{"apiToken": "<redacted>", "name": "p"}],
        "tokenizer": "kept",
    }
    assert redact_config("not a mapping") == {}
