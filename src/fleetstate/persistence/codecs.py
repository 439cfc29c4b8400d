"""Explicit encode/decode adapters between domain values and TEXT blob columns.

Encoders return ``None`` for absent values so the column stays NULL; decoders
accept ``None``/empty text and raise :class:`CodecError` naming the column on
malformed input.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence

from fleetstate.domain.models import DataResidence, MultiTenantDBMigrationData
from fleetstate.persistence.state_db import canonical_json


class CodecError(ValueError):
    """Raised when a persisted blob cannot be decoded into its domain value."""


def encode_json(value: object) -> str | None:
    if value is None:
        return None
    return canonical_json(value)


def decode_json(raw: object, *, column: str = "blob") -> object:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        raise CodecError(f"{column}: expected JSON text, got {type(raw).__name__}")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CodecError(f"{column}: invalid JSON ({exc.msg} at position {exc.pos})") from exc


def decode_json_object(raw: object, *, column: str) -> dict[str, object] | None:
    decoded = decode_json(raw, column=column)
    if decoded is None:
        return None
    if not isinstance(decoded, dict):
        raise CodecError(f"{column}: expected a JSON object, got {type(decoded).__name__}")
    return decoded


def encode_str_list(values: Sequence[str]) -> str:
    return canonical_json(list(values))


def decode_str_list(raw: object, *, column: str = "RawInstallationIDs") -> list[str]:
    decoded = decode_json(raw, column=column)
    if decoded is None:
        return []
    if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
        raise CodecError(f"{column}: expected a JSON array of strings")
    return list(decoded)


def encode_str_map(values: Mapping[str, str] | None) -> str | None:
    if values is None:
        return None
    return canonical_json(dict(values))


def decode_str_map(raw: object, *, column: str) -> dict[str, str] | None:
    decoded = decode_json_object(raw, column=column)
    if decoded is None:
        return None
    out: dict[str, str] = {}
    for key, value in decoded.items():
        if not isinstance(value, str):
            raise CodecError(f"{column}.{key}: expected a string value")
        out[key] = value
    return out


def encode_data_residence(value: DataResidence | None) -> str | None:
    if value is None:
        return None
    return canonical_json(
        {
            "Region": value.region,
            "URL": value.url,
            "Bucket": value.bucket,
            "PathPrefix": value.path_prefix,
            "ObjectKey": value.object_key,
        }
    )


def decode_data_residence(raw: object, *, column: str = "DataResidence") -> DataResidence | None:
    decoded = decode_json_object(raw, column=column)
    if decoded is None:
        return None
    fields: dict[str, str] = {}
    for key, attr in (
        ("Region", "region"),
        ("URL", "url"),
        ("Bucket", "bucket"),
        ("PathPrefix", "path_prefix"),
        ("ObjectKey", "object_key"),
    ):
        value = decoded.get(key, "")
        if not isinstance(value, str):
            raise CodecError(f"{column}.{key}: expected a string")
        fields[attr] = value
    return DataResidence(**fields)


def encode_multi_tenant(value: MultiTenantDBMigrationData | None) -> str | None:
    if value is None:
        return None
    return canonical_json({"DatabaseID": value.database_id})


def decode_multi_tenant(raw: object, *, column: str) -> MultiTenantDBMigrationData | None:
    decoded = decode_json_object(raw, column=column)
    if decoded is None:
        return None
    database_id = decoded.get("DatabaseID")
    if not isinstance(database_id, str):
        raise CodecError(f"{column}.DatabaseID: expected a string")
    return MultiTenantDBMigrationData(database_id=database_id)


__all__ = [
    "CodecError",
    "decode_data_residence",
    "decode_json",
    "decode_json_object",
    "decode_multi_tenant",
    "decode_str_list",
    "decode_str_map",
    "encode_data_residence",
    "encode_json",
    "encode_multi_tenant",
    "encode_str_list",
    "encode_str_map",
]
