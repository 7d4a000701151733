"""
Sync-engine utilities for artifact paths, record access and JSON payloads.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

DEFAULT_ARTIFACT_SUBDIR = "sync_artifacts"

_MISSING = object()


def _normalize_directory(
    configured_path: str | None,
    instance_path: str,
    *,
    default_subdir: str,
) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_artifact_directory(app) -> Path:
    """
    Determine and create (if necessary) the job artifact directory.
    """

    artifact_dir = _normalize_directory(
        app.config.get("SYNC_ARTIFACT_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_ARTIFACT_SUBDIR,
    )
    artifact_dir.mkdir(parents=True, exist_ok=True)
    return artifact_dir


def lookup_path(record: Mapping[str, Any] | None, path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path against a record.

    A literal key wins over traversal, so flattened records such as
    ``{"metafields.custom.price": "9.99"}`` resolve the same as nested ones.
    """

    if record is None:
        return default
    if path in record:
        return record[path]
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return default
    return current


def has_path(record: Mapping[str, Any] | None, path: str) -> bool:
    return lookup_path(record, path, _MISSING) is not _MISSING


def flatten_record(record: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys; lists are kept as values."""

    flattened: dict[str, Any] = {}
    for key, value in record.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flattened.update(flatten_record(value, full_key))
        else:
            flattened[full_key] = value
    return flattened


def ensure_json_serializable(value: Any) -> Any:
    """
    Best-effort conversion of values to JSON-serializable representations.
    """

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return str(value)


def normalize_payload(payload: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Return a shallow copy of ``payload`` with JSON-serializable values.
    """

    if not payload:
        return {}
    return {str(key): ensure_json_serializable(value) for key, value in payload.items()}


def truncate(text: str | None, limit: int) -> str | None:
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit]
