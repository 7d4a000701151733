"""Mapping configuration model plus YAML loading for source-to-table mappings."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence, Union

import yaml


class MappingLoadError(RuntimeError):
    """Raised when a mapping configuration cannot be loaded or validated."""


TRANSFORM_DIRECT = "direct"
TRANSFORM_COERCE = "coerce"
TRANSFORM_EXPRESSION = "expression"
TRANSFORM_LOOKUP = "lookup"
TRANSFORM_TEMPLATE = "template"
TRANSFORM_DEFAULT = "default"

DELETE_STRATEGIES = ("hard", "soft", "ignore")

FILTER_OPERATORS = (
    "eq",
    "neq",
    "in",
    "not_in",
    "exists",
    "not_exists",
    "gt",
    "lt",
    "gte",
    "lte",
    "contains",
    "starts_with",
    "regex",
)


def _pick(payload: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    """Return the first present key; configs may use camelCase or snake_case."""
    for name in names:
        if name in payload:
            return payload[name]
    return default


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# Transforms ------------------------------------------------------------------


@dataclass(frozen=True)
class DirectTransform:
    type: str = field(default=TRANSFORM_DIRECT, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class CoerceTransform:
    target_type: str
    type: str = field(default=TRANSFORM_COERCE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "targetType": self.target_type}


@dataclass(frozen=True)
class ExpressionTransform:
    formula: str
    type: str = field(default=TRANSFORM_EXPRESSION, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "formula": self.formula}


@dataclass(frozen=True)
class LookupTransform:
    table: str
    match_column: str
    return_column: str
    default_value: Any = None
    type: str = field(default=TRANSFORM_LOOKUP, init=False)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "type": self.type,
            "table": self.table,
            "matchColumn": self.match_column,
            "returnColumn": self.return_column,
        }
        if self.default_value is not None:
            payload["defaultValue"] = self.default_value
        return payload


@dataclass(frozen=True)
class TemplateTransform:
    template: str
    type: str = field(default=TRANSFORM_TEMPLATE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "template": self.template}


@dataclass(frozen=True)
class DefaultTransform:
    value: Any = None
    only_if_null: bool = True
    type: str = field(default=TRANSFORM_DEFAULT, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "value": self.value, "onlyIfNull": self.only_if_null}


Transform = Union[
    DirectTransform,
    CoerceTransform,
    ExpressionTransform,
    LookupTransform,
    TemplateTransform,
    DefaultTransform,
]


def parse_transform(payload: Mapping[str, Any] | None) -> Transform | None:
    """
    Build a transform from its tagged dict form.

    Structural gaps (an empty lookup column, a template without placeholders)
    are left for the validator to report; only an unknown tag is fatal here.
    """
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise MappingLoadError(f"Transform must be a mapping, got {payload!r}")
    kind = str(payload.get("type") or "").strip().lower()
    if kind == TRANSFORM_DIRECT:
        return DirectTransform()
    if kind == TRANSFORM_COERCE:
        return CoerceTransform(target_type=str(_pick(payload, "targetType", "target_type", default="") or ""))
    if kind == TRANSFORM_EXPRESSION:
        return ExpressionTransform(formula=str(payload.get("formula") or ""))
    if kind == TRANSFORM_LOOKUP:
        return LookupTransform(
            table=str(payload.get("table") or ""),
            match_column=str(_pick(payload, "matchColumn", "match_column", default="") or ""),
            return_column=str(_pick(payload, "returnColumn", "return_column", default="") or ""),
            default_value=_pick(payload, "defaultValue", "default_value"),
        )
    if kind == TRANSFORM_TEMPLATE:
        return TemplateTransform(template=str(payload.get("template") or ""))
    if kind == TRANSFORM_DEFAULT:
        return DefaultTransform(
            value=payload.get("value"),
            only_if_null=bool(_pick(payload, "onlyIfNull", "only_if_null", default=True)),
        )
    raise MappingLoadError(f"Unknown transform type {payload.get('type')!r}")


# Sources ---------------------------------------------------------------------


@dataclass(frozen=True)
class SourceRef:
    resource: str
    field: str
    alias: str


@dataclass(frozen=True)
class SingleSource:
    resource: str
    field: str

    @property
    def refs(self) -> tuple[SourceRef, ...]:
        return (SourceRef(self.resource, self.field, self.field),)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "single", "resource": self.resource, "field": self.field}


@dataclass(frozen=True)
class MultiSource:
    fields: Sequence[SourceRef]

    @property
    def refs(self) -> tuple[SourceRef, ...]:
        return tuple(self.fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "multi",
            "fields": [{"resource": ref.resource, "field": ref.field, "alias": ref.alias} for ref in self.fields],
        }


FieldSource = Union[SingleSource, MultiSource]


def parse_source(payload: Any, *, default_resource: str) -> FieldSource:
    if isinstance(payload, str):
        return SingleSource(resource=default_resource, field=payload)
    if not isinstance(payload, Mapping):
        raise MappingLoadError(f"Mapping source must be a mapping or field name, got {payload!r}")
    kind = str(payload.get("type") or "single").lower()
    if kind == "multi":
        refs = []
        for entry in payload.get("fields") or ():
            if not isinstance(entry, Mapping) or not entry.get("field"):
                raise MappingLoadError(f"Multi-source entry requires a field: {entry!r}")
            field_name = str(entry["field"])
            refs.append(
                SourceRef(
                    resource=str(entry.get("resource") or default_resource),
                    field=field_name,
                    alias=str(entry.get("alias") or field_name),
                )
            )
        if not refs:
            raise MappingLoadError("Multi-source mapping requires at least one field reference.")
        return MultiSource(fields=tuple(refs))
    if kind != "single":
        raise MappingLoadError(f"Unknown source type {payload.get('type')!r}")
    field_name = _optional_str(payload.get("field"))
    if not field_name:
        raise MappingLoadError(f"Single-source mapping requires a field: {payload!r}")
    return SingleSource(resource=str(payload.get("resource") or default_resource), field=field_name)


# Mapping config --------------------------------------------------------------


@dataclass(frozen=True)
class ColumnMapping:
    """One source-to-column connection inside a mapping config."""

    id: str
    source: FieldSource
    target_table: str
    target_column: str
    transform: Transform | None = None
    enabled: bool = True

    @property
    def transform_type(self) -> str | None:
        return self.transform.type if self.transform is not None else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "source": self.source.to_dict(),
            "target": {"table": self.target_table, "column": self.target_column},
            "enabled": self.enabled,
        }
        if self.transform is not None:
            payload["transform"] = self.transform.to_dict()
        return payload


@dataclass(frozen=True)
class KeyMapping:
    source_field: str
    target_column: str


@dataclass(frozen=True)
class MappingFilter:
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload = {"field": self.field, "operator": self.operator}
        if self.value is not None:
            payload["value"] = self.value
        return payload


@dataclass(frozen=True)
class MappingConfig:
    id: str
    name: str
    source_resource: str
    target_table: str
    mappings: Sequence[ColumnMapping]
    description: str | None = None
    key_mapping: KeyMapping | None = None
    filters: Sequence[MappingFilter] = ()
    webhook_enabled: bool = True
    delete_strategy: str = "hard"
    soft_delete_column: str | None = None

    @property
    def enabled_mappings(self) -> tuple[ColumnMapping, ...]:
        return tuple(mapping for mapping in self.mappings if mapping.enabled)

    @property
    def checksum(self) -> str:
        return compute_checksum(self.to_dict())

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MappingConfig":
        if not isinstance(raw, Mapping):
            raise MappingLoadError(f"Mapping config must be a mapping, got {type(raw).__name__}")
        try:
            config_id = str(raw["id"]).strip()
            source_resource = str(_pick(raw, "sourceResource", "source_resource", "resource")).strip()
            target_table = str(_pick(raw, "targetTable", "target_table", default="") or "").strip()
            mappings_payload = raw["mappings"]
        except KeyError as exc:
            raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
        if not config_id:
            raise MappingLoadError("Mapping config id cannot be empty.")
        if not source_resource or source_resource == "None":
            raise MappingLoadError(f"Mapping config '{config_id}' requires a source resource.")

        mappings: list[ColumnMapping] = []
        seen_ids: set[str] = set()
        for index, entry in enumerate(mappings_payload or ()):
            if not isinstance(entry, Mapping):
                raise MappingLoadError(f"Field mapping must be a mapping, got {entry!r}")
            mapping_id = str(entry.get("id") or f"{config_id}:{index}")
            if mapping_id in seen_ids:
                raise MappingLoadError(f"Duplicate mapping id '{mapping_id}' in '{config_id}'.")
            seen_ids.add(mapping_id)
            target = entry.get("target") or {}
            if isinstance(target, str):
                target = {"column": target}
            target_column = _optional_str(target.get("column"))
            if not target_column:
                raise MappingLoadError(f"Field mapping '{mapping_id}' is missing a target column.")
            mappings.append(
                ColumnMapping(
                    id=mapping_id,
                    source=parse_source(entry.get("source"), default_resource=source_resource),
                    target_table=_optional_str(target.get("table")) or target_table,
                    target_column=target_column,
                    transform=parse_transform(entry.get("transform")),
                    enabled=bool(entry.get("enabled", True)),
                )
            )

        key_payload = _pick(raw, "keyMapping", "key_mapping")
        key_mapping = None
        if key_payload:
            source_field = _optional_str(_pick(key_payload, "sourceField", "source_field"))
            target_column = _optional_str(_pick(key_payload, "targetColumn", "target_column"))
            if not source_field or not target_column:
                raise MappingLoadError(f"Key mapping for '{config_id}' needs sourceField and targetColumn.")
            key_mapping = KeyMapping(source_field=source_field, target_column=target_column)

        filters: list[MappingFilter] = []
        for entry in raw.get("filters") or ():
            operator = str(entry.get("operator") or "").strip().lower()
            if operator not in FILTER_OPERATORS:
                raise MappingLoadError(f"Unknown filter operator {entry.get('operator')!r} in '{config_id}'.")
            if not entry.get("field"):
                raise MappingLoadError(f"Filter in '{config_id}' is missing a field.")
            filters.append(MappingFilter(field=str(entry["field"]), operator=operator, value=entry.get("value")))

        delete_strategy = str(_pick(raw, "deleteStrategy", "delete_strategy", default="hard") or "hard").lower()
        if delete_strategy not in DELETE_STRATEGIES:
            raise MappingLoadError(f"Unknown delete strategy '{delete_strategy}' in '{config_id}'.")

        return cls(
            id=config_id,
            name=str(raw.get("name") or config_id),
            description=_optional_str(raw.get("description")),
            source_resource=source_resource,
            target_table=target_table,
            mappings=tuple(mappings),
            key_mapping=key_mapping,
            filters=tuple(filters),
            webhook_enabled=bool(_pick(raw, "webhookEnabled", "webhook_enabled", default=True)),
            delete_strategy=delete_strategy,
            soft_delete_column=_optional_str(_pick(raw, "softDeleteColumn", "soft_delete_column")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "sourceResource": self.source_resource,
            "targetTable": self.target_table,
            "mappings": [mapping.to_dict() for mapping in self.mappings],
            "filters": [entry.to_dict() for entry in self.filters],
            "webhookEnabled": self.webhook_enabled,
            "deleteStrategy": self.delete_strategy,
        }
        if self.description:
            payload["description"] = self.description
        if self.key_mapping is not None:
            payload["keyMapping"] = {
                "sourceField": self.key_mapping.source_field,
                "targetColumn": self.key_mapping.target_column,
            }
        if self.soft_delete_column:
            payload["softDeleteColumn"] = self.soft_delete_column
        return payload


def load_mapping_config(path: str | Path) -> MappingConfig:
    """
    Load and validate a YAML mapping configuration file.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc
    return MappingConfig.from_dict(raw)


def compute_checksum(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
