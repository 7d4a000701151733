"""
Validation of mapping configs against the cached remote schema and the
discovered relational schema.

Problems are collected and returned, never raised: the caller decides
whether an invalid config may still be saved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from sync_app.engine import metrics
from sync_app.engine.schema.cache_store import RemoteSchema
from sync_app.engine.schema.catalog import RemoteField
from sync_app.engine.transforms.expression import MAX_FORMULA_LENGTH, validate_expression
from sync_app.engine.writer.introspection import DatabaseColumn, DatabaseSchema

from .config import (
    TRANSFORM_DEFAULT,
    TRANSFORM_EXPRESSION,
    TRANSFORM_LOOKUP,
    TRANSFORM_TEMPLATE,
    CoerceTransform,
    ColumnMapping,
    DefaultTransform,
    MappingConfig,
    SingleSource,
    Transform,
)

ERROR_SOURCE_NOT_FOUND = "source_not_found"
ERROR_TARGET_NOT_FOUND = "target_not_found"
ERROR_INVALID_EXPRESSION = "invalid_expression"
ERROR_INVALID_LOOKUP = "invalid_lookup"
ERROR_MISSING_KEY_MAPPING = "missing_key_mapping"

WARNING_TYPE_MISMATCH = "type_mismatch"
WARNING_NULLABLE_TO_NONNULL = "nullable_to_nonnull"
WARNING_PRECISION_LOSS = "precision_loss"
WARNING_STRING_TRUNCATION = "string_truncation"

TYPE_CATEGORIES = ("string", "number", "boolean", "datetime", "json", "unknown")

_LENGTH = re.compile(r"\((\d+)\)")
_PRECISION = re.compile(r"\((\d+),?\s*(\d+)?\)")
_PLACEHOLDER = re.compile(r"\{([^}]+)\}")


@dataclass(frozen=True)
class TypeInfo:
    category: str
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None


@dataclass(frozen=True)
class Compatibility:
    compatible: bool
    warning: str | None = None
    suggested_transform: Transform | None = None
    truncation: bool = False


@dataclass(frozen=True)
class ValidationIssue:
    mapping_id: str
    type: str
    message: str
    details: Mapping[str, Any] = field(default_factory=dict, compare=False)
    suggested_transform: Transform | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"mapping_id": self.mapping_id, "type": self.type, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        if self.suggested_transform is not None:
            payload["suggested_transform"] = self.suggested_transform.to_dict()
        return payload


@dataclass
class ValidationResult:
    valid: bool
    errors: list[ValidationIssue]
    warnings: list[ValidationIssue]
    stats: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "stats": dict(self.stats),
        }


def parse_remote_type(type_name: str) -> TypeInfo:
    """Normalize a GraphQL scalar/type name to a type category."""
    lowered = (type_name or "").lower()
    if "string" in lowered or lowered in ("id", "url"):
        return TypeInfo("string")
    if "int" in lowered or "float" in lowered or lowered in ("money", "decimal"):
        return TypeInfo("number")
    if lowered == "boolean":
        return TypeInfo("boolean")
    if "date" in lowered:
        return TypeInfo("datetime")
    if lowered in ("json", "jsonvalue"):
        return TypeInfo("json")
    return TypeInfo("unknown")


def parse_database_type(type_name: str) -> TypeInfo:
    """Normalize a relational column type string to a type category."""
    lowered = (type_name or "").lower()
    if "char" in lowered or "text" in lowered or "string" in lowered:
        match = _LENGTH.search(lowered)
        return TypeInfo("string", max_length=int(match.group(1)) if match else None)
    if "int" in lowered:
        return TypeInfo("number")
    if "decimal" in lowered or "numeric" in lowered or "money" in lowered:
        match = _PRECISION.search(lowered)
        return TypeInfo(
            "number",
            precision=int(match.group(1)) if match else None,
            scale=int(match.group(2)) if match and match.group(2) else None,
        )
    if "float" in lowered or "real" in lowered or "double" in lowered:
        return TypeInfo("number")
    if lowered in ("bit", "boolean", "bool"):
        return TypeInfo("boolean")
    if "date" in lowered or "time" in lowered:
        return TypeInfo("datetime")
    if lowered in ("json", "jsonb"):
        return TypeInfo("json")
    return TypeInfo("unknown")


def check_type_compatibility(source: TypeInfo, target: TypeInfo) -> Compatibility:
    """Apply the fixed category compatibility table."""
    if source.category == target.category:
        if (
            source.category == "string"
            and target.max_length
            and (not source.max_length or source.max_length > target.max_length)
        ):
            return Compatibility(
                True,
                f"Source may exceed target max length ({target.max_length})",
                truncation=True,
            )
        return Compatibility(True)
    pair = (source.category, target.category)
    if pair == ("string", "number"):
        return Compatibility(True, "String to number conversion required", CoerceTransform(target_type="number"))
    if pair == ("number", "string"):
        return Compatibility(True)
    if pair == ("json", "string"):
        return Compatibility(True, "JSON will be serialized to string")
    if pair == ("datetime", "string"):
        return Compatibility(True)
    if pair == ("string", "datetime"):
        return Compatibility(True, "String to datetime parsing required", CoerceTransform(target_type="datetime"))
    if "unknown" in pair:
        return Compatibility(True, "Type compatibility could not be verified")
    return Compatibility(False, f"Incompatible types: {source.category} to {target.category}")


class MappingValidator:
    """Stateless validator; construct one per caller."""

    def __init__(self, *, max_expression_length: int = MAX_FORMULA_LENGTH):
        self.max_expression_length = max_expression_length

    def validate(
        self,
        config: MappingConfig,
        database_schema: DatabaseSchema | None,
        remote_schema: RemoteSchema | None,
    ) -> ValidationResult:
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if database_schema is None:
            errors.append(
                ValidationIssue(
                    config.id,
                    ERROR_TARGET_NOT_FOUND,
                    "Database schema not discovered. Cannot validate target columns.",
                )
            )
        if remote_schema is None:
            errors.append(
                ValidationIssue(
                    config.id,
                    ERROR_SOURCE_NOT_FOUND,
                    "Remote schema not introspected. Cannot validate source fields.",
                )
            )

        tables = _table_map(database_schema)
        resources = _resource_map(remote_schema)
        metafields = _metafield_keys(remote_schema)

        if database_schema is not None and config.target_table and config.target_table.lower() not in tables:
            errors.append(
                ValidationIssue(
                    config.id,
                    ERROR_TARGET_NOT_FOUND,
                    f'Target table "{config.target_table}" not found in database schema',
                    {"table": config.target_table},
                )
            )
        if remote_schema is not None and config.source_resource.lower() not in resources:
            errors.append(
                ValidationIssue(
                    config.id,
                    ERROR_SOURCE_NOT_FOUND,
                    f'Source resource "{config.source_resource}" not found in remote schema',
                    {"resource": config.source_resource},
                )
            )

        if config.key_mapping is None:
            errors.append(
                ValidationIssue(
                    config.id,
                    ERROR_MISSING_KEY_MAPPING,
                    "Mapping has no key mapping; records cannot be upserted.",
                )
            )
        elif database_schema is not None and remote_schema is not None:
            table_columns = tables.get(config.target_table.lower())
            resource_fields = resources.get(config.source_resource.lower())
            key = config.key_mapping
            if table_columns is not None and key.target_column.lower() not in table_columns:
                errors.append(
                    ValidationIssue(
                        config.id,
                        ERROR_TARGET_NOT_FOUND,
                        f'Key column "{key.target_column}" not found in table "{config.target_table}"',
                        {"target_column": key.target_column, "table": config.target_table},
                    )
                )
            if resource_fields is not None and not self._source_exists(
                resource_fields, key.source_field, metafields
            ):
                errors.append(
                    ValidationIssue(
                        config.id,
                        ERROR_SOURCE_NOT_FOUND,
                        f'Key field "{key.source_field}" not found in resource "{config.source_resource}"',
                        {"source_field": key.source_field, "resource": config.source_resource},
                    )
                )

        validated = 0
        unverified = 0
        for mapping in config.mappings:
            if not mapping.enabled:
                continue
            if database_schema is None or remote_schema is None:
                # The missing side was reported once above.
                unverified += 1
                mapping_errors = self._validate_transform(mapping.id, mapping.transform, tables, structural_only=True)
                errors.extend(mapping_errors)
                continue
            mapping_errors, mapping_warnings = self._validate_mapping(config, mapping, tables, resources, metafields)
            errors.extend(mapping_errors)
            warnings.extend(mapping_warnings)
            validated += 1

        result = ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            stats={
                "total_mappings": len(config.mappings),
                "enabled_mappings": len(config.enabled_mappings),
                "validated_mappings": validated,
                "unverified_mappings": unverified,
            },
        )
        metrics.record_validation(result.valid)
        return result

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _source_exists(
        resource_fields: Mapping[str, RemoteField],
        field_path: str,
        metafields: set[tuple[str, str]],
    ) -> bool:
        top_level = field_path.split(".", 1)[0].lower()
        if top_level in resource_fields:
            return True
        return _is_metafield_path(field_path, metafields)

    def _validate_mapping(
        self,
        config: MappingConfig,
        mapping: ColumnMapping,
        tables: Mapping[str, Mapping[str, DatabaseColumn]],
        resources: Mapping[str, Mapping[str, RemoteField]],
        metafields: set[tuple[str, str]],
    ) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        source_type = TypeInfo("unknown")
        if isinstance(mapping.source, SingleSource):
            source = mapping.source
            resource_fields = resources.get(source.resource.lower())
            if resource_fields is None:
                errors.append(
                    ValidationIssue(
                        mapping.id,
                        ERROR_SOURCE_NOT_FOUND,
                        f'Source resource "{source.resource}" not found',
                        {"resource": source.resource},
                    )
                )
            else:
                top_level = resource_fields.get(source.field.split(".", 1)[0].lower())
                if top_level is None and not _is_metafield_path(source.field, metafields):
                    errors.append(
                        ValidationIssue(
                            mapping.id,
                            ERROR_SOURCE_NOT_FOUND,
                            f'Source field "{source.field}" not found in resource "{source.resource}"',
                            {"source_field": source.field, "resource": source.resource},
                        )
                    )
                elif top_level is not None:
                    source_type = parse_remote_type(top_level.base_type)
        else:
            for ref in mapping.source.refs:
                resource_fields = resources.get(ref.resource.lower())
                if resource_fields is None:
                    errors.append(
                        ValidationIssue(
                            mapping.id,
                            ERROR_SOURCE_NOT_FOUND,
                            f'Source resource "{ref.resource}" not found for alias "{ref.alias}"',
                            {"resource": ref.resource},
                        )
                    )
                elif not self._source_exists(resource_fields, ref.field, metafields):
                    errors.append(
                        ValidationIssue(
                            mapping.id,
                            ERROR_SOURCE_NOT_FOUND,
                            f'Source field "{ref.field}" not found in resource "{ref.resource}"',
                            {"source_field": ref.field, "resource": ref.resource},
                        )
                    )

        target_column: DatabaseColumn | None = None
        table_name = mapping.target_table or config.target_table
        table_columns = tables.get(table_name.lower()) or tables.get(config.target_table.lower())
        if table_columns is None:
            errors.append(
                ValidationIssue(
                    mapping.id,
                    ERROR_TARGET_NOT_FOUND,
                    f'Target table "{table_name}" not found',
                    {"table": table_name},
                )
            )
        else:
            target_column = table_columns.get(mapping.target_column.lower())
            if target_column is None:
                errors.append(
                    ValidationIssue(
                        mapping.id,
                        ERROR_TARGET_NOT_FOUND,
                        f'Target column "{mapping.target_column}" not found in table "{table_name}"',
                        {"target_column": mapping.target_column, "table": table_name},
                    )
                )

        if target_column is not None and not errors:
            if source_type.category != "unknown":
                warning = self._compatibility_warning(
                    mapping.id, check_type_compatibility(source_type, parse_database_type(target_column.type))
                )
                if warning is not None:
                    warnings.append(warning)
            if not target_column.nullable and mapping.transform_type != TRANSFORM_DEFAULT:
                warnings.append(
                    ValidationIssue(
                        mapping.id,
                        WARNING_NULLABLE_TO_NONNULL,
                        "Target column is not nullable. Consider adding a default value transform.",
                        suggested_transform=DefaultTransform(value=None, only_if_null=True),
                    )
                )

        errors.extend(self._validate_transform(mapping.id, mapping.transform, tables))
        return errors, warnings

    @staticmethod
    def _compatibility_warning(mapping_id: str, verdict: Compatibility) -> ValidationIssue | None:
        if not verdict.compatible:
            return ValidationIssue(
                mapping_id,
                WARNING_TYPE_MISMATCH,
                verdict.warning or "Type mismatch",
                suggested_transform=verdict.suggested_transform,
            )
        if not verdict.warning:
            return None
        if verdict.truncation:
            warning_type = WARNING_STRING_TRUNCATION
        elif verdict.suggested_transform is not None:
            warning_type = WARNING_TYPE_MISMATCH
        else:
            warning_type = WARNING_PRECISION_LOSS
        return ValidationIssue(
            mapping_id,
            warning_type,
            verdict.warning,
            suggested_transform=verdict.suggested_transform,
        )

    def _validate_transform(
        self,
        mapping_id: str,
        transform: Transform | None,
        tables: Mapping[str, Mapping[str, DatabaseColumn]],
        *,
        structural_only: bool = False,
    ) -> list[ValidationIssue]:
        if transform is None:
            return []
        errors: list[ValidationIssue] = []
        if transform.type == TRANSFORM_LOOKUP:
            if not transform.table or not transform.match_column or not transform.return_column:
                errors.append(
                    ValidationIssue(
                        mapping_id,
                        ERROR_INVALID_LOOKUP,
                        "Lookup transform requires table, matchColumn and returnColumn.",
                    )
                )
            elif not structural_only:
                lookup_columns = tables.get(transform.table.lower())
                if lookup_columns is None:
                    errors.append(
                        ValidationIssue(
                            mapping_id,
                            ERROR_INVALID_LOOKUP,
                            f'Lookup table "{transform.table}" not found',
                            {"table": transform.table},
                        )
                    )
                else:
                    for label, column in (("match", transform.match_column), ("return", transform.return_column)):
                        if column.lower() not in lookup_columns:
                            errors.append(
                                ValidationIssue(
                                    mapping_id,
                                    ERROR_INVALID_LOOKUP,
                                    f'Lookup {label} column "{column}" not found in table "{transform.table}"',
                                    {"table": transform.table, "target_column": column},
                                )
                            )
        elif transform.type == TRANSFORM_EXPRESSION:
            problem = validate_expression(transform.formula, max_length=self.max_expression_length)
            if problem is not None:
                errors.append(
                    ValidationIssue(
                        mapping_id,
                        ERROR_INVALID_EXPRESSION,
                        f"Invalid expression formula: {problem}",
                    )
                )
        elif transform.type == TRANSFORM_TEMPLATE:
            if not _PLACEHOLDER.search(transform.template):
                errors.append(
                    ValidationIssue(
                        mapping_id,
                        ERROR_INVALID_EXPRESSION,
                        "Template has no placeholders. Use {fieldName} syntax.",
                    )
                )
        return errors


def _table_map(schema: DatabaseSchema | None) -> dict[str, dict[str, DatabaseColumn]]:
    tables: dict[str, dict[str, DatabaseColumn]] = {}
    if schema is None:
        return tables
    for table in schema.tables:
        columns = {column.name.lower(): column for column in table.columns}
        tables[table.qualified_name.lower()] = columns
        tables[table.name.lower()] = columns
    return tables


def _resource_map(schema: RemoteSchema | None) -> dict[str, dict[str, RemoteField]]:
    if schema is None:
        return {}
    return {
        resource.name.lower(): {remote_field.name.lower(): remote_field for remote_field in resource.fields}
        for resource in schema.resources
    }


def _metafield_keys(schema: RemoteSchema | None) -> set[tuple[str, str]]:
    if schema is None:
        return set()
    return {(definition.namespace, definition.key) for definition in schema.metafield_definitions}


def _is_metafield_path(field_path: str, metafields: set[tuple[str, str]]) -> bool:
    if not field_path.lower().startswith("metafields."):
        return False
    parts = field_path.split(".")
    if len(parts) < 3:
        return False
    return (parts[1], parts[2]) in metafields


def issue_keys(issues: Sequence[ValidationIssue]) -> set[tuple[str, str, str]]:
    """Order-independent identity of an issue list, for comparing validation runs."""
    return {(issue.mapping_id, issue.type, issue.message) for issue in issues}
