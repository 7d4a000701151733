"""
Apply a mapping config's transforms to fetched records.

Records go through :meth:`TransformEngine.transform_batch`, which preloads
lookup tables and compiles expressions once, then builds one target row per
record. Field failures never abort the batch; they are collected on the
record result and decide its ``success | partial | error`` status.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from sync_app.engine.mapping.config import (
    CoerceTransform,
    ColumnMapping,
    DefaultTransform,
    DirectTransform,
    ExpressionTransform,
    LookupTransform,
    MappingConfig,
    TemplateTransform,
    Transform,
)
from sync_app.engine.utils import flatten_record, lookup_path

from .coercion import CoercionError, coerce_value
from .expression import MAX_FORMULA_LENGTH, CompiledExpression, ExpressionError, compile_expression
from .lookup import LookupCache, LookupResolver

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"

_TEMPLATE_PATTERN = re.compile(r"\$?\{([^{}]+)\}")
_MISSING = object()


class TransformError(ValueError):
    """Raised by a single transform; recorded against the target column."""


@dataclass(frozen=True)
class FieldError:
    field: str
    transform: str
    message: str
    source_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "transform": self.transform,
            "message": self.message,
            "source_value": self.source_value,
        }


@dataclass(frozen=True)
class FieldWarning:
    field: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message}


@dataclass
class RecordResult:
    source_id: Any
    status: str
    target_row: dict[str, Any]
    applied_transforms: list[str] = field(default_factory=list)
    errors: list[FieldError] = field(default_factory=list)
    warnings: list[FieldWarning] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != STATUS_ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status,
            "target_row": self.target_row,
            "applied_transforms": list(self.applied_transforms),
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


@dataclass
class BatchResult:
    results: list[RecordResult]
    summary: dict[str, Any]
    lookup_stats: dict[str, Any]

    @property
    def rows(self) -> list[dict[str, Any]]:
        """Target rows of every record that produced at least one column."""
        return [result.target_row for result in self.results if result.ok and result.target_row]


@dataclass
class _Outcome:
    value: Any
    applied: str
    warning: str | None = None


@dataclass
class _RecordContext:
    record: Mapping[str, Any]
    aliases: dict[str, Any]
    lookups: LookupCache
    expressions: dict[str, CompiledExpression]
    _flat: dict[str, Any] | None = None

    def variables(self) -> dict[str, Any]:
        if self._flat is None:
            self._flat = flatten_record(self.record)
        context = dict(self._flat)
        context.update(self.aliases)
        return context


def render_template(template: str, context: Mapping[str, Any]) -> tuple[str, list[str]]:
    """Substitute ``${path}`` / ``{path}`` placeholders; returns the text and missing names."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        path = match.group(1).strip()
        value = lookup_path(context, path, _MISSING)
        if value is _MISSING:
            missing.append(path)
            return ""
        return "" if value is None else str(value)

    return _TEMPLATE_PATTERN.sub(_replace, template), missing


class TransformEngine:
    """Transform records for one mapping config at a time."""

    def __init__(
        self,
        lookup_resolver: LookupResolver | None = None,
        *,
        max_expression_length: int = MAX_FORMULA_LENGTH,
        log: logging.Logger | None = None,
    ):
        self.lookup_resolver = lookup_resolver
        self.max_expression_length = max_expression_length
        self.logger = log or logger

    def transform_batch(
        self,
        config: MappingConfig,
        records: Iterable[Mapping[str, Any]],
        *,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> BatchResult:
        started = time.monotonic()
        records = list(records)
        lookups = self.preload_lookups(config)
        expressions = self.compile_expressions(config)

        results: list[RecordResult] = []
        counts = {STATUS_SUCCESS: 0, STATUS_PARTIAL: 0, STATUS_ERROR: 0}
        for index, record in enumerate(records, start=1):
            result = self.transform_record(config, record, lookups=lookups, expressions=expressions)
            counts[result.status] += 1
            results.append(result)
            if on_progress is not None:
                on_progress(index, len(records))

        elapsed = time.monotonic() - started
        summary = {
            "total": len(records),
            "successful": counts[STATUS_SUCCESS],
            "partial": counts[STATUS_PARTIAL],
            "failed": counts[STATUS_ERROR],
            "duration_seconds": round(elapsed, 3),
        }
        if lookups.warnings:
            self.logger.warning(
                "Lookup preload reported warnings",
                extra={"sync_mapping_id": config.id, "sync_warnings": lookups.warnings},
            )
        return BatchResult(results=results, summary=summary, lookup_stats=lookups.stats())

    def preload_lookups(self, config: MappingConfig) -> LookupCache:
        requirements = LookupResolver.requirements(config)
        if not requirements:
            return LookupCache()
        if self.lookup_resolver is None:
            cache = LookupCache()
            cache.warnings.append("No lookup connection configured; lookups fall back to defaults.")
            return cache
        return self.lookup_resolver.preload(requirements)

    def compile_expressions(self, config: MappingConfig) -> dict[str, CompiledExpression]:
        compiled: dict[str, CompiledExpression] = {}
        for mapping in config.enabled_mappings:
            if not isinstance(mapping.transform, ExpressionTransform):
                continue
            try:
                compiled[mapping.id] = compile_expression(
                    mapping.transform.formula, max_length=self.max_expression_length
                )
            except ExpressionError as exc:
                # Left uncompiled; each record then reports the error for this column.
                self.logger.warning(
                    "Expression failed to compile",
                    extra={"sync_mapping_id": config.id, "sync_field_mapping": mapping.id, "sync_error": str(exc)},
                )
        return compiled

    def transform_record(
        self,
        config: MappingConfig,
        record: Mapping[str, Any],
        *,
        lookups: LookupCache | None = None,
        expressions: dict[str, CompiledExpression] | None = None,
    ) -> RecordResult:
        lookups = lookups if lookups is not None else LookupCache()
        expressions = expressions if expressions is not None else self.compile_expressions(config)

        target_row: dict[str, Any] = {}
        applied: list[str] = []
        errors: list[FieldError] = []
        warnings: list[FieldWarning] = []

        for mapping in config.enabled_mappings:
            transform = mapping.transform or DirectTransform()
            value, aliases = self._source_value(mapping, record)
            context = _RecordContext(record=record, aliases=aliases, lookups=lookups, expressions=expressions)
            try:
                outcome = self._apply(mapping, transform, value, context)
            except (TransformError, CoercionError, ExpressionError) as exc:
                errors.append(
                    FieldError(
                        field=mapping.target_column,
                        transform=transform.type,
                        message=str(exc),
                        source_value=value,
                    )
                )
                continue
            target_row[mapping.target_column] = outcome.value
            applied.append(f"{mapping.target_column}: {outcome.applied}")
            if outcome.warning:
                warnings.append(FieldWarning(field=mapping.target_column, message=outcome.warning))

        if not errors:
            status = STATUS_SUCCESS
        elif target_row:
            status = STATUS_PARTIAL
        else:
            status = STATUS_ERROR

        return RecordResult(
            source_id=record.get("id"),
            status=status,
            target_row=target_row,
            applied_transforms=applied,
            errors=errors,
            warnings=warnings,
        )

    @staticmethod
    def _source_value(mapping: ColumnMapping, record: Mapping[str, Any]) -> tuple[Any, dict[str, Any]]:
        refs = mapping.source.refs
        if len(refs) == 1 and refs[0].alias == refs[0].field:
            return lookup_path(record, refs[0].field), {}
        aliases: dict[str, Any] = {}
        primary: Any = _MISSING
        for ref in refs:
            value = lookup_path(record, ref.field)
            aliases[ref.alias] = value
            if primary is _MISSING:
                primary = value
        return (None if primary is _MISSING else primary), aliases

    def _apply(
        self,
        mapping: ColumnMapping,
        transform: Transform,
        value: Any,
        context: _RecordContext,
    ) -> _Outcome:
        if isinstance(transform, DirectTransform):
            return _Outcome(value, "direct")

        if isinstance(transform, CoerceTransform):
            return _Outcome(coerce_value(value, transform.target_type), f"coerce({transform.target_type})")

        if isinstance(transform, ExpressionTransform):
            compiled = context.expressions.get(mapping.id)
            if compiled is None:
                compiled = compile_expression(transform.formula, max_length=self.max_expression_length)
            return _Outcome(compiled.evaluate(context.variables()), f"expression({transform.formula})")

        if isinstance(transform, LookupTransform):
            found, resolved = self._resolve_lookup(context.lookups, transform, value)
            warning = None
            if not found and transform.default_value is None:
                warning = f"Lookup not found for value: {value}"
            return _Outcome(resolved, f"lookup({transform.table}.{transform.return_column})", warning)

        if isinstance(transform, TemplateTransform):
            rendered, missing = render_template(transform.template, context.variables())
            warning = f"Missing template variables: {', '.join(missing)}" if missing else None
            return _Outcome(rendered, f"template({transform.template})", warning)

        if isinstance(transform, DefaultTransform):
            if value is None or not transform.only_if_null:
                return _Outcome(transform.value, f"default({transform.value})")
            return _Outcome(value, "default (not applied)")

        raise TransformError(f"Unknown transform type: {getattr(transform, 'type', transform)!r}")

    def _resolve_lookup(self, cache: LookupCache, transform: LookupTransform, value: Any) -> tuple[bool, Any]:
        if self.lookup_resolver is None:
            return False, transform.default_value
        return self.lookup_resolver.resolve(cache, transform, value)
