"""Record transforms: coercion, sandboxed expressions, lookups and templates."""

from .coercion import COERCION_TARGETS, CoercionError, coerce_value, parse_target_type
from .engine import (
    STATUS_ERROR,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    BatchResult,
    FieldError,
    FieldWarning,
    RecordResult,
    TransformEngine,
    TransformError,
    render_template,
)
from .expression import CompiledExpression, ExpressionError, compile_expression, validate_expression
from .lookup import LookupCache, LookupResolver

__all__ = [
    "BatchResult",
    "COERCION_TARGETS",
    "CoercionError",
    "CompiledExpression",
    "ExpressionError",
    "FieldError",
    "FieldWarning",
    "LookupCache",
    "LookupResolver",
    "RecordResult",
    "STATUS_ERROR",
    "STATUS_PARTIAL",
    "STATUS_SUCCESS",
    "TransformEngine",
    "TransformError",
    "coerce_value",
    "compile_expression",
    "parse_target_type",
    "render_template",
    "validate_expression",
]
