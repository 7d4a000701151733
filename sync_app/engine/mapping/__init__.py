"""Mapping configs, their persistence, and validation against both schemas."""

from .config import (
    CoerceTransform,
    ColumnMapping,
    DefaultTransform,
    DirectTransform,
    ExpressionTransform,
    KeyMapping,
    LookupTransform,
    MappingConfig,
    MappingFilter,
    MappingLoadError,
    MultiSource,
    SingleSource,
    SourceRef,
    TemplateTransform,
    load_mapping_config,
    parse_transform,
)
from .service import MappingNotFoundError, MappingService
from .validator import (
    MappingValidator,
    ValidationIssue,
    ValidationResult,
    check_type_compatibility,
    parse_database_type,
    parse_remote_type,
)

__all__ = [
    "CoerceTransform",
    "ColumnMapping",
    "DefaultTransform",
    "DirectTransform",
    "ExpressionTransform",
    "KeyMapping",
    "LookupTransform",
    "MappingConfig",
    "MappingFilter",
    "MappingLoadError",
    "MappingNotFoundError",
    "MappingService",
    "MappingValidator",
    "MultiSource",
    "SingleSource",
    "SourceRef",
    "TemplateTransform",
    "ValidationIssue",
    "ValidationResult",
    "check_type_compatibility",
    "load_mapping_config",
    "parse_database_type",
    "parse_remote_type",
    "parse_transform",
]
