"""Remote schema cache access, field categorization and the entity/field graph."""

from .cache_store import MetafieldDefinition, RemoteResource, RemoteSchema, SchemaCacheStore
from .catalog import (
    KNOWN_ENTITIES,
    KNOWN_ENTITY_NAMES,
    PROTECTED_FIELDS,
    FieldCategory,
    FieldKind,
    KnownEntity,
    RemoteField,
    categorize_field,
    fields_from_introspection,
    is_known_entity,
    is_protected_field,
)
from .graph import (
    EDGE_ENTITY_TO_FIELD,
    EDGE_FIELD_TO_ENTITY,
    EDGE_FIELD_TO_SUBFIELD,
    SchemaEdge,
    SchemaGraph,
    SchemaGraphBuilder,
    SchemaNode,
)

__all__ = [
    "EDGE_ENTITY_TO_FIELD",
    "EDGE_FIELD_TO_ENTITY",
    "EDGE_FIELD_TO_SUBFIELD",
    "FieldCategory",
    "FieldKind",
    "KNOWN_ENTITIES",
    "KNOWN_ENTITY_NAMES",
    "KnownEntity",
    "MetafieldDefinition",
    "PROTECTED_FIELDS",
    "RemoteField",
    "RemoteResource",
    "RemoteSchema",
    "SchemaCacheStore",
    "SchemaEdge",
    "SchemaGraph",
    "SchemaGraphBuilder",
    "SchemaNode",
    "categorize_field",
    "fields_from_introspection",
    "is_known_entity",
    "is_protected_field",
]
