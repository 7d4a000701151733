"""
Static catalog of remote entities plus helpers for categorizing introspected fields.

Known entities are hard-coded rather than discovered: the remote platform
exposes hundreds of root types but only these are synchronised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping


class FieldKind:
    SCALAR = "SCALAR"
    OBJECT = "OBJECT"
    ENUM = "ENUM"
    INTERFACE = "INTERFACE"
    UNION = "UNION"
    UNKNOWN = "UNKNOWN"


class FieldCategory:
    SYSTEM = "system"
    TIMESTAMP = "timestamp"
    COUNT = "count"
    SCALAR = "scalar"
    ENUM = "enum"
    OBJECT = "object"
    CONNECTION = "connection"
    POLYMORPHIC = "polymorphic"
    CONTEXTUAL = "contextual"
    COMPUTED = "computed"
    METAFIELD = "metafield"


SYSTEM_FIELD_NAMES = frozenset({"id", "handle", "legacyResourceId", "defaultCursor"})
TIMESTAMP_FIELD_NAMES = frozenset({"createdAt", "updatedAt", "publishedAt"})
COMPUTED_FIELD_NAMES = frozenset({"contextualPricing", "restrictedForResource", "feedback"})


@dataclass(frozen=True)
class KnownEntity:
    name: str
    display_name: str
    has_metafields: bool = True


KNOWN_ENTITIES: tuple[KnownEntity, ...] = (
    KnownEntity("Product", "Product"),
    KnownEntity("ProductVariant", "Product Variant"),
    KnownEntity("Collection", "Collection"),
    KnownEntity("Order", "Order"),
    KnownEntity("Customer", "Customer"),
    KnownEntity("InventoryItem", "Inventory Item", has_metafields=False),
)

KNOWN_ENTITY_NAMES = frozenset(entity.name for entity in KNOWN_ENTITIES)

PROTECTED_FIELDS: Mapping[str, tuple[str, ...]] = {
    "Product": ("id", "status", "handle"),
    "ProductVariant": ("id", "sku", "price", "inventoryQuantity"),
}


def is_known_entity(type_name: str | None) -> bool:
    return bool(type_name) and type_name in KNOWN_ENTITY_NAMES


def is_protected_field(entity_type: str, field_path: str) -> bool:
    """Return True when the field is a system identifier that may never be disabled."""
    return field_path in PROTECTED_FIELDS.get(entity_type, ())


@dataclass(frozen=True)
class RemoteField:
    """A field on a cached remote type."""

    name: str
    kind: str
    base_type: str
    category: str
    description: str | None = None
    is_deprecated: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RemoteField":
        """
        Build a field from a cached JSON entry.

        Raises:
            ValueError: when the entry lacks a name.
        """
        if not isinstance(payload, Mapping):
            raise ValueError(f"Field entry must be a mapping, got {type(payload).__name__}")
        name = payload.get("name")
        if not name:
            raise ValueError(f"Field entry missing 'name': {payload!r}")
        known = {"name", "kind", "baseType", "base_type", "category", "description", "isDeprecated", "is_deprecated"}
        return cls(
            name=str(name),
            kind=str(payload.get("kind") or FieldKind.UNKNOWN),
            base_type=str(payload.get("baseType") or payload.get("base_type") or "Unknown"),
            category=str(payload.get("category") or FieldCategory.SCALAR),
            description=payload.get("description"),
            is_deprecated=bool(payload.get("isDeprecated", payload.get("is_deprecated", False))),
            extra={key: value for key, value in payload.items() if key not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "name": self.name,
                "kind": self.kind,
                "baseType": self.base_type,
                "category": self.category,
                "description": self.description,
                "isDeprecated": self.is_deprecated,
            }
        )
        return payload


def unwrap_type(type_ref: Mapping[str, Any] | None) -> tuple[str, str]:
    """Strip NON_NULL/LIST wrappers from an introspection type reference."""
    current = type_ref
    while current and current.get("kind") in ("NON_NULL", "LIST"):
        current = current.get("ofType")
    if not current:
        return FieldKind.UNKNOWN, "Unknown"
    return current.get("kind") or FieldKind.UNKNOWN, current.get("name") or "Unknown"


def _has_required_args(args: Iterable[Mapping[str, Any]] | None) -> bool:
    for arg in args or ():
        arg_type = arg.get("type") or {}
        if arg_type.get("kind") == "NON_NULL" and arg.get("defaultValue") is None:
            return True
    return False


def categorize_field(
    name: str,
    kind: str,
    base_type: str,
    *,
    args: Iterable[Mapping[str, Any]] | None = None,
) -> str:
    """
    Assign a category to an introspected field.

    Rules are evaluated in priority order and the first match wins.
    """

    if name in SYSTEM_FIELD_NAMES:
        return FieldCategory.SYSTEM
    if name in TIMESTAMP_FIELD_NAMES:
        return FieldCategory.TIMESTAMP
    if base_type == "Count" or name.endswith("Count"):
        return FieldCategory.COUNT
    if _has_required_args(args):
        return FieldCategory.CONTEXTUAL
    if name in COMPUTED_FIELD_NAMES:
        return FieldCategory.COMPUTED
    if name.startswith("metafield"):
        return FieldCategory.METAFIELD
    if kind == FieldKind.ENUM:
        return FieldCategory.ENUM
    if kind == FieldKind.SCALAR:
        return FieldCategory.SCALAR
    if kind in (FieldKind.INTERFACE, FieldKind.UNION):
        return FieldCategory.POLYMORPHIC
    if kind == FieldKind.OBJECT and base_type.endswith("Connection"):
        return FieldCategory.CONNECTION
    return FieldCategory.OBJECT


def fields_from_introspection(type_payload: Mapping[str, Any]) -> list[RemoteField]:
    """
    Convert a GraphQL ``__type`` introspection payload into categorized fields.

    Declared order is preserved; the graph builder lays fields out in this order.
    """

    fields: list[RemoteField] = []
    for raw in type_payload.get("fields") or ():
        kind, base_type = unwrap_type(raw.get("type"))
        name = raw["name"]
        fields.append(
            RemoteField(
                name=name,
                kind=kind,
                base_type=base_type,
                category=categorize_field(name, kind, base_type, args=raw.get("args")),
                description=raw.get("description"),
                is_deprecated=bool(raw.get("isDeprecated", False)),
            )
        )
    return fields
