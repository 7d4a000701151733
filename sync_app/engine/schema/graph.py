"""
Entity/field graph built from the schema cache.

The graph is a derived, per-request view: entity nodes for the known entity
catalog, one node per visible depth-1 field, one level of expansion for plain
object fields, and typed edges between them. Layout coordinates are a fixed
grid so repeated builds render identically.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sync_app.models import FieldMapping

from .cache_store import SchemaCacheStore
from .catalog import (
    KNOWN_ENTITIES,
    KNOWN_ENTITY_NAMES,
    FieldCategory,
    FieldKind,
    KnownEntity,
    RemoteField,
    is_protected_field,
)

DEFAULT_API_VERSION = "2024-01"

EXCLUDED_CATEGORIES = frozenset({FieldCategory.METAFIELD, FieldCategory.CONTEXTUAL, FieldCategory.COMPUTED})
READONLY_CATEGORIES = frozenset({FieldCategory.CONNECTION, FieldCategory.POLYMORPHIC})

ENTITY_SPACING_X = 400
FIELD_SPACING_Y = 50
SUBFIELD_INDENT_X = 40
ENTITY_START_Y = 0
FIELD_START_Y = 80

EDGE_ENTITY_TO_FIELD = "entity-to-field"
EDGE_FIELD_TO_SUBFIELD = "field-to-subfield"
EDGE_FIELD_TO_ENTITY = "field-to-entity"


def entity_node_id(entity_name: str) -> str:
    return f"entity:{entity_name}"


def field_node_id(full_path: str) -> str:
    return f"field:{full_path}"


@dataclass(frozen=True)
class SchemaNode:
    id: str
    node_type: str
    x: int
    y: int
    data: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.node_type,
            "position": {"x": self.x, "y": self.y},
            "data": dict(self.data),
        }


@dataclass(frozen=True)
class SchemaEdge:
    id: str
    source: str
    target: str
    edge_type: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = {"edge_type": self.edge_type}
        payload.update(self.data)
        return {"id": self.id, "source": self.source, "target": self.target, "data": payload}


@dataclass(frozen=True)
class SchemaGraph:
    nodes: Sequence[SchemaNode]
    edges: Sequence[SchemaEdge]
    entity_count: int
    field_count: int
    relationship_count: int
    api_version: str
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "entity_count": self.entity_count,
            "field_count": self.field_count,
            "relationship_count": self.relationship_count,
            "api_version": self.api_version,
            "generated_at": self.generated_at.isoformat(),
        }


class SchemaGraphBuilder:
    """Builds :class:`SchemaGraph` instances for a connection from cached rows."""

    def __init__(
        self,
        store: SchemaCacheStore,
        *,
        api_version: str = DEFAULT_API_VERSION,
        entities: Sequence[KnownEntity] = KNOWN_ENTITIES,
    ):
        self.store = store
        self.api_version = api_version
        self.entities = tuple(entities)
        self._entity_names = frozenset(entity.name for entity in self.entities) or KNOWN_ENTITY_NAMES

    def build(self, connection_id: str) -> SchemaGraph | None:
        """
        Build the graph, or return ``None`` when introspection has not run yet.
        """
        cached_entities = self.store.get_entities(connection_id)
        if not cached_entities:
            return None
        mappings = self.store.get_field_mappings(connection_id)
        object_types = self.store.get_object_types(connection_id)

        nodes: list[SchemaNode] = []
        for index, entity in enumerate(self.entities):
            entity_x = index * ENTITY_SPACING_X
            visible = [
                remote_field
                for remote_field in cached_entities.get(entity.name, ())
                if remote_field.category not in EXCLUDED_CATEGORIES
            ]
            nodes.append(
                SchemaNode(
                    id=entity_node_id(entity.name),
                    node_type="entity",
                    x=entity_x,
                    y=ENTITY_START_Y,
                    data={
                        "node_type": "entity",
                        "entity_name": entity.name,
                        "display_name": entity.display_name,
                        "field_count": len(visible),
                        "is_expanded": True,
                    },
                )
            )

            current_y = FIELD_START_Y
            for remote_field in visible:
                nodes.append(
                    self._field_node(entity.name, remote_field, 1, "", entity_x, current_y, mappings)
                )
                current_y += FIELD_SPACING_Y
                if self._is_expandable(remote_field):
                    for sub_field in object_types.get(remote_field.base_type, ()):
                        if sub_field.kind not in (FieldKind.SCALAR, FieldKind.ENUM):
                            continue
                        nodes.append(
                            self._field_node(
                                entity.name,
                                sub_field,
                                2,
                                remote_field.name,
                                entity_x + SUBFIELD_INDENT_X,
                                current_y,
                                mappings,
                            )
                        )
                        current_y += FIELD_SPACING_Y

        edges = build_edges(nodes)
        return SchemaGraph(
            nodes=tuple(nodes),
            edges=tuple(edges),
            entity_count=sum(1 for node in nodes if node.node_type == "entity"),
            field_count=sum(1 for node in nodes if node.node_type == "field"),
            relationship_count=sum(1 for edge in edges if edge.edge_type == EDGE_FIELD_TO_ENTITY),
            api_version=self.api_version,
            generated_at=datetime.now(timezone.utc),
        )

    def _is_expandable(self, remote_field: RemoteField) -> bool:
        # Depth 3 is never produced: only scalar/enum sub-fields are emitted.
        return (
            remote_field.kind == FieldKind.OBJECT
            and not remote_field.base_type.endswith("Connection")
            and remote_field.base_type not in self._entity_names
        )

    def _field_node(
        self,
        entity_name: str,
        remote_field: RemoteField,
        depth: int,
        parent_path: str,
        x: int,
        y: int,
        mappings: Mapping[str, FieldMapping],
    ) -> SchemaNode:
        field_path = remote_field.name if depth == 1 else f"{parent_path}.{remote_field.name}"
        full_path = f"{entity_name}.{field_path}"
        is_relationship = remote_field.base_type in self._entity_names
        mapping = mappings.get(full_path)
        return SchemaNode(
            id=field_node_id(full_path),
            node_type="field",
            x=x,
            y=y,
            data={
                "node_type": "field",
                "field_name": remote_field.name,
                "field_path": field_path,
                "full_path": full_path,
                "parent_entity": entity_name,
                "depth": depth,
                "kind": remote_field.kind,
                "base_type": remote_field.base_type,
                "category": remote_field.category,
                "description": remote_field.description,
                "is_deprecated": remote_field.is_deprecated,
                "is_relationship": is_relationship,
                "target_entity": remote_field.base_type if is_relationship else None,
                "is_enabled": bool(mapping.enabled) if mapping is not None else False,
                "is_protected": is_protected_field(entity_name, field_path),
                "is_mapped": bool(mapping is not None and mapping.target_column),
                "mapping": mapping.as_dict() if mapping is not None else None,
                "is_readonly": remote_field.category in READONLY_CATEGORIES,
            },
        )


def build_edges(nodes: Sequence[SchemaNode]) -> list[SchemaEdge]:
    """Derive entity, sub-field and relationship edges from a node list."""
    entity_ids = {node.id for node in nodes if node.node_type == "entity"}
    field_nodes = [node for node in nodes if node.node_type == "field"]

    direct_by_entity: dict[str, list[SchemaNode]] = defaultdict(list)
    subfields_by_parent: dict[tuple[str, str], list[SchemaNode]] = defaultdict(list)
    for node in field_nodes:
        if node.data["depth"] == 1:
            direct_by_entity[node.data["parent_entity"]].append(node)
        else:
            parent_name = node.data["field_path"].split(".", 1)[0]
            subfields_by_parent[(node.data["parent_entity"], parent_name)].append(node)

    edges: list[SchemaEdge] = []
    for node in nodes:
        if node.node_type != "entity":
            continue
        for field_node in direct_by_entity.get(node.data["entity_name"], ()):
            edges.append(
                SchemaEdge(
                    id=f"edge:{node.id}-{field_node.id}",
                    source=node.id,
                    target=field_node.id,
                    edge_type=EDGE_ENTITY_TO_FIELD,
                )
            )

    for field_node in field_nodes:
        data = field_node.data
        if data["depth"] != 1 or data["kind"] != FieldKind.OBJECT:
            continue
        for sub_node in subfields_by_parent.get((data["parent_entity"], data["field_name"]), ()):
            edges.append(
                SchemaEdge(
                    id=f"edge:{field_node.id}-{sub_node.id}",
                    source=field_node.id,
                    target=sub_node.id,
                    edge_type=EDGE_FIELD_TO_SUBFIELD,
                )
            )

    for field_node in field_nodes:
        data = field_node.data
        if not data["is_relationship"] or not data["target_entity"]:
            continue
        target_id = entity_node_id(data["target_entity"])
        if target_id not in entity_ids:
            continue
        edges.append(
            SchemaEdge(
                id=f"edge:rel:{field_node.id}-{target_id}",
                source=field_node.id,
                target=target_id,
                edge_type=EDGE_FIELD_TO_ENTITY,
                data={"source_field": data["field_path"], "target_entity": data["target_entity"]},
            )
        )
    return edges
