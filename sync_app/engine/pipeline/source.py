"""
Remote record sources for the sync pipeline.

``GraphQLRecordSource`` pages through a commerce GraphQL connection with
cursor pagination and yields batches of plain dict records.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Mapping, Protocol, Sequence

import requests

DEFAULT_PAGE_SIZE = 250
DEFAULT_TIMEOUT_SECONDS = 30.0

RESOURCE_QUERY_ROOTS: Mapping[str, str] = {
    "Product": "products",
    "ProductVariant": "productVariants",
    "Collection": "collections",
    "Order": "orders",
    "Customer": "customers",
    "InventoryItem": "inventoryItems",
}

_METAFIELD_PATH = re.compile(r"^metafields\.([A-Za-z0-9_\-]+)\.([A-Za-z0-9_\-]+)$")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class RemoteSourceError(RuntimeError):
    """Raised when the remote API rejects a query or returns GraphQL errors."""


@dataclass(frozen=True)
class RecordBatch:
    sequence: int
    records: List[dict[str, Any]]
    cursor: str | None


class RecordSource(Protocol):
    def fetch(
        self,
        resource: str,
        fields: Sequence[str],
        *,
        updated_after: datetime | None = None,
    ) -> Iterator[RecordBatch]:
        ...


def metafield_alias(namespace: str, key: str) -> str:
    return "mf_" + re.sub(r"[^A-Za-z0-9_]", "_", f"{namespace}_{key}")


def build_selection(fields: Iterable[str]) -> str:
    """
    Render dotted field paths as a GraphQL selection set.

    ``metafields.<ns>.<key>`` becomes an aliased ``metafield(namespace, key)``
    selection; other dotted paths become nested selections. ``id`` is always
    selected.
    """
    tree: dict[str, Any] = {"id": {}}
    metafields: list[tuple[str, str]] = []
    for path in fields:
        match = _METAFIELD_PATH.match(path)
        if match:
            metafields.append((match.group(1), match.group(2)))
            continue
        node = tree
        for part in path.split("."):
            if not _IDENTIFIER.match(part):
                raise RemoteSourceError(f"Invalid field path segment '{part}' in '{path}'")
            node = node.setdefault(part, {})

    def _render(node: Mapping[str, Any]) -> str:
        parts = []
        for name, children in node.items():
            parts.append(f"{name} {{ {_render(children)} }}" if children else name)
        return " ".join(parts)

    selection = _render(tree)
    for namespace, key in dict.fromkeys(metafields):
        selection += (
            f' {metafield_alias(namespace, key)}: metafield(namespace: "{namespace}", key: "{key}") {{ value }}'
        )
    return selection


def build_query(
    resource: str,
    fields: Iterable[str],
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    updated_after: datetime | None = None,
) -> str:
    root = RESOURCE_QUERY_ROOTS.get(resource)
    if root is None:
        raise RemoteSourceError(f"Unsupported resource '{resource}'")
    arguments = ["first: $first", "after: $after"]
    if updated_after is not None:
        stamp = updated_after.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        arguments.append(f"query: \"updated_at:>'{stamp}'\"")
    return (
        "query SyncPage($first: Int!, $after: String) { "
        f"{root}({', '.join(arguments)}) {{ "
        f"edges {{ node {{ {build_selection(fields)} }} }} "
        "pageInfo { hasNextPage endCursor } } }"
    )


def unpack_metafields(node: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    """Move aliased metafield selections back under their dotted ``metafields.ns.key`` names."""
    for path in fields:
        match = _METAFIELD_PATH.match(path)
        if not match:
            continue
        alias = metafield_alias(match.group(1), match.group(2))
        payload = node.pop(alias, None)
        node[path] = payload.get("value") if isinstance(payload, Mapping) else None
    return node


class GraphQLRecordSource:
    """Fetch records page by page from a GraphQL Admin API endpoint."""

    def __init__(
        self,
        endpoint: str,
        access_token: str | None = None,
        *,
        session: requests.Session | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        if not endpoint:
            raise RemoteSourceError("A GraphQL endpoint URL is required.")
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.page_size = max(1, min(int(page_size), 250))
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self._headers = {"Content-Type": "application/json"}
        if access_token:
            self._headers["X-Shopify-Access-Token"] = access_token

    # Public API -----------------------------------------------------------------

    def fetch(
        self,
        resource: str,
        fields: Sequence[str],
        *,
        updated_after: datetime | None = None,
    ) -> Iterator[RecordBatch]:
        root = RESOURCE_QUERY_ROOTS.get(resource)
        query = build_query(resource, fields, page_size=self.page_size, updated_after=updated_after)
        cursor: str | None = None
        sequence = 0
        while True:
            data = self.execute(query, {"first": self.page_size, "after": cursor})
            connection = (data or {}).get(root) or {}
            records = [
                unpack_metafields(dict(edge.get("node") or {}), fields)
                for edge in connection.get("edges") or ()
            ]
            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            yield RecordBatch(sequence=sequence, records=records, cursor=cursor)
            sequence += 1
            if not page_info.get("hasNextPage") or not cursor:
                break

    def execute(self, query: str, variables: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
        response = self.session.post(
            self.endpoint,
            headers=self._headers,
            json={"query": query, "variables": dict(variables or {})},
            timeout=self.timeout,
        )
        if not response.ok:
            self.logger.error(
                "GraphQL request failed",
                extra={"sync_status_code": response.status_code, "sync_response": response.text[:500]},
            )
        response.raise_for_status()
        payload = response.json()
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(str(error.get("message", error)) for error in errors)
            raise RemoteSourceError(f"GraphQL query failed: {messages}")
        return payload.get("data") or {}
