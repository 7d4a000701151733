"""
Apply single-record webhook deliveries to the target database.

Each delivery is matched to every enabled mapping for the topic's resource.
Create/update topics are transformed and upserted; delete topics follow the
mapping's delete strategy. Mappings with a bulk sync in progress are skipped.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError

from sync_app.engine.mapping.config import MappingConfig
from sync_app.engine.mapping.service import MappingService
from sync_app.engine.transforms.engine import STATUS_ERROR, TransformEngine
from sync_app.engine.writer.database_writer import DatabaseWriter, DatabaseWriterError

from .sync_engine import RunningSyncRegistry

logger = logging.getLogger(__name__)

TOPIC_RESOURCES: Mapping[str, str] = {
    "products/create": "Product",
    "products/update": "Product",
    "products/delete": "Product",
    "collections/create": "Collection",
    "collections/update": "Collection",
    "collections/delete": "Collection",
    "orders/create": "Order",
    "orders/updated": "Order",
    "orders/cancelled": "Order",
    "customers/create": "Customer",
    "customers/update": "Customer",
    "customers/delete": "Customer",
    "inventory_levels/update": "InventoryLevel",
}

FIELD_ALIASES: Mapping[str, str] = {
    "admin_graphql_api_id": "id",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "published_at": "publishedAt",
    "product_id": "product.id",
    "inventory_item_id": "inventoryItem.id",
}

DEFAULT_SOFT_DELETE_COLUMN = "deletedAt"

_GID_SUFFIX = re.compile(r"/(\d+)$")


class WebhookError(RuntimeError):
    """Raised when a delivery cannot be applied to a mapping."""


def resource_for_topic(topic: str) -> str | None:
    return TOPIC_RESOURCES.get(topic)


def is_delete_topic(topic: str) -> bool:
    return topic.endswith("/delete") or topic.endswith("/cancelled")


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a base64 HMAC-SHA256 signature header."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip())


def flatten_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """
    Expose nested objects one level deep as ``parent.child`` keys and add
    GraphQL-style names for the snake_case fields webhooks send.
    """
    result: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, Mapping):
            for nested_key, nested_value in value.items():
                result[f"{key}.{nested_key}"] = nested_value
        result[key] = value
    for webhook_field, graph_field in FIELD_ALIASES.items():
        if webhook_field in payload and graph_field not in result:
            result[graph_field] = payload[webhook_field]
    return result


def extract_key(payload: Mapping[str, Any], key_source_field: str = "id") -> Any:
    key = payload.get(key_source_field)
    if not key:
        key = payload.get("id")
    if not key and payload.get("admin_graphql_api_id"):
        gid = str(payload["admin_graphql_api_id"])
        match = _GID_SUFFIX.search(gid)
        key = match.group(1) if match else gid
    return key or None


@dataclass
class WebhookResult:
    topic: str
    success: bool = True
    mappings_processed: list[str] = field(default_factory=list)
    mappings_skipped: list[str] = field(default_factory=list)
    records_written: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "success": self.success,
            "mappings_processed": list(self.mappings_processed),
            "mappings_skipped": list(self.mappings_skipped),
            "records_written": self.records_written,
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 3),
        }


class WebhookProcessor:
    """Route one webhook delivery to the mappings of its resource."""

    def __init__(
        self,
        mappings: MappingService,
        writer: DatabaseWriter,
        transformer: TransformEngine,
        *,
        registry: RunningSyncRegistry,
        log: logging.Logger | None = None,
    ):
        self.mappings = mappings
        self.writer = writer
        self.transformer = transformer
        self.registry = registry
        self.logger = log or logger

    def process(self, topic: str, payload: Mapping[str, Any]) -> WebhookResult:
        started = time.monotonic()
        result = WebhookResult(topic=topic)

        resource = resource_for_topic(topic)
        if resource is None:
            self.logger.warning("Ignoring webhook with unknown topic", extra={"sync_webhook_topic": topic})
            result.duration_seconds = time.monotonic() - started
            return result

        configs = [config for config in self.mappings.for_resource(resource) if config.webhook_enabled]
        deleting = is_delete_topic(topic)
        for config in configs:
            if self.registry.is_running(config.id):
                self.logger.info(
                    "Skipping webhook while bulk sync runs",
                    extra={"sync_webhook_topic": topic, "sync_mapping_id": config.id},
                )
                result.mappings_skipped.append(config.id)
                continue
            try:
                if deleting:
                    self.apply_delete(config, payload)
                else:
                    result.records_written += self.apply_upsert(config, payload)
            except (WebhookError, DatabaseWriterError, SQLAlchemyError) as exc:
                result.errors.append(f"{config.name}: {exc}")
                self.logger.warning(
                    "Webhook application failed",
                    extra={"sync_webhook_topic": topic, "sync_mapping_id": config.id, "sync_error": str(exc)},
                )
                continue
            result.mappings_processed.append(config.id)

        if result.errors and not result.mappings_processed:
            result.success = False
        result.duration_seconds = time.monotonic() - started
        return result

    def apply_upsert(self, config: MappingConfig, payload: Mapping[str, Any]) -> int:
        record = flatten_payload(payload)
        record["id"] = str(payload.get("id") or payload.get("admin_graphql_api_id") or "")
        batch = self.transformer.transform_batch(config, [record])
        rows = [outcome.target_row for outcome in batch.results if outcome.status != STATUS_ERROR]
        if not rows:
            messages = [error.message for outcome in batch.results for error in outcome.errors]
            raise WebhookError("; ".join(messages) or "Record produced no columns")
        key_column = config.key_mapping.target_column if config.key_mapping else "id"
        written = self.writer.upsert(config.target_table, key_column, rows)
        if written.errors:
            raise WebhookError(written.errors[0].error)
        return written.written

    def apply_delete(self, config: MappingConfig, payload: Mapping[str, Any]) -> int:
        if config.delete_strategy == "ignore":
            self.logger.info("Ignoring delete webhook", extra={"sync_mapping_id": config.id})
            return 0

        key_source = config.key_mapping.source_field if config.key_mapping else "id"
        key_column = config.key_mapping.target_column if config.key_mapping else "id"
        key = extract_key(payload, key_source)
        if key is None:
            raise WebhookError("Cannot determine key value for delete operation")

        if config.delete_strategy == "soft":
            column = config.soft_delete_column or DEFAULT_SOFT_DELETE_COLUMN
            return self.writer.update_by_key(
                config.target_table,
                key_column,
                key,
                {column: datetime.now(timezone.utc).isoformat()},
            )
        return self.writer.delete_by_key(config.target_table, key_column, key)
