import json

import pytest
from kombu.exceptions import OperationalError
from sqlalchemy import text

from sync_app.engine.container import get_job_service
from sync_app.engine.jobs import JobStore
from sync_app.engine.mapping import MappingConfig, MappingService
from sync_app.engine.pipeline import (
    RunningSyncRegistry,
    WebhookProcessor,
    compute_signature,
    extract_key,
    flatten_payload,
    is_delete_topic,
    resource_for_topic,
    verify_signature,
)
from sync_app.engine.transforms import LookupResolver, TransformEngine
from sync_app.engine.writer import DatabaseWriter, SQLiteDialect
from sync_app.models import JobStatus

PRODUCT_PAYLOAD = {
    "id": 1001,
    "admin_graphql_api_id": "gid://shopify/Product/1001",
    "title": "Widget",
    "price": "19.99",
    "status": "ACTIVE",
    "vendor": "ACME",
    "updated_at": "2024-01-02T03:04:05Z",
}


@pytest.fixture
def registry():
    return RunningSyncRegistry()


@pytest.fixture
def processor(target_engine, registry):
    return WebhookProcessor(
        MappingService(),
        DatabaseWriter(target_engine),
        TransformEngine(LookupResolver(target_engine, SQLiteDialect())),
        registry=registry,
    )


def _products(target_engine):
    with target_engine.connect() as conn:
        return [
            tuple(row)
            for row in conn.execute(text("SELECT shopify_id, title, vendor, deleted_at FROM products ORDER BY shopify_id"))
        ]


def _seed_product_row(target_engine, shopify_id="1001"):
    with target_engine.begin() as conn:
        conn.execute(text("INSERT INTO products (shopify_id, title) VALUES (:id, 'Widget')"), {"id": shopify_id})


class TestWebhookHelpers:
    def test_signature_round_trip(self):
        body = b'{"id": 1}'
        signature = compute_signature(body, "secret")

        assert verify_signature(body, signature, "secret") is True
        assert verify_signature(body, f"  {signature} ", "secret") is True
        assert verify_signature(b'{"id": 2}', signature, "secret") is False
        assert verify_signature(body, signature, "other") is False

    def test_signature_requires_header_and_secret(self):
        assert verify_signature(b"{}", None, "secret") is False
        assert verify_signature(b"{}", "abc", None) is False

    def test_topics(self):
        assert resource_for_topic("products/update") == "Product"
        assert resource_for_topic("orders/updated") == "Order"
        assert resource_for_topic("carts/update") is None
        assert is_delete_topic("products/delete") is True
        assert is_delete_topic("orders/cancelled") is True
        assert is_delete_topic("products/update") is False

    def test_flatten_payload(self):
        record = flatten_payload(
            {"id": 1, "updated_at": "2024-01-01", "image": {"src": "a.png"}, "product_id": 7}
        )

        assert record["image.src"] == "a.png"
        assert record["image"] == {"src": "a.png"}
        assert record["updatedAt"] == "2024-01-01"
        assert record["product.id"] == 7

    def test_flatten_keeps_existing_graph_names(self):
        record = flatten_payload({"updated_at": "snake", "updatedAt": "camel"})
        assert record["updatedAt"] == "camel"

    def test_extract_key(self):
        assert extract_key({"sku": "ABC", "id": 1}, "sku") == "ABC"
        assert extract_key({"id": 1001}, "sku") == 1001
        assert extract_key({"admin_graphql_api_id": "gid://shopify/Product/55"}) == "55"
        assert extract_key({}) is None


class TestWebhookProcessor:
    def test_update_upserts_the_record(self, processor, product_mapping, seed_mapping, target_engine):
        seed_mapping(product_mapping)

        result = processor.process("products/update", PRODUCT_PAYLOAD)

        assert result.success is True
        assert result.records_written == 1
        assert result.mappings_processed == ["products"]
        assert _products(target_engine) == [("1001", "Widget", "Acme Corp", None)]

    def test_soft_delete_stamps_the_column(self, processor, product_mapping, seed_mapping, target_engine):
        seed_mapping(product_mapping)
        _seed_product_row(target_engine)

        result = processor.process("products/delete", {"id": 1001})

        assert result.success is True
        assert result.mappings_processed == ["products"]
        assert _products(target_engine)[0][3] is not None

    def test_hard_delete_removes_the_row(self, processor, mapping_payload, seed_mapping, target_engine):
        mapping_payload["deleteStrategy"] = "hard"
        seed_mapping(MappingConfig.from_dict(mapping_payload))
        _seed_product_row(target_engine)

        processor.process("products/delete", {"id": 1001})

        assert _products(target_engine) == []

    def test_ignore_strategy_keeps_the_row(self, processor, mapping_payload, seed_mapping, target_engine):
        mapping_payload["deleteStrategy"] = "ignore"
        seed_mapping(MappingConfig.from_dict(mapping_payload))
        _seed_product_row(target_engine)

        result = processor.process("products/delete", {"id": 1001})

        assert result.mappings_processed == ["products"]
        assert len(_products(target_engine)) == 1

    def test_delete_without_key_is_an_error(self, processor, product_mapping, seed_mapping):
        seed_mapping(product_mapping)

        result = processor.process("products/delete", {"title": "no id"})

        assert result.success is False
        assert result.errors == ["Products: Cannot determine key value for delete operation"]

    def test_mappings_with_a_running_sync_are_skipped(
        self, processor, product_mapping, seed_mapping, registry, target_engine
    ):
        seed_mapping(product_mapping)

        with registry.claim("products", "full"):
            result = processor.process("products/update", PRODUCT_PAYLOAD)

        assert result.mappings_skipped == ["products"]
        assert result.records_written == 0
        assert _products(target_engine) == []

    def test_webhook_disabled_mappings_are_ignored(self, processor, mapping_payload, seed_mapping):
        mapping_payload["webhookEnabled"] = False
        seed_mapping(MappingConfig.from_dict(mapping_payload))

        result = processor.process("products/update", PRODUCT_PAYLOAD)

        assert result.mappings_processed == []
        assert result.success is True

    def test_unknown_topic_is_a_no_op(self, processor):
        result = processor.process("carts/update", {"id": 1})

        assert result.success is True
        assert result.mappings_processed == []

    def test_write_failures_are_reported(self, processor, product_mapping, seed_mapping, target_engine):
        seed_mapping(product_mapping)

        result = processor.process("products/update", {**PRODUCT_PAYLOAD, "title": None})

        assert result.success is False
        assert result.errors[0].startswith("Products: ")
        assert _products(target_engine) == []

    def test_result_to_dict(self, processor):
        payload = processor.process("carts/update", {}).to_dict()

        assert set(payload) == {
            "topic",
            "success",
            "mappings_processed",
            "mappings_skipped",
            "records_written",
            "errors",
            "duration_seconds",
        }


def _post_webhook(client, body, *, secret, topic="products/update", signature=None):
    raw = json.dumps(body).encode("utf-8")
    headers = {"X-Shopify-Topic": topic, "X-Shopify-Webhook-Id": "wh-1"}
    if secret is not None or signature is not None:
        headers["X-Shopify-Hmac-Sha256"] = signature or compute_signature(raw, secret)
    return client.post("/sync/webhooks", data=raw, headers=headers, content_type="application/json")


class TestWebhookEndpoint:
    def test_missing_signature_is_rejected(self, sync_app_factory):
        client = sync_app_factory().test_client()

        response = _post_webhook(client, PRODUCT_PAYLOAD, secret=None)

        assert response.status_code == 401
        assert response.get_json() == {"error": "Missing HMAC signature"}

    def test_invalid_signature_is_rejected(self, sync_app_factory):
        client = sync_app_factory().test_client()

        response = _post_webhook(client, PRODUCT_PAYLOAD, secret=None, signature="bm9wZQ==")

        assert response.status_code == 401
        assert response.get_json() == {"error": "Invalid HMAC signature"}

    def test_unconfigured_secret_fails_closed(self, sync_app_factory):
        client = sync_app_factory(SYNC_WEBHOOK_SECRET=None).test_client()

        response = _post_webhook(client, PRODUCT_PAYLOAD, secret="anything")

        assert response.status_code == 500

    def test_head_request_succeeds(self, sync_app_factory):
        assert sync_app_factory().test_client().head("/sync/webhooks").status_code == 200

    def test_unhandled_topic_is_acknowledged(self, sync_app_factory, webhook_secret):
        client = sync_app_factory().test_client()

        response = _post_webhook(client, {"id": 1}, secret=webhook_secret, topic="carts/update")

        assert response.status_code == 200
        assert response.get_json() == {"success": True, "ignored": True, "topic": "carts/update", "webhookId": "wh-1"}

    def test_processed_inline_without_sync_queue(
        self, sync_app_factory, webhook_secret, product_mapping, seed_mapping, target_engine
    ):
        app = sync_app_factory(SYNC_JOB_FAMILIES=("export",))
        with app.app_context():
            seed_mapping(product_mapping)

        response = _post_webhook(app.test_client(), PRODUCT_PAYLOAD, secret=webhook_secret)

        assert response.status_code == 200
        body = response.get_json()
        assert body["queued"] is False
        assert body["records_written"] == 1
        assert body["webhookId"] == "wh-1"
        assert _products(target_engine)[0][:2] == ("1001", "Widget")

    def test_queued_as_sync_job(self, sync_app_factory, webhook_secret, product_mapping, seed_mapping, target_engine):
        app = sync_app_factory()
        with app.app_context():
            seed_mapping(product_mapping)

        response = _post_webhook(app.test_client(), PRODUCT_PAYLOAD, secret=webhook_secret)

        body = response.get_json()
        assert response.status_code == 200
        assert body["queued"] is True
        with app.app_context():
            job = JobStore().require(body["jobId"])
            assert job.family == "sync"
            assert job.triggered_by == "webhook"
            assert job.status == JobStatus.COMPLETED
            assert job.payload_json["topic"] == "products/update"
        assert _products(target_engine)[0][2] == "Acme Corp"

    def test_broker_failure_runs_the_created_job_inline(
        self, monkeypatch, sync_app_factory, webhook_secret, product_mapping, seed_mapping, target_engine
    ):
        app = sync_app_factory()
        with app.app_context():
            seed_mapping(product_mapping)
        service = get_job_service(app, "sync")

        def reject(*args, **kwargs):
            raise OperationalError("broker down")

        monkeypatch.setattr(service.celery_app.tasks[service.family.task_name], "apply_async", reject)

        response = _post_webhook(app.test_client(), PRODUCT_PAYLOAD, secret=webhook_secret)

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["queued"] is False
        assert body["records_written"] == 1
        with app.app_context():
            job = JobStore().require(body["jobId"])
            assert job.status == JobStatus.COMPLETED
            assert job.task_id is None
            assert JobStore().counts_by_status("sync")["pending"] == 0
        assert _products(target_engine)[0][:2] == ("1001", "Widget")
