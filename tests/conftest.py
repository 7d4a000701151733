from __future__ import annotations

import copy
from datetime import datetime

import pytest
from flask import Flask
from sqlalchemy import create_engine, text

from sync_app.engine import init_sync_engine, set_record_source_factory
from sync_app.engine.mapping import MappingConfig, MappingService
from sync_app.engine.pipeline import RecordBatch
from sync_app.models import db

WEBHOOK_SECRET = "whsec-test"

PRODUCTS_DDL = """
CREATE TABLE products (
    shopify_id TEXT PRIMARY KEY NOT NULL,
    title VARCHAR(255) NOT NULL,
    price NUMERIC(10, 2),
    status VARCHAR(20),
    vendor VARCHAR(100),
    deleted_at TEXT
)
"""

VENDORS_DDL = """
CREATE TABLE vendors (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL
)
"""

PRODUCT_MAPPING = {
    "id": "products",
    "name": "Products",
    "sourceResource": "Product",
    "targetTable": "products",
    "keyMapping": {"sourceField": "id", "targetColumn": "shopify_id"},
    "filters": [{"field": "status", "operator": "neq", "value": "ARCHIVED"}],
    "deleteStrategy": "soft",
    "softDeleteColumn": "deleted_at",
    "mappings": [
        {
            "id": "products:id",
            "source": "id",
            "target": "shopify_id",
            "transform": {"type": "coerce", "targetType": "bigint"},
        },
        {"id": "products:title", "source": "title", "target": "title", "transform": {"type": "direct"}},
        {
            "id": "products:price",
            "source": "price",
            "target": "price",
            "transform": {"type": "coerce", "targetType": "decimal(10,2)"},
        },
        {
            "id": "products:status",
            "source": "status",
            "target": "status",
            "transform": {"type": "expression", "formula": "toLowerCase(status)"},
        },
        {
            "id": "products:vendor",
            "source": "vendor",
            "target": "vendor",
            "transform": {
                "type": "lookup",
                "table": "vendors",
                "matchColumn": "code",
                "returnColumn": "name",
                "defaultValue": "Unknown",
            },
        },
    ],
}


def _scalar(name, type_name, kind="SCALAR", non_null=False):
    type_ref = {"kind": kind, "name": type_name, "ofType": None}
    if non_null:
        type_ref = {"kind": "NON_NULL", "name": None, "ofType": type_ref}
    return {"name": name, "description": None, "isDeprecated": False, "args": [], "type": type_ref}


PRODUCT_TYPE = {
    "name": "Product",
    "kind": "OBJECT",
    "fields": [
        _scalar("id", "ID", non_null=True),
        _scalar("title", "String", non_null=True),
        _scalar("vendor", "String"),
        _scalar("status", "ProductStatus", kind="ENUM", non_null=True),
        _scalar("createdAt", "DateTime", non_null=True),
        _scalar("seo", "SEO", kind="OBJECT", non_null=True),
        _scalar("variants", "ProductVariantConnection", kind="OBJECT", non_null=True),
        {
            "name": "metafield",
            "description": None,
            "isDeprecated": False,
            "args": [
                {
                    "name": "key",
                    "defaultValue": None,
                    "type": {"kind": "NON_NULL", "name": None, "ofType": {"kind": "SCALAR", "name": "String"}},
                }
            ],
            "type": {"kind": "OBJECT", "name": "Metafield", "ofType": None},
        },
        _scalar("metafields", "MetafieldConnection", kind="OBJECT", non_null=True),
    ],
}

VARIANT_TYPE = {
    "name": "ProductVariant",
    "kind": "OBJECT",
    "fields": [
        _scalar("id", "ID", non_null=True),
        _scalar("sku", "String"),
        _scalar("price", "Money", non_null=True),
        _scalar("inventoryQuantity", "Int"),
        _scalar("product", "Product", kind="OBJECT", non_null=True),
    ],
}

SEO_TYPE = {
    "name": "SEO",
    "kind": "OBJECT",
    "fields": [
        _scalar("title", "String"),
        _scalar("description", "String"),
    ],
}


class FakeRecordSource:
    """Serves canned record batches and remembers every fetch call."""

    def __init__(self, batches=None, error=None):
        self.batches = [list(batch) for batch in (batches or [])]
        self.error = error
        self.calls = []

    def fetch(self, resource, fields, *, updated_after=None):
        self.calls.append({"resource": resource, "fields": list(fields), "updated_after": updated_after})
        if self.error is not None:
            raise self.error
        for sequence, records in enumerate(self.batches, start=1):
            yield RecordBatch(sequence=sequence, records=copy.deepcopy(records), cursor=f"cursor-{sequence}")


def product_record(product_id, title="Widget", price="19.99", status="ACTIVE", vendor="acme"):
    return {
        "id": f"gid://shopify/Product/{product_id}",
        "title": title,
        "price": price,
        "status": status,
        "vendor": vendor,
        "updatedAt": datetime(2024, 1, 2, 3, 4, 5).isoformat() + "Z",
    }


@pytest.fixture
def target_database_url(tmp_path):
    return f"sqlite:///{(tmp_path / 'target.db').as_posix()}"


@pytest.fixture
def target_engine(target_database_url):
    engine = create_engine(target_database_url)
    with engine.begin() as conn:
        conn.execute(text(PRODUCTS_DDL))
        conn.execute(text(VENDORS_DDL))
        conn.execute(text("INSERT INTO vendors (code, name) VALUES ('ACME', 'Acme Corp')"))
    yield engine
    engine.dispose()


@pytest.fixture
def product_mapping():
    return MappingConfig.from_dict(copy.deepcopy(PRODUCT_MAPPING))


@pytest.fixture
def fake_source():
    return FakeRecordSource(
        [
            [product_record(1001), product_record(1002, title="Gadget", price="5", status="ARCHIVED")],
            [product_record(1003, title="Gizmo", price="12.345", vendor="unknown-vendor")],
        ]
    )


@pytest.fixture
def sync_app_factory(tmp_path, target_engine, target_database_url):
    """Build an isolated app with the sync engine enabled against the target database."""

    created = []

    def _factory(source=None, **overrides):
        app = Flask(__name__, instance_path=str(tmp_path / "instance"))
        app.config.update(
            SECRET_KEY="test-secret",
            TESTING=True,
            SQLALCHEMY_DATABASE_URI=f"sqlite:///{(tmp_path / 'sync.db').as_posix()}",
            SYNC_ENABLED=True,
            SYNC_JOB_FAMILIES=("export", "thumbnail", "sync"),
            SYNC_WORKER_ENABLED=False,
            SYNC_WEBHOOK_SECRET=WEBHOOK_SECRET,
            SYNC_TARGET_DATABASE_URL=target_database_url,
            CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        )
        app.config.update(overrides)
        db.init_app(app)
        with app.app_context():
            db.create_all()
        init_sync_engine(app)
        if source is not None:
            set_record_source_factory(app, lambda _app: source)
        created.append(app)
        return app

    yield _factory

    for app in created:
        with app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()


@pytest.fixture
def seed_mapping():
    """Store a mapping config and commit it so other sessions can read it."""

    def _seed(config, *, enabled=True, connection_id="default"):
        MappingService(connection_id=connection_id).save(config, enabled=enabled)
        db.session.commit()
        return config

    return _seed


@pytest.fixture
def make_product():
    return product_record


@pytest.fixture
def make_source():
    return FakeRecordSource


@pytest.fixture
def introspection_types():
    return copy.deepcopy({"Product": PRODUCT_TYPE, "ProductVariant": VARIANT_TYPE, "SEO": SEO_TYPE})


@pytest.fixture
def mapping_payload():
    """A fresh, mutable copy of the products mapping document."""
    return copy.deepcopy(PRODUCT_MAPPING)


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET
