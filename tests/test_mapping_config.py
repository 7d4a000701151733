import textwrap

import pytest

from sync_app.engine.mapping import (
    CoerceTransform,
    DefaultTransform,
    LookupTransform,
    MappingConfig,
    MappingLoadError,
    MappingNotFoundError,
    MappingService,
    MultiSource,
    SingleSource,
    load_mapping_config,
    parse_transform,
)
from sync_app.models import db


def _write_yaml(path, body):
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_from_dict_builds_column_mappings(mapping_payload):
    config = MappingConfig.from_dict(mapping_payload)

    assert config.id == "products"
    assert config.source_resource == "Product"
    assert config.target_table == "products"
    assert config.key_mapping.source_field == "id"
    assert config.key_mapping.target_column == "shopify_id"
    assert config.delete_strategy == "soft"
    assert config.soft_delete_column == "deleted_at"
    assert [mapping.target_column for mapping in config.mappings] == [
        "shopify_id",
        "title",
        "price",
        "status",
        "vendor",
    ]
    first = config.mappings[0]
    assert first.source == SingleSource(resource="Product", field="id")
    assert first.target_table == "products"
    assert first.transform == CoerceTransform(target_type="bigint")
    lookup = config.mappings[4].transform
    assert isinstance(lookup, LookupTransform)
    assert (lookup.table, lookup.match_column, lookup.return_column) == ("vendors", "code", "name")
    assert lookup.default_value == "Unknown"


def test_from_dict_accepts_snake_case_keys():
    config = MappingConfig.from_dict(
        {
            "id": "orders",
            "source_resource": "Order",
            "target_table": "orders",
            "key_mapping": {"source_field": "id", "target_column": "order_id"},
            "delete_strategy": "ignore",
            "webhook_enabled": False,
            "mappings": [
                {
                    "source": {"type": "single", "field": "name"},
                    "target": {"column": "order_name"},
                    "transform": {"type": "default", "value": "n/a", "only_if_null": False},
                }
            ],
        }
    )

    assert config.key_mapping.target_column == "order_id"
    assert config.webhook_enabled is False
    assert config.delete_strategy == "ignore"
    mapping = config.mappings[0]
    assert mapping.id == "orders:0"
    assert mapping.transform == DefaultTransform(value="n/a", only_if_null=False)


def test_multi_source_aliases():
    config = MappingConfig.from_dict(
        {
            "id": "customers",
            "sourceResource": "Customer",
            "targetTable": "customers",
            "mappings": [
                {
                    "id": "full_name",
                    "source": {
                        "type": "multi",
                        "fields": [
                            {"field": "firstName", "alias": "first"},
                            {"field": "lastName"},
                        ],
                    },
                    "target": "full_name",
                    "transform": {"type": "template", "template": "{first} {lastName}"},
                }
            ],
        }
    )

    source = config.mappings[0].source
    assert isinstance(source, MultiSource)
    assert [(ref.resource, ref.field, ref.alias) for ref in source.refs] == [
        ("Customer", "firstName", "first"),
        ("Customer", "lastName", "lastName"),
    ]
    assert source.to_dict()["type"] == "multi"


@pytest.mark.parametrize(
    "mutate,message",
    [
        (lambda payload: payload.pop("id"), "Missing required mapping attribute: 'id'"),
        (lambda payload: payload.update(id="  "), "Mapping config id cannot be empty."),
        (lambda payload: payload.pop("sourceResource"), "requires a source resource"),
        (
            lambda payload: payload["mappings"][1].update(id="products:id"),
            "Duplicate mapping id 'products:id' in 'products'.",
        ),
        (
            lambda payload: payload["mappings"][1].update(target={"table": "products"}),
            "Field mapping 'products:title' is missing a target column.",
        ),
        (
            lambda payload: payload.update(keyMapping={"sourceField": "id"}),
            "Key mapping for 'products' needs sourceField and targetColumn.",
        ),
        (
            lambda payload: payload.update(filters=[{"field": "status", "operator": "like"}]),
            "Unknown filter operator 'like' in 'products'.",
        ),
        (
            lambda payload: payload.update(filters=[{"operator": "eq", "value": 1}]),
            "Filter in 'products' is missing a field.",
        ),
        (
            lambda payload: payload.update(deleteStrategy="archive"),
            "Unknown delete strategy 'archive' in 'products'.",
        ),
        (
            lambda payload: payload["mappings"][0].update(transform={"type": "uppercase"}),
            "Unknown transform type 'uppercase'",
        ),
        (
            lambda payload: payload["mappings"][0].update(source={"type": "multi", "fields": []}),
            "Multi-source mapping requires at least one field reference.",
        ),
    ],
)
def test_from_dict_rejects_invalid_configs(mapping_payload, mutate, message):
    mutate(mapping_payload)

    with pytest.raises(MappingLoadError) as excinfo:
        MappingConfig.from_dict(mapping_payload)

    assert message in str(excinfo.value)


def test_to_dict_round_trips(mapping_payload):
    config = MappingConfig.from_dict(mapping_payload)
    payload = config.to_dict()

    assert payload["keyMapping"] == {"sourceField": "id", "targetColumn": "shopify_id"}
    assert payload["softDeleteColumn"] == "deleted_at"
    assert payload["mappings"][0]["target"] == {"table": "products", "column": "shopify_id"}
    assert payload["mappings"][0]["source"] == {"type": "single", "resource": "Product", "field": "id"}
    assert MappingConfig.from_dict(payload) == config
    assert MappingConfig.from_dict(payload).checksum == config.checksum


def test_checksum_tracks_content(mapping_payload):
    original = MappingConfig.from_dict(mapping_payload)
    mapping_payload["name"] = "Products (renamed)"

    assert MappingConfig.from_dict(mapping_payload).checksum != original.checksum
    assert len(original.checksum) == 64


def test_enabled_mappings_skip_disabled_entries(mapping_payload):
    mapping_payload["mappings"][2]["enabled"] = False

    config = MappingConfig.from_dict(mapping_payload)

    assert "products:price" not in [mapping.id for mapping in config.enabled_mappings]
    assert len(config.enabled_mappings) == 4


def test_parse_transform_defaults():
    assert parse_transform(None) is None
    assert parse_transform({"type": "DIRECT"}).type == "direct"
    lookup = parse_transform({"type": "lookup", "table": "vendors"})
    assert lookup.match_column == ""
    assert "defaultValue" not in lookup.to_dict()


def test_load_mapping_config_reads_yaml(tmp_path):
    path = _write_yaml(
        tmp_path / "variants.yaml",
        """
        id: variants
        name: Variants
        sourceResource: ProductVariant
        targetTable: variants
        keyMapping:
          sourceField: id
          targetColumn: variant_id
        mappings:
          - id: variants:sku
            source: sku
            target: sku
            transform:
              type: direct
        """,
    )

    config = load_mapping_config(path)

    assert config.id == "variants"
    assert config.mappings[0].source == SingleSource(resource="ProductVariant", field="sku")


def test_load_mapping_config_missing_file(tmp_path):
    with pytest.raises(MappingLoadError, match="Mapping file not found"):
        load_mapping_config(tmp_path / "missing.yaml")


class TestMappingService:
    def test_save_and_get(self, product_mapping):
        service = MappingService()
        record = service.save(product_mapping)

        assert record.checksum == product_mapping.checksum
        assert record.source_resource == "Product"
        assert service.get("products") == product_mapping
        assert service.get("missing") is None

    def test_require_raises_for_unknown_mapping(self):
        with pytest.raises(MappingNotFoundError, match="Mapping 'missing' not found."):
            MappingService().require("missing")

    def test_mappings_are_scoped_to_their_connection(self, product_mapping):
        MappingService(connection_id="store-a").save(product_mapping)

        assert MappingService(connection_id="store-b").get("products") is None
        with pytest.raises(MappingLoadError, match="already belongs to connection 'store-a'"):
            MappingService(connection_id="store-b").save(product_mapping)

    def test_list_and_for_resource(self, product_mapping, mapping_payload):
        service = MappingService()
        service.save(product_mapping)
        mapping_payload["id"] = "products-archive"
        service.save(MappingConfig.from_dict(mapping_payload), enabled=False)
        db.session.commit()

        assert {config.id for config in service.list()} == {"products", "products-archive"}
        assert [config.id for config in service.list(enabled_only=True)] == ["products"]
        assert [config.id for config in service.for_resource("Product")] == ["products"]
        assert service.for_resource("Order") == []

    def test_import_files(self, tmp_path):
        path = _write_yaml(
            tmp_path / "collections.yml",
            """
            id: collections
            sourceResource: Collection
            targetTable: collections
            mappings:
              - source: title
                target: title
            """,
        )

        configs = MappingService().import_files([path])

        assert [config.id for config in configs] == ["collections"]
        assert MappingService().get("collections").name == "collections"

    def test_import_files_aborts_on_bad_file(self, tmp_path):
        good = _write_yaml(
            tmp_path / "good.yaml",
            """
            id: good
            sourceResource: Order
            mappings: []
            """,
        )
        bad = _write_yaml(tmp_path / "bad.yaml", "id: bad\nmappings: []\n")

        with pytest.raises(MappingLoadError):
            MappingService().import_files([good, bad])

        assert MappingService().get("good") is None
