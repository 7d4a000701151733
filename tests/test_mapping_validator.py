from itertools import product

import pytest

from sync_app.engine.mapping import (
    CoerceTransform,
    MappingConfig,
    MappingValidator,
    check_type_compatibility,
    parse_database_type,
    parse_remote_type,
)
from sync_app.engine.mapping.validator import TYPE_CATEGORIES, TypeInfo, issue_keys
from sync_app.engine.schema import FieldCategory, FieldKind, RemoteField
from sync_app.engine.schema.cache_store import MetafieldDefinition, RemoteResource, RemoteSchema
from sync_app.engine.writer import DatabaseColumn, DatabaseSchema, DatabaseTable, discover_schema


# (compatible, has warning, suggested coerce target) for the cross-category pairs with special rules
COMPATIBILITY_TABLE = {
    ("string", "number"): (True, True, "number"),
    ("number", "string"): (True, False, None),
    ("datetime", "string"): (True, False, None),
    ("string", "datetime"): (True, True, "datetime"),
    ("json", "string"): (True, True, None),
}


def _field(name, base_type, kind=FieldKind.SCALAR, category=FieldCategory.SCALAR):
    return RemoteField(name=name, kind=kind, base_type=base_type, category=category)


@pytest.fixture
def remote_schema():
    product = RemoteResource(
        name="Product",
        fields=(
            _field("id", "ID", category=FieldCategory.SYSTEM),
            _field("title", "String"),
            _field("price", "Money"),
            _field("status", "ProductStatus", kind=FieldKind.ENUM, category=FieldCategory.ENUM),
            _field("vendor", "String"),
        ),
    )
    return RemoteSchema(
        resources=(product,),
        metafield_definitions=(MetafieldDefinition("Product", "custom", "care_guide"),),
    )


@pytest.fixture
def database_schema(target_engine):
    return discover_schema(target_engine)


def _issue_types(issues):
    return [(issue.mapping_id, issue.type) for issue in issues]


class TestTypeParsing:
    @pytest.mark.parametrize(
        "type_name,category",
        [
            ("String", "string"),
            ("ID", "string"),
            ("URL", "string"),
            ("Int", "number"),
            ("UnsignedInt64", "number"),
            ("Float", "number"),
            ("Money", "number"),
            ("Decimal", "number"),
            ("Boolean", "boolean"),
            ("DateTime", "datetime"),
            ("JSON", "json"),
            ("ProductStatus", "unknown"),
        ],
    )
    def test_remote_types(self, type_name, category):
        assert parse_remote_type(type_name).category == category

    def test_database_string_length(self):
        info = parse_database_type("nvarchar(80)")
        assert (info.category, info.max_length) == ("string", 80)
        assert parse_database_type("text").max_length is None

    def test_database_decimal_precision(self):
        info = parse_database_type("numeric(10, 2)")
        assert (info.category, info.precision, info.scale) == ("number", 10, 2)

    @pytest.mark.parametrize(
        "type_name,category",
        [
            ("bigint", "number"),
            ("double precision", "number"),
            ("bit", "boolean"),
            ("boolean", "boolean"),
            ("datetime2", "datetime"),
            ("timestamp", "datetime"),
            ("jsonb", "json"),
            ("uniqueidentifier", "unknown"),
        ],
    )
    def test_database_categories(self, type_name, category):
        assert parse_database_type(type_name).category == category


class TestTypeCompatibility:
    def test_same_category_is_silent(self):
        verdict = check_type_compatibility(parse_remote_type("Int"), parse_database_type("integer"))
        assert verdict.compatible is True
        assert verdict.warning is None

    def test_string_into_bounded_column_may_truncate(self):
        verdict = check_type_compatibility(parse_remote_type("String"), parse_database_type("varchar(50)"))
        assert verdict.compatible is True
        assert verdict.truncation is True
        assert verdict.warning == "Source may exceed target max length (50)"

    def test_string_to_number_suggests_coercion(self):
        verdict = check_type_compatibility(parse_remote_type("String"), parse_database_type("int"))
        assert verdict.warning == "String to number conversion required"
        assert verdict.suggested_transform == CoerceTransform(target_type="number")

    def test_number_to_string_is_allowed(self):
        verdict = check_type_compatibility(parse_remote_type("Float"), parse_database_type("varchar"))
        assert verdict.compatible is True
        assert verdict.warning is None

    def test_json_to_string_warns(self):
        verdict = check_type_compatibility(parse_remote_type("JSON"), parse_database_type("text"))
        assert verdict.warning == "JSON will be serialized to string"

    def test_string_to_datetime_suggests_coercion(self):
        verdict = check_type_compatibility(parse_remote_type("String"), parse_database_type("datetime"))
        assert verdict.suggested_transform == CoerceTransform(target_type="datetime")

    def test_unknown_side_cannot_be_verified(self):
        verdict = check_type_compatibility(parse_remote_type("ProductStatus"), parse_database_type("int"))
        assert verdict.compatible is True
        assert verdict.warning == "Type compatibility could not be verified"

    def test_incompatible_pair(self):
        verdict = check_type_compatibility(parse_remote_type("Boolean"), parse_database_type("datetime"))
        assert verdict.compatible is False
        assert verdict.warning == "Incompatible types: boolean to datetime"

    @pytest.mark.parametrize("source, target", list(product(TYPE_CATEGORIES, repeat=2)))
    def test_every_category_pair(self, source, target):
        verdict = check_type_compatibility(TypeInfo(source), TypeInfo(target))

        expected = COMPATIBILITY_TABLE.get((source, target))
        if expected is None:
            if source == target:
                expected = (True, False, None)
            elif "unknown" in (source, target):
                expected = (True, True, None)
            else:
                expected = (False, True, None)
        compatible, warns, coerce_to = expected

        assert verdict.compatible is compatible
        assert (verdict.warning is not None) is warns
        if coerce_to is None:
            assert verdict.suggested_transform is None
        else:
            assert verdict.suggested_transform == CoerceTransform(target_type=coerce_to)


class TestMappingValidator:
    def test_product_mapping_is_valid_with_warnings(self, product_mapping, database_schema, remote_schema):
        result = MappingValidator().validate(product_mapping, database_schema, remote_schema)

        assert result.valid is True, result.to_dict()
        assert result.errors == []
        assert sorted(_issue_types(result.warnings)) == [
            ("products:id", "nullable_to_nonnull"),
            ("products:title", "nullable_to_nonnull"),
            ("products:title", "string_truncation"),
            ("products:vendor", "string_truncation"),
        ]
        assert result.stats == {
            "total_mappings": 5,
            "enabled_mappings": 5,
            "validated_mappings": 5,
            "unverified_mappings": 0,
        }

    def test_nullable_warning_suggests_default_transform(self, product_mapping, database_schema, remote_schema):
        result = MappingValidator().validate(product_mapping, database_schema, remote_schema)

        warning = next(issue for issue in result.warnings if issue.type == "nullable_to_nonnull")
        assert warning.message == "Target column is not nullable. Consider adding a default value transform."
        assert warning.to_dict()["suggested_transform"] == {"type": "default", "value": None, "onlyIfNull": True}

    def test_default_transform_silences_nullable_warning(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][1]["transform"] = {"type": "default", "value": "Untitled"}
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert ("products:title", "nullable_to_nonnull") not in _issue_types(result.warnings)

    def test_missing_schemas_leave_mappings_unverified(self, product_mapping):
        result = MappingValidator().validate(product_mapping, None, None)

        assert result.valid is False
        messages = [issue.message for issue in result.errors]
        assert "Database schema not discovered. Cannot validate target columns." in messages
        assert "Remote schema not introspected. Cannot validate source fields." in messages
        assert len(result.errors) == 2
        assert result.stats["unverified_mappings"] == 5
        assert result.stats["validated_mappings"] == 0

    def test_structural_checks_still_run_without_schemas(self, mapping_payload):
        mapping_payload["mappings"][3]["transform"] = {"type": "expression", "formula": "__import__('os')"}
        mapping_payload["mappings"][4]["transform"] = {"type": "lookup", "table": "vendors"}
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, None, None)

        assert ("products:status", "invalid_expression") in _issue_types(result.errors)
        lookup_errors = [issue for issue in result.errors if issue.type == "invalid_lookup"]
        assert lookup_errors[0].message == "Lookup transform requires table, matchColumn and returnColumn."

    def test_unknown_table_and_resource(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["targetTable"] = "items"
        mapping_payload["sourceResource"] = "Order"
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        messages = [issue.message for issue in result.errors]
        assert 'Target table "items" not found in database schema' in messages
        assert 'Source resource "Order" not found in remote schema' in messages

    def test_missing_source_field_and_target_column(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][1]["source"] = "name"
        mapping_payload["mappings"][2]["target"] = "cost"
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        messages = {issue.mapping_id: issue.message for issue in result.errors}
        assert messages["products:title"] == 'Source field "name" not found in resource "Product"'
        assert messages["products:price"] == 'Target column "cost" not found in table "products"'
        assert all(issue.mapping_id != "products:title" for issue in result.warnings)

    def test_missing_key_mapping(self, mapping_payload, database_schema, remote_schema):
        del mapping_payload["keyMapping"]
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert ("products", "missing_key_mapping") in _issue_types(result.errors)

    def test_key_column_must_exist(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["keyMapping"]["targetColumn"] = "external_id"
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert 'Key column "external_id" not found in table "products"' in [issue.message for issue in result.errors]

    def test_lookup_table_and_columns_must_exist(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][4]["transform"]["matchColumn"] = "slug"
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert [issue.message for issue in result.errors] == ['Lookup match column "slug" not found in table "vendors"']

        mapping_payload["mappings"][4]["transform"]["table"] = "suppliers"
        config = MappingConfig.from_dict(mapping_payload)
        result = MappingValidator().validate(config, database_schema, remote_schema)
        assert [issue.message for issue in result.errors] == ['Lookup table "suppliers" not found']

    def test_template_without_placeholders(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][1]["transform"] = {"type": "template", "template": "static"}
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert [issue.message for issue in result.errors] == ["Template has no placeholders. Use {fieldName} syntax."]

    def test_defined_metafield_paths_are_valid_sources(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][4] = {
            "id": "products:care",
            "source": "metafields.custom.care_guide",
            "target": "vendor",
        }
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)
        assert result.valid is True

        mapping_payload["mappings"][4]["source"] = "metafields.custom.unknown"
        result = MappingValidator().validate(MappingConfig.from_dict(mapping_payload), database_schema, remote_schema)
        assert ("products:care", "source_not_found") in _issue_types(result.errors)

    def test_incompatible_types_are_reported_as_warnings(self, mapping_payload):
        database_schema = DatabaseSchema(
            tables=(
                DatabaseTable(
                    name="products",
                    columns=(
                        DatabaseColumn("shopify_id", "varchar(64)", nullable=False, is_primary_key=True),
                        DatabaseColumn("flag", "datetime"),
                    ),
                ),
            )
        )
        remote_schema = RemoteSchema(
            resources=(RemoteResource("Product", (_field("id", "ID"), _field("published", "Boolean"))),)
        )
        config = MappingConfig.from_dict(
            {
                "id": "flags",
                "sourceResource": "Product",
                "targetTable": "products",
                "keyMapping": {"sourceField": "id", "targetColumn": "shopify_id"},
                "mappings": [{"id": "flags:published", "source": "published", "target": "flag"}],
            }
        )

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert result.valid is True
        (warning,) = result.warnings
        assert warning.type == "type_mismatch"
        assert warning.message == "Incompatible types: boolean to datetime"

    def test_disabled_mappings_are_not_checked(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][2]["target"] = "cost"
        mapping_payload["mappings"][2]["enabled"] = False
        config = MappingConfig.from_dict(mapping_payload)

        result = MappingValidator().validate(config, database_schema, remote_schema)

        assert result.valid is True
        assert result.stats["enabled_mappings"] == 4
        assert result.stats["validated_mappings"] == 4

    def test_validation_is_deterministic(self, mapping_payload, database_schema, remote_schema):
        mapping_payload["mappings"][1]["source"] = "name"
        mapping_payload["mappings"][2]["target"] = "cost"
        config = MappingConfig.from_dict(mapping_payload)
        validator = MappingValidator()

        first = validator.validate(config, database_schema, remote_schema)
        second = validator.validate(config, database_schema, remote_schema)

        assert first.errors and first.warnings
        assert issue_keys(first.errors) == issue_keys(second.errors)
        assert issue_keys(first.warnings) == issue_keys(second.warnings)
        assert first.stats == second.stats
