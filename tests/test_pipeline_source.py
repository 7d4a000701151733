from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from sync_app.engine.mapping.config import MappingFilter
from sync_app.engine.pipeline import (
    GraphQLRecordSource,
    RemoteSourceError,
    apply_filters,
    build_query,
    matches_filter,
)


def _response(payload, status_code=200):
    response = MagicMock()
    response.ok = status_code < 400
    response.status_code = status_code
    response.text = str(payload)
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


def _page(nodes, end_cursor=None, has_next=False):
    return _response(
        {
            "data": {
                "products": {
                    "edges": [{"node": node} for node in nodes],
                    "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
                }
            }
        }
    )


class TestFilters:
    @pytest.mark.parametrize(
        "operator,value,record,expected",
        [
            ("eq", "ACTIVE", {"status": "ACTIVE"}, True),
            ("neq", "ARCHIVED", {"status": "ARCHIVED"}, False),
            ("in", ["A", "B"], {"status": "B"}, True),
            ("in", "B", {"status": "B"}, False),
            ("not_in", ["A"], {"status": "B"}, True),
            ("exists", None, {"status": None}, False),
            ("not_exists", None, {}, True),
            ("gt", 10, {"status": 11}, True),
            ("gt", 10, {"status": "11"}, False),
            ("lte", 10, {"status": 10}, True),
            ("contains", "DRAFT", {"status": "IS_DRAFT"}, True),
            ("contains", 1, {"status": "1"}, False),
            ("starts_with", "ACT", {"status": "ACTIVE"}, True),
            ("regex", "^A.*E$", {"status": "ACTIVE"}, True),
            ("regex", "[unclosed", {"status": "ACTIVE"}, False),
        ],
    )
    def test_operators(self, operator, value, record, expected):
        assert matches_filter(record, MappingFilter(field="status", operator=operator, value=value)) is expected

    def test_dotted_field_paths(self):
        record_filter = MappingFilter(field="seo.title", operator="exists")
        assert matches_filter({"seo": {"title": "x"}}, record_filter) is True
        assert matches_filter({"seo": None}, record_filter) is False

    def test_unknown_operator(self):
        with pytest.raises(ValueError, match="Unknown filter operator: like"):
            matches_filter({}, MappingFilter(field="a", operator="like"))

    def test_apply_filters_requires_every_filter(self):
        records = [
            {"status": "ACTIVE", "qty": 3},
            {"status": "ACTIVE", "qty": 0},
            {"status": "ARCHIVED", "qty": 5},
        ]
        filters = [
            MappingFilter(field="status", operator="eq", value="ACTIVE"),
            MappingFilter(field="qty", operator="gt", value=0),
        ]

        kept, dropped = apply_filters(records, filters)

        assert kept == [records[0]]
        assert dropped == 2

    def test_no_filters_keeps_everything(self):
        kept, dropped = apply_filters(iter([{"a": 1}]), [])
        assert kept == [{"a": 1}]
        assert dropped == 0


class TestQueryBuilding:
    def test_selection_with_nested_and_metafield_paths(self):
        query = build_query("Product", ["title", "seo.title", "metafields.custom.care"], page_size=50)

        assert query == (
            "query SyncPage($first: Int!, $after: String) { "
            "products(first: $first, after: $after) { "
            "edges { node { id title seo { title } "
            'mf_custom_care: metafield(namespace: "custom", key: "care") { value } } } '
            "pageInfo { hasNextPage endCursor } } }"
        )

    def test_updated_after_filter(self):
        query = build_query("Order", ["name"], updated_after=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

        assert "orders(first: $first, after: $after, query: \"updated_at:>'2024-01-02T03:04:05Z'\")" in query

    def test_unsupported_resource(self):
        with pytest.raises(RemoteSourceError, match="Unsupported resource 'Refund'"):
            build_query("Refund", ["id"])

    def test_invalid_field_segment(self):
        with pytest.raises(RemoteSourceError, match="Invalid field path segment"):
            build_query("Product", ["title { secret }"])


class TestGraphQLRecordSource:
    def test_pages_until_no_next_page(self):
        session = MagicMock()
        session.post.side_effect = [
            _page([{"id": "gid://shopify/Product/1", "title": "A"}], end_cursor="c1", has_next=True),
            _page(
                [{"id": "gid://shopify/Product/2", "title": "B", "mf_custom_care": {"value": "Wash cold"}}],
                end_cursor="c2",
            ),
        ]
        source = GraphQLRecordSource("https://shop.example/graphql", "token", session=session, page_size=1)

        batches = list(source.fetch("Product", ["title", "metafields.custom.care"]))

        assert [batch.sequence for batch in batches] == [0, 1]
        assert [batch.cursor for batch in batches] == ["c1", "c2"]
        assert batches[1].records == [
            {"id": "gid://shopify/Product/2", "title": "B", "metafields.custom.care": "Wash cold"}
        ]
        first_call, second_call = session.post.call_args_list
        assert first_call.kwargs["json"]["variables"] == {"first": 1, "after": None}
        assert second_call.kwargs["json"]["variables"] == {"first": 1, "after": "c1"}
        assert first_call.kwargs["headers"]["X-Shopify-Access-Token"] == "token"

    def test_graphql_errors_raise(self):
        session = MagicMock()
        session.post.return_value = _response({"errors": [{"message": "Throttled"}]})
        source = GraphQLRecordSource("https://shop.example/graphql", session=session)

        with pytest.raises(RemoteSourceError, match="GraphQL query failed: Throttled"):
            list(source.fetch("Product", ["title"]))

    def test_http_errors_raise(self):
        session = MagicMock()
        session.post.return_value = _response({}, status_code=502)
        source = GraphQLRecordSource("https://shop.example/graphql", session=session)

        with pytest.raises(requests.HTTPError):
            list(source.fetch("Product", ["title"]))

    def test_endpoint_is_required(self):
        with pytest.raises(RemoteSourceError):
            GraphQLRecordSource("")

    def test_page_size_is_capped(self):
        assert GraphQLRecordSource("https://shop.example/graphql", page_size=1000).page_size == 250
