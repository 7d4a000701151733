import pytest
from sqlalchemy import create_engine, text

from sync_app.engine.writer import (
    ON_CONFLICT_ERROR,
    ON_CONFLICT_SKIP,
    DatabaseWriter,
    DatabaseWriterError,
    SQLiteDialect,
)

ITEMS_DDL = """
CREATE TABLE items (
    sku TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    qty INTEGER,
    active INTEGER,
    attributes TEXT
)
"""


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{(tmp_path / 'writer.db').as_posix()}")
    with engine.begin() as conn:
        conn.execute(text(ITEMS_DDL))
    yield engine
    engine.dispose()


@pytest.fixture
def writer(engine):
    return DatabaseWriter(engine, chunk_size=2)


def _rows(engine, sql="SELECT sku, name, qty FROM items ORDER BY sku"):
    with engine.connect() as conn:
        return [tuple(row) for row in conn.execute(text(sql))]


def _item(sku, name="Item", qty=1):
    return {"sku": sku, "name": name, "qty": qty}


def test_writer_detects_dialect_from_engine(writer):
    assert isinstance(writer.dialect, SQLiteDialect)
    assert writer.chunk_size == 2


def test_upsert_inserts_then_updates_with_exact_counts(engine, writer):
    first = writer.upsert("items", "sku", [_item("A"), _item("B"), _item("C")])

    assert (first.inserted, first.updated, first.skipped, first.unverified) == (3, 0, 0, 0)
    assert first.counts_exact is True

    second = writer.upsert("items", "sku", [_item("A", name="Renamed", qty=5), _item("D")])

    assert (second.inserted, second.updated) == (1, 1)
    assert second.written == 2
    assert _rows(engine) == [("A", "Renamed", 5), ("B", "Item", 1), ("C", "Item", 1), ("D", "Item", 1)]


def test_upsert_without_exact_counts_reports_unverified(engine):
    writer = DatabaseWriter(engine, exact_counts=False)

    result = writer.upsert("items", "sku", [_item("A"), _item("B")])

    assert result.unverified == 2
    assert result.inserted == 0
    assert result.counts_exact is False
    assert result.to_dict()["counts_exact"] is False


def test_duplicate_keys_in_one_batch_count_once_as_insert(writer):
    result = writer.upsert("items", "sku", [_item("A"), _item("A", name="Again")], chunk_size=10)

    assert (result.inserted, result.updated) == (1, 1)


def test_skip_policy_leaves_existing_rows(engine, writer):
    writer.upsert("items", "sku", [_item("A")])

    result = writer.upsert("items", "sku", [_item("A", name="Ignored"), _item("B")], on_conflict=ON_CONFLICT_SKIP)

    assert (result.inserted, result.skipped) == (1, 1)
    assert _rows(engine)[0] == ("A", "Item", 1)


def test_error_policy_fails_the_chunk(engine, writer):
    writer.upsert("items", "sku", [_item("A")])

    result = writer.upsert("items", "sku", [_item("A"), _item("B")], on_conflict=ON_CONFLICT_ERROR)

    assert result.inserted == 0
    assert [error.row for error in result.errors] == [0, 1]
    assert "UNIQUE" in result.errors[0].error.upper()
    assert _rows(engine) == [("A", "Item", 1)]


def test_failed_chunk_does_not_stop_later_chunks(engine, writer):
    rows = [_item("A"), _item("B", name=None), _item("C"), _item("D")]

    result = writer.upsert("items", "sku", rows)

    assert result.inserted == 2
    assert [error.row for error in result.errors] == [0, 1]
    assert [sku for sku, _, _ in _rows(engine)] == ["C", "D"]


def test_unknown_conflict_policy(writer):
    with pytest.raises(DatabaseWriterError, match="Unknown conflict policy 'merge'"):
        writer.upsert("items", "sku", [_item("A")], on_conflict="merge")


def test_key_column_must_be_present(writer):
    with pytest.raises(DatabaseWriterError, match="Key column 'sku' is missing from the row data."):
        writer.upsert("items", "sku", [{"name": "No key"}])


def test_empty_upsert_is_a_no_op(writer):
    result = writer.upsert("items", "sku", [])
    assert result.to_dict() == {
        "inserted": 0,
        "updated": 0,
        "skipped": 0,
        "unverified": 0,
        "counts_exact": True,
        "errors": [],
    }


def test_first_row_defines_columns(engine, writer):
    writer.upsert("items", "sku", [{"sku": "A", "name": "Item"}, {"sku": "B", "name": "Other", "qty": 9}])

    assert _rows(engine) == [("A", "Item", None), ("B", "Other", None)]


def test_values_are_bound_per_dialect(engine, writer):
    writer.upsert(
        "items",
        "sku",
        [{"sku": "A", "name": "Item", "active": True, "attributes": {"color": "red"}}],
    )

    assert _rows(engine, "SELECT active, attributes FROM items") == [(1, '{"color": "red"}')]


def test_batch_insert(engine, writer):
    result = writer.batch_insert("items", [_item("A"), _item("B"), _item("C")])

    assert result.inserted == 3
    assert result.errors == []

    duplicate = writer.batch_insert("items", [_item("A"), _item("B"), _item("E")])
    assert duplicate.inserted == 1
    assert [error.row for error in duplicate.errors] == [0, 1]


def test_delete_stale_removes_unlisted_keys(engine, writer):
    writer.upsert("items", "sku", [_item("A"), _item("B"), _item("C")])

    deleted = writer.delete_stale("items", "sku", ["A", "C"])

    assert deleted == 1
    assert [sku for sku, _, _ in _rows(engine)] == ["A", "C"]


def test_delete_stale_with_empty_key_set_is_a_no_op(engine, writer):
    writer.upsert("items", "sku", [_item("A")])

    assert writer.delete_stale("items", "sku", []) == 0
    assert writer.delete_stale("items", "sku", [None]) == 0
    assert len(_rows(engine)) == 1


def test_single_row_update_and_delete(engine, writer):
    writer.upsert("items", "sku", [_item("A"), _item("B")])

    assert writer.update_by_key("items", "sku", "A", {"name": "Updated", "qty": 3}) == 1
    assert writer.update_by_key("items", "sku", "Z", {"name": "Missing"}) == 0
    assert writer.update_by_key("items", "sku", "A", {}) == 0
    assert writer.delete_by_key("items", "sku", "B") == 1
    assert writer.delete_by_key("items", "sku", "B") == 0
    assert _rows(engine) == [("A", "Updated", 3)]


def test_identifiers_with_quotes_and_colons_are_escaped(engine, writer):
    with engine.begin() as conn:
        conn.execute(text('CREATE TABLE "odd""table" ("key" TEXT PRIMARY KEY, "a:b" TEXT)'))

    result = writer.upsert('odd"table', "key", [{"key": "1", "a:b": "x"}])

    assert result.inserted == 1
    assert _rows(engine, 'SELECT "key", "a:b" FROM "odd""table"') == [("1", "x")]
