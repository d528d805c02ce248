from __future__ import annotations

import pytest

import wms_importer.db.batch_upsert as bu
from wms_importer.db.batch_upsert import (
    BatchUpsertError,
    PostgresStore,
    WriteResult,
    batch_upsert,
    build_upsert_sql,
    dry_run_write,
    quote_ident,
)


class DummyCursor:
    def __init__(self, returned=None, fail_on_execute: Exception | None = None) -> None:
        self.queries: list[tuple[str, tuple]] = []
        self.returned = returned
        self.fail_on_execute = fail_on_execute
        self.description = None
        self._rows: list[tuple] = []

    def execute(self, sql, params=None):
        self.queries.append((sql, params))
        if self.fail_on_execute is not None:
            raise self.fail_on_execute

    def fetchall(self):
        return self._rows

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class DummyConnection:
    def __init__(self, cursor: DummyCursor) -> None:
        self._cursor = cursor
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return self._cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


# We monkeypatch execute_values inside the module to avoid needing a server
@pytest.fixture(autouse=True)
def patch_execute_values(monkeypatch):
    calls = []

    def fake_execute_values(cursor, sql, values, page_size=100, fetch=False):
        calls.append({"sql": sql, "values": values, "page_size": page_size, "fetch": fetch})
        if isinstance(cursor.returned, Exception):
            raise cursor.returned
        return cursor.returned

    monkeypatch.setattr(bu, "execute_values", fake_execute_values)
    return calls


def test_quote_ident():
    assert quote_ident("items") == '"items"'
    assert quote_ident("public.items") == '"public"."items"'
    assert quote_ident('we"ird') == '"we""ird"'


def test_build_upsert_sql_with_conflict_key():
    sql = build_upsert_sql("inventory_items", ["sku", "warehouse_id", "qty"], ["sku", "warehouse_id"])
    assert sql == (
        'INSERT INTO "inventory_items" ("sku","warehouse_id","qty") VALUES %s '
        'ON CONFLICT ("sku","warehouse_id") DO UPDATE SET "qty"=EXCLUDED."qty" '
        "RETURNING (xmax = 0)"
    )


def test_build_upsert_sql_key_only_does_nothing_on_conflict():
    sql = build_upsert_sql("tags", ["name"], ["name"])
    assert 'ON CONFLICT ("name") DO NOTHING' in sql


def test_build_upsert_sql_plain_insert():
    sql = build_upsert_sql("tasks", ["title"], [])
    assert "ON CONFLICT" not in sql
    assert sql.endswith("RETURNING (xmax = 0)")


def test_batch_upsert_counts_inserted_and_updated(patch_execute_values):
    cur = DummyCursor(returned=[(True,), (False,), (True,)])
    rows = [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 2}, {"sku": "C", "qty": None}]
    result = batch_upsert(cur, "inventory_items", rows, ["sku"])

    assert result == WriteResult(inserted=2, updated=1)
    call = patch_execute_values[0]
    assert call["page_size"] == 3
    assert call["fetch"] is True
    assert call["values"] == [("A", 1), ("B", 2), ("C", None)]


def test_batch_upsert_groups_rows_by_column_list(patch_execute_values):
    # 列の無い行は NULL で上書きせず、別ステートメントで送る
    cur = DummyCursor(returned=[(False,)])
    rows = [{"sku": "A", "unit_price": 9}, {"sku": "B"}]
    result = batch_upsert(cur, "inventory_items", rows, ["sku"])

    assert result == WriteResult(inserted=0, updated=2)
    assert [c["values"] for c in patch_execute_values] == [[("A", 9)], [("B",)]]
    assert '"unit_price"=EXCLUDED."unit_price"' in patch_execute_values[0]["sql"]
    assert "unit_price" not in patch_execute_values[1]["sql"]
    assert 'ON CONFLICT ("sku") DO NOTHING' in patch_execute_values[1]["sql"]


def test_batch_upsert_empty_rows_skips_statement(patch_execute_values):
    assert batch_upsert(DummyCursor(), "t", []) == WriteResult()
    assert patch_execute_values == []


def test_batch_upsert_wraps_driver_errors():
    cur = DummyCursor(returned=RuntimeError('column "rack_id" of relation "spare_parts" does not exist\n'))
    with pytest.raises(BatchUpsertError, match="rack_id"):
        batch_upsert(cur, "spare_parts", [{"rack_id": 1}])


def test_batch_upsert_without_driver(monkeypatch):
    monkeypatch.setattr(bu, "execute_values", None)
    with pytest.raises(BatchUpsertError, match="psycopg2"):
        batch_upsert(DummyCursor(), "t", [{"a": 1}])


def test_dry_run_write_counts_rows_as_inserted():
    assert dry_run_write("t", [{"a": 1}, {"a": 2}]) == WriteResult(inserted=2)


def test_store_write_commits_on_success():
    conn = DummyConnection(DummyCursor(returned=[(True,)]))
    result = PostgresStore(conn)("t", [{"a": 1}], ())
    assert result.ok and result.inserted == 1
    assert conn.commits == 1 and conn.rollbacks == 0


def test_store_write_rolls_back_and_returns_error():
    conn = DummyConnection(DummyCursor(returned=RuntimeError("boom")))
    result = PostgresStore(conn).write("t", [{"a": 1}], ())
    assert result.error == "boom"
    assert conn.rollbacks == 1 and conn.commits == 0


def test_store_table_columns():
    cur = DummyCursor()
    cur._rows = [("sku",), ("qty",)]
    conn = DummyConnection(cur)
    assert PostgresStore(conn).table_columns("public.inventory_items") == {"sku", "qty"}
    sql, params = cur.queries[0]
    assert "information_schema.columns" in sql
    assert params == ("inventory_items", "public")


def test_store_resolve_lookup_existing_row():
    cur = DummyCursor()
    cur._rows = [("cat-1",)]
    conn = DummyConnection(cur)
    assert PostgresStore(conn).resolve_lookup("categories", "name", "Filters") == "cat-1"
    assert len(cur.queries) == 1
    assert conn.commits == 1


def test_store_resolve_lookup_inserts_missing_row():
    cur = DummyCursor()
    conn = DummyConnection(cur)
    original_execute = cur.execute

    def execute(sql, params=None):
        original_execute(sql, params)
        if sql.startswith("INSERT"):
            cur._rows = [("cat-new",)]

    cur.execute = execute
    ident = PostgresStore(conn).resolve_lookup("categories", "name", "Belts", {"type": "Spare Parts"})
    assert ident == "cat-new"
    insert_sql, insert_params = cur.queries[1]
    assert insert_sql.startswith('INSERT INTO "categories" ("name","type")')
    assert insert_params == ("Belts", "Spare Parts")


def test_store_resolve_lookup_failure_raises():
    conn = DummyConnection(DummyCursor(fail_on_execute=RuntimeError("no table")))
    with pytest.raises(BatchUpsertError, match="lookup categories.name"):
        PostgresStore(conn).resolve_lookup("categories", "name", "X")
    assert conn.rollbacks == 1


def test_store_fetch_rows():
    cur = DummyCursor()
    cur.description = [("sku",), ("qty",)]
    cur._rows = [("A", 1), ("B", 2)]
    rows = PostgresStore(DummyConnection(cur)).fetch_rows("inventory_items")
    assert rows == [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 2}]
    assert cur.queries[0][0] == 'SELECT * FROM "inventory_items"'
