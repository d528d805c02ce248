from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

"""PostgreSQL write capability for the import reconciler.

``batch_upsert`` issues ``INSERT ... ON CONFLICT (...) DO UPDATE`` for a batch
(one statement per column list) through psycopg2.extras.execute_values and
counts inserted vs updated rows via
``RETURNING (xmax = 0)`` (xmax is 0 only for freshly inserted tuples).

``PostgresStore.write`` is the injected ``write(table, rows, conflict_key)``
capability used by the batcher: it commits each successful batch and rolls
back a failed one, returning the database message instead of raising so the
schema-drift retry can inspect it.
"""

try:  # pragma: no cover - optional until psycopg2 present at runtime
    import psycopg2
    from psycopg2.extras import execute_values
except Exception:  # pragma: no cover
    psycopg2 = None  # type: ignore
    execute_values = None  # type: ignore

__all__ = [
    "BatchUpsertError",
    "PostgresStore",
    "WriteResult",
    "batch_upsert",
    "build_upsert_sql",
    "dry_run_write",
    "quote_ident",
]


class BatchUpsertError(Exception):
    pass


@dataclass(frozen=True)
class WriteResult:
    inserted: int = 0
    updated: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


WriteFn = Callable[[str, Sequence[Mapping[str, Any]], Sequence[str]], WriteResult]


def quote_ident(name: str) -> str:
    """Quote a (possibly schema-qualified) identifier: public.items -> "public"."items"."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def _group_by_columns(
    rows: Sequence[Mapping[str, Any]],
) -> list[tuple[tuple[str, ...], list[Mapping[str, Any]]]]:
    """Split rows into runs that share one column list (first-seen order)."""
    groups: dict[tuple[str, ...], list[Mapping[str, Any]]] = {}
    for row in rows:
        groups.setdefault(tuple(row), []).append(row)
    return list(groups.items())


def build_upsert_sql(table: str, columns: Sequence[str], conflict_key: Sequence[str]) -> str:
    cols_sql = ",".join(quote_ident(c) for c in columns)
    base_sql = f"INSERT INTO {quote_ident(table)} ({cols_sql}) VALUES %s"
    if conflict_key:
        key_sql = ",".join(quote_ident(c) for c in conflict_key)
        updates = [c for c in columns if c not in conflict_key]
        if updates:
            set_sql = ",".join(f"{quote_ident(c)}=EXCLUDED.{quote_ident(c)}" for c in updates)
            base_sql += f" ON CONFLICT ({key_sql}) DO UPDATE SET {set_sql}"
        else:
            base_sql += f" ON CONFLICT ({key_sql}) DO NOTHING"
    return base_sql + " RETURNING (xmax = 0)"


def batch_upsert(
    cursor: Any,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    conflict_key: Sequence[str] = (),
) -> WriteResult:
    """Upsert one batch of row dicts and return inserted/updated counts.

    Rows may carry different key sets (a field with no column in the sheet is
    absent, not NULL). Rows sharing a column list go out as one statement, so
    a column is only written for rows that actually carry it.

    Raises:
        BatchUpsertError: driver missing or a statement failed
    """
    if execute_values is None:
        raise BatchUpsertError("psycopg2 not available")

    rows_list = list(rows)
    if not rows_list:
        return WriteResult()

    inserted = updated = 0
    for columns, group in _group_by_columns(rows_list):
        if not columns:
            raise BatchUpsertError(f"no columns to write for table {table}")
        query = build_upsert_sql(table, columns, conflict_key)
        values = [tuple(row[c] for c in columns) for row in group]
        try:
            # 列構成ごとに 1 ステートメント (同一トランザクション)
            returned = execute_values(cursor, query, values, page_size=len(values), fetch=True)
        except Exception as e:
            raise BatchUpsertError(str(e).strip()) from e
        returned = returned or []
        fresh = sum(1 for r in returned if r and r[0])
        inserted += fresh
        updated += len(returned) - fresh
    return WriteResult(inserted=inserted, updated=updated)


def dry_run_write(
    table: str, rows: Sequence[Mapping[str, Any]], conflict_key: Sequence[str] = ()
) -> WriteResult:
    """Mock-mode write: every row counts as inserted, nothing is sent."""
    return WriteResult(inserted=len(rows))


class PostgresStore:
    """Table access on a psycopg2 connection (autocommit off).

    Every public method owns its transaction: commit on success, rollback on
    failure.
    """

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def write(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str] = (),
    ) -> WriteResult:
        try:
            with self.connection.cursor() as cur:
                result = batch_upsert(cur, table, rows, conflict_key)
            self.connection.commit()
            return result
        except BatchUpsertError as e:
            self.connection.rollback()
            return WriteResult(error=str(e))

    __call__ = write

    def table_columns(self, table: str) -> set[str]:
        schema, _, name = table.rpartition(".")
        query = "SELECT column_name FROM information_schema.columns WHERE table_name = %s"
        params: tuple[Any, ...] = (name,)
        if schema:
            query += " AND table_schema = %s"
            params = (name, schema)
        try:
            with self.connection.cursor() as cur:
                cur.execute(query, params)
                existing = {r[0] for r in cur.fetchall()}
            self.connection.commit()
        except Exception as e:
            self.connection.rollback()
            raise BatchUpsertError(f"failed to inspect columns of {table}: {e}") from e
        return existing

    def resolve_lookup(
        self, table: str, column: str, value: Any, defaults: Mapping[str, Any] | None = None
    ) -> Any:
        """Return the id of the row whose ``column`` matches ``value`` (case-insensitive),
        inserting it (with ``defaults``) when absent."""
        t, c = quote_ident(table), quote_ident(column)
        try:
            with self.connection.cursor() as cur:
                cur.execute(f"SELECT id FROM {t} WHERE lower({c}) = lower(%s) LIMIT 1", (value,))
                row = cur.fetchone()
                if row is None:
                    payload = {column: value, **(defaults or {})}
                    cols_sql = ",".join(quote_ident(k) for k in payload)
                    marks = ",".join(["%s"] * len(payload))
                    cur.execute(
                        f"INSERT INTO {t} ({cols_sql}) VALUES ({marks}) RETURNING id",
                        tuple(payload.values()),
                    )
                    row = cur.fetchone()
            self.connection.commit()
        except Exception as e:
            self.connection.rollback()
            raise BatchUpsertError(f"lookup {table}.{column}={value!r} failed: {e}") from e
        return row[0] if row else None

    def fetch_rows(self, table: str, columns: Sequence[str] | None = None) -> list[dict[str, Any]]:
        cols_sql = ",".join(quote_ident(c) for c in columns) if columns else "*"
        try:
            with self.connection.cursor() as cur:
                cur.execute(f"SELECT {cols_sql} FROM {quote_ident(table)}")
                names = [d[0] for d in cur.description]
                rows = [dict(zip(names, r)) for r in cur.fetchall()]
            self.connection.commit()
        except Exception as e:
            self.connection.rollback()
            raise BatchUpsertError(f"failed to read {table}: {e}") from e
        return rows
