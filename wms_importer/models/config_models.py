from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Config dataclasses for the spreadsheet -> PostgreSQL import reconciler.

These are the typed domain models produced by ``wms_importer.config.loader``.
A ``TableProfile`` describes how one spreadsheet sheet maps onto one table:
which fields exist, which header aliases feed them, how their cells are
coerced and which fields form the uniqueness key used for upserts.
"""

__all__ = [
    "Coercion",
    "DatabaseConfig",
    "FieldSpec",
    "ImportConfig",
    "LookupSpec",
    "TableProfile",
]


class Coercion(Enum):
    """Coercion rule applied to a raw cell value."""
    INTEGER = "integer"
    DECIMAL = "decimal"
    STRING = "string"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection fallback configuration.

    Environment variables (``DATABASE_URL`` / ``PGDSN`` / ``PG*``) take
    precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class FieldSpec:
    """Static descriptor of one target field.

    ``aliases`` are compared against spreadsheet headers in normalized form
    (see ``mapping.headers.normalize_header``), so "Stock On Hand",
    "stock_on_hand" and "STOCK-ON-HAND" are all the same alias.
    """
    name: str
    aliases: tuple[str, ...] = ()
    coerce: Coercion = Coercion.STRING
    default: Any = None  # 数値変換失敗 / セル欠落時の値
    null_if_blank: bool = True
    identifier: bool = False  # null の場合プレースホルダ ID を生成
    mandatory: bool = False  # null の場合 RowError
    placeholder_prefix: str | None = None

    @property
    def is_numeric(self) -> bool:
        return self.coerce in (Coercion.INTEGER, Coercion.DECIMAL)


@dataclass(frozen=True)
class LookupSpec:
    """Resolve a natural name (e.g. a category name) to a generated identifier.

    The value of ``field`` is looked up in ``table.column``; the resolved id
    lands in ``target``. Missing rows are created with ``defaults`` merged in.
    """
    field: str
    target: str
    table: str
    column: str = "name"
    defaults: dict[str, Any] = field(default_factory=dict)
    keep_source: bool = False


@dataclass(frozen=True)
class TableProfile:
    """Mapping of one spreadsheet sheet onto one database table."""
    name: str
    table: str
    fields: tuple[FieldSpec, ...]
    conflict_key: tuple[str, ...] = ()  # 空の場合は単純 INSERT
    lookups: tuple[LookupSpec, ...] = ()
    known_columns: frozenset[str] | None = None  # schema contract (任意)
    sheet: str | None = None

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


@dataclass(frozen=True)
class ImportConfig:
    """Root configuration object for the importer."""
    profiles: dict[str, TableProfile]
    database: DatabaseConfig
    batch_size: int = 200
    error_log_dir: str = "./logs"
    staging_path: str | None = None
    notify_channel: str = "wms_changes"

    def get_profile(self, name: str) -> TableProfile:
        try:
            return self.profiles[name]
        except KeyError:
            raise KeyError(
                f"unknown profile '{name}' (available: {sorted(self.profiles)})"
            ) from None
