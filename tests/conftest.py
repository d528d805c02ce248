# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from wms_importer.db.batch_upsert import WriteResult
from wms_importer.logging.init import reset_logging
from wms_importer.models import Coercion, FieldSpec, LookupSpec, TableProfile


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def sample_config_yaml() -> str:
    return """batch_size: 2
error_log_dir: ./logs
notify_channel: wms_changes
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
profiles:
  inventory:
    table: inventory_items
    conflict_key: [sku, warehouse_id]
    fields:
      - name: sku
        aliases: [item_id, sku]
        identifier: true
        placeholder_prefix: sku
      - name: name
        aliases: [item_name, name]
      - name: warehouse_id
        aliases: [warehouse]
      - name: qty
        aliases: [stock_on_hand, qty]
        coerce: integer
        default: 0
  spare_parts:
    table: spare_parts
    conflict_key: [part_number]
    fields:
      - name: part_number
        aliases: [part number]
        mandatory: true
      - name: name
      - name: rack_id
        aliases: [rack]
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def inventory_profile() -> TableProfile:
    return TableProfile(
        name="inventory",
        table="inventory_items",
        fields=(
            FieldSpec("sku", aliases=("item_id", "sku"), identifier=True, placeholder_prefix="sku"),
            FieldSpec("name", aliases=("item_name", "name")),
            FieldSpec("warehouse_id", aliases=("warehouse",)),
            FieldSpec("qty", aliases=("stock_on_hand", "qty"), coerce=Coercion.INTEGER, default=0),
        ),
        conflict_key=("sku", "warehouse_id"),
    )


@pytest.fixture()
def spare_parts_profile() -> TableProfile:
    return TableProfile(
        name="spare_parts",
        table="spare_parts",
        fields=(
            FieldSpec("part_number", aliases=("part number",), mandatory=True),
            FieldSpec("name"),
            FieldSpec("category"),
            FieldSpec("rack_id", aliases=("rack",)),
        ),
        conflict_key=("part_number",),
        lookups=(LookupSpec("category", "category_id", "categories", defaults={"type": "Spare Parts"}),),
    )


class FakeWrite:
    """Records every write call; ``responses`` scripts the results in order.

    Without a scripted response a call succeeds, counting rows whose key is
    already known as updates.
    """

    def __init__(self, responses: Sequence[WriteResult] = ()) -> None:
        self.calls: list[tuple[str, list[dict[str, Any]], tuple[str, ...]]] = []
        self.responses = list(responses)
        self.seen_keys: set[tuple] = set()

    def __call__(
        self, table: str, rows: Sequence[Mapping[str, Any]], conflict_key: Sequence[str] = ()
    ) -> WriteResult:
        batch = [dict(r) for r in rows]
        self.calls.append((table, batch, tuple(conflict_key)))
        if self.responses:
            return self.responses.pop(0)
        inserted = updated = 0
        for row in batch:
            key = tuple(row.get(k) for k in conflict_key)
            if conflict_key and key in self.seen_keys:
                updated += 1
            else:
                inserted += 1
                self.seen_keys.add(key)
        return WriteResult(inserted=inserted, updated=updated)

    @property
    def rows(self) -> list[dict[str, Any]]:
        return [row for _, batch, _ in self.calls for row in batch]


@pytest.fixture()
def fake_write() -> FakeWrite:
    return FakeWrite()


@pytest.fixture()
def make_xlsx(tmp_path: Path):
    """Write {sheet: [row dicts]} to an .xlsx file and return its path."""

    def _make(sheets: dict[str, list[dict[str, Any]]], name: str = "book.xlsx") -> Path:
        path = tmp_path / name
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            for sheet, rows in sheets.items():
                pd.DataFrame(rows).to_excel(writer, sheet_name=sheet, index=False)
        return path

    return _make
