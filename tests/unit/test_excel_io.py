from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pandas as pd
import pytest

from wms_importer.excel.export import export_rows
from wms_importer.excel.reader import ParseError, list_sheets, parse_sheet, read_workbook

"""Spreadsheet reader / exporter through pandas + openpyxl."""


def test_parse_first_sheet(make_xlsx):
    path = make_xlsx(
        {
            "Inventory": [
                {"Item ID": "SKU-1", "Stock On Hand": 12, "Unit Cost": 4.5},
                {"Item ID": "SKU-2", "Stock On Hand": None, "Unit Cost": 1},
            ],
            "Other": [{"x": 1}],
        }
    )
    rows = parse_sheet(path)
    assert rows == [
        {"Item ID": "SKU-1", "Stock On Hand": 12, "Unit Cost": 4.5},
        {"Item ID": "SKU-2", "Stock On Hand": None, "Unit Cost": 1},
    ]
    # numpy 型は python スカラに変換済み
    assert type(rows[0]["Stock On Hand"]) is int


def test_parse_named_sheet_from_bytes(make_xlsx):
    path = make_xlsx({"A": [{"a": 1}], "B": [{"b": "two"}]})
    assert parse_sheet(path.read_bytes(), "B") == [{"b": "two"}]


def test_unknown_sheet_is_parse_error(make_xlsx):
    path = make_xlsx({"A": [{"a": 1}]})
    with pytest.raises(ParseError, match="not found"):
        parse_sheet(path, "Missing")


def test_list_sheets(make_xlsx):
    assert list_sheets(make_xlsx({"One": [{"a": 1}], "Two": [{"a": 2}]})) == ["One", "Two"]


def test_header_row_skips_title_line(tmp_path: Path):
    path = tmp_path / "titled.xlsx"
    df = pd.DataFrame([["Stock report", None], ["sku", "qty"], ["A", 3], [None, None], ["B", 4]])
    df.to_excel(path, header=False, index=False)
    assert parse_sheet(path, header_row=1) == [{"sku": "A", "qty": 3}, {"sku": "B", "qty": 4}]


def test_blank_header_columns_are_ignored(tmp_path: Path):
    path = tmp_path / "blank.xlsx"
    pd.DataFrame([["sku", None, "qty"], ["A", "junk", 1]]).to_excel(path, header=False, index=False)
    assert parse_sheet(path) == [{"sku": "A", "qty": 1}]


def test_csv_fallback(tmp_path: Path):
    path = tmp_path / "parts.csv"
    path.write_text("part_number,name\nP1,Belt\nP2,\n", encoding="utf-8")
    assert read_workbook(path).keys() == {"csv"}
    assert parse_sheet(path) == [{"part_number": "P1", "name": "Belt"}, {"part_number": "P2", "name": None}]


@pytest.mark.parametrize("payload", [b"", b"PK\x03\x04 definitely not a zip"])
def test_unparseable_bytes_raise_parse_error(payload):
    with pytest.raises(ParseError):
        parse_sheet(payload)


def test_missing_file_is_parse_error(tmp_path: Path):
    with pytest.raises(ParseError, match="cannot read"):
        parse_sheet(tmp_path / "nope.xlsx")


def test_export_xlsx_round_trip(tmp_path: Path):
    rows = [
        {"sku": "A", "qty": 1, "updated_at": datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc)},
        {"sku": "B", "qty": 2, "updated_at": None},
    ]
    out = tmp_path / "out" / "inventory.xlsx"
    assert export_rows(rows, out, sheet_name="inventory") == 2
    assert list_sheets(out) == ["inventory"]
    back = parse_sheet(out)
    assert [r["sku"] for r in back] == ["A", "B"]
    assert back[0]["updated_at"] == datetime(2024, 1, 2, 3, 4)


def test_export_csv_with_column_order(tmp_path: Path):
    out = tmp_path / "parts.csv"
    export_rows([{"name": "Belt", "part_number": "P1", "price": Decimal("2.50")}], out, columns=["part_number", "name"])
    assert out.read_text(encoding="utf-8").splitlines() == ["part_number,name", "P1,Belt"]
