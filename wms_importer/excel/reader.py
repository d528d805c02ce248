from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Union

import numpy as np
import pandas as pd

from ..models.row_data import RawRow

"""Spreadsheet reader: workbook bytes/path -> RawRow sequences.

xlsx / xls workbooks are read through pandas (openpyxl engine for xlsx); any
other payload is tried as CSV. The header row defaults to the first row, as
the dashboard's sheet_to_json did; ``header_row`` selects another one for
workbooks with a title line above the header.

Cells:
- NaN / empty -> None
- numpy scalars -> python scalars (psycopg2 cannot adapt numpy types)
- strings are kept as authored; trimming is the coercer's job
- fully empty rows are skipped
"""

__all__ = [
    "ParseError",
    "list_sheets",
    "parse_sheet",
    "read_sheet",
    "read_workbook",
]

Source = Union[bytes, bytearray, str, Path]

_XLSX_MAGIC = b"PK\x03\x04"
_XLS_MAGIC = b"\xd0\xcf\x11\xe0"


class ParseError(Exception):
    """Raised when the supplied bytes cannot be parsed as a spreadsheet."""


def _load_bytes(source: Source) -> tuple[bytes, str]:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source), "<bytes>"
    path = Path(source)
    try:
        return path.read_bytes(), path.name
    except OSError as e:
        raise ParseError(f"cannot read {path}: {e}") from e


def _is_workbook(data: bytes) -> bool:
    return data.startswith(_XLSX_MAGIC) or data.startswith(_XLS_MAGIC)


def read_workbook(source: Source, target_sheets: set[str] | None = None) -> dict[str, pd.DataFrame]:
    """Read raw DataFrames (no header applied) keyed by sheet name.

    CSV payloads produce a single sheet named "csv".
    """
    data, name = _load_bytes(source)
    if not data:
        raise ParseError(f"{name}: empty file")
    try:
        if _is_workbook(data):
            dfs: dict[str, pd.DataFrame] = {}
            xls = pd.ExcelFile(io.BytesIO(data))
            for sheet in xls.sheet_names:
                if target_sheets is not None and str(sheet) not in target_sheets:
                    continue
                # ヘッダなしで生読み (後で header_row をヘッダとして適用)
                dfs[str(sheet)] = xls.parse(sheet, header=None, dtype=object)
            return dfs
        df = pd.read_csv(io.BytesIO(data), header=None, dtype=object, skip_blank_lines=False)
        return {"csv": df}
    except ParseError:
        raise
    except Exception as e:
        raise ParseError(f"{name}: not a readable spreadsheet: {e}") from e


def list_sheets(source: Source) -> list[str]:
    return list(read_workbook(source).keys())


def _clean_cell(val: Any) -> Any:
    if val is None:
        return None
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):  # list 等の非スカラ
        return val
    if isinstance(val, np.generic):
        return val.item()
    return val


def frame_to_rows(df: pd.DataFrame, sheet_name: str, header_row: int = 0) -> tuple[list[str], list[RawRow]]:
    """Apply ``header_row`` as header and return (headers, rows)."""
    if df.shape[0] <= header_row:
        raise ParseError(f"sheet '{sheet_name}' has no header row at index {header_row}")
    headers = [
        "" if _clean_cell(c) is None else str(c).strip() for c in df.iloc[header_row].tolist()
    ]
    rows: list[RawRow] = []
    for _, raw in df.iloc[header_row + 1:].iterrows():
        if raw.isna().all():
            continue
        row: RawRow = {}
        for col, val in zip(headers, raw.tolist(), strict=False):
            if col == "":
                continue
            row[col] = _clean_cell(val)
        rows.append(row)
    return headers, rows


def read_sheet(
    source: Source,
    sheet_name: str | None = None,
    *,
    header_row: int = 0,
) -> tuple[str, list[RawRow]]:
    """Parse one sheet (first sheet when ``sheet_name`` is None); returns (sheet name, rows).

    Raises:
        ParseError: unreadable payload, unknown sheet, or missing header row
    """
    target = {sheet_name} if sheet_name is not None else None
    sheets = read_workbook(source, target_sheets=target)
    if not sheets:
        raise ParseError(f"sheet '{sheet_name}' not found")
    name, df = next(iter(sheets.items()))
    _, rows = frame_to_rows(df, name, header_row=header_row)
    return name, rows


def parse_sheet(
    source: Source,
    sheet_name: str | None = None,
    *,
    header_row: int = 0,
) -> list[RawRow]:
    return read_sheet(source, sheet_name, header_row=header_row)[1]
