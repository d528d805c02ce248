from __future__ import annotations

from dataclasses import dataclass
from typing import Any

"""Row models for the spreadsheet -> PostgreSQL import reconciler.

RawRow is one parsed spreadsheet record before field mapping (column label as
authored -> cell value). TargetRecord is the coerced, typed output of one
RawRow, ready for storage, together with its uniqueness key.
"""

__all__ = [
    "RawRow",
    "TargetRecord",
]

RawRow = dict[str, Any]


@dataclass(frozen=True)
class TargetRecord:
    """Coerced representation of a single spreadsheet row.

    row_number is the 1-based data row index within the sheet (the header row
    is not counted). key is computed from the profile's conflict key fields.
    """
    row_number: int
    values: dict[str, Any]  # field name -> typed value
    key: str = ""

    def with_values(self, values: dict[str, Any]) -> TargetRecord:
        return TargetRecord(row_number=self.row_number, values=values, key=self.key)
