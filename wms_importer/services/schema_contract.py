from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from ..models.config_models import TableProfile
from ..models.import_result import RowError
from ..models.row_data import TargetRecord

"""Schema contract: drop fields the target table does not have, before writing.

Unknown fields are reported once each as an import-level RowError (row -1)
and removed from every record, so the write never has to be rejected and
retried. Columns come from the profile's ``known_columns`` or from database
introspection (PostgresStore.table_columns).
"""

__all__ = [
    "SchemaContract",
]

logger = logging.getLogger(__name__)


class SchemaContract:
    def __init__(self, table: str, columns: Iterable[str]) -> None:
        self.table = table
        self.columns = frozenset(columns)

    @classmethod
    def from_profile(cls, profile: TableProfile) -> SchemaContract | None:
        if profile.known_columns is None:
            return None
        return cls(profile.table, profile.known_columns)

    def unknown_fields(self, records: Sequence[TargetRecord]) -> list[str]:
        seen: dict[str, None] = {}
        for record in records:
            for name in record.values:
                if name not in self.columns:
                    seen[name] = None
        return list(seen)

    def check(self, records: Sequence[TargetRecord]) -> tuple[list[TargetRecord], list[RowError]]:
        unknown = self.unknown_fields(records)
        if not unknown:
            return list(records), []
        logger.warning("table=%s dropping fields not in schema: %s", self.table, unknown)
        errors = [
            RowError(
                row=-1,
                field=name,
                message=f"column '{name}' is not part of {self.table}; dropped before submission",
            )
            for name in unknown
        ]
        drop = set(unknown)
        cleaned = [
            r.with_values({k: v for k, v in r.values.items() if k not in drop}) for r in records
        ]
        return cleaned, errors
