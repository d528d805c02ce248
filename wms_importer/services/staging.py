from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..mapping.coercer import uniqueness_key
from ..models.row_data import TargetRecord

"""Staging map: merge TargetRecords that share a uniqueness key.

Merging keeps every non-null field of the newer record and falls back to the
older value where the newer one is null or absent. The map belongs to one
import session (or is handed from one run to the next through ``save`` /
``load``); it is never module-level state.
"""

__all__ = [
    "StagingMap",
    "merge_records",
]

logger = logging.getLogger(__name__)

STAGING_FORMAT_VERSION = 1


def merge_records(older: TargetRecord, newer: TargetRecord) -> TargetRecord:
    merged: dict[str, Any] = dict(older.values)
    for name, value in newer.values.items():
        if value is not None or name not in merged:
            merged[name] = value
    return TargetRecord(row_number=newer.row_number, values=merged, key=newer.key)


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    # datetime は date のサブクラスなので先に判定
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    if isinstance(value, time):
        return {"__time__": value.isoformat()}
    raise TypeError(f"cannot stage value of type {type(value).__name__}")


def _decode(obj: dict[str, Any]) -> Any:
    if "__decimal__" in obj:
        return Decimal(obj["__decimal__"])
    if "__datetime__" in obj:
        return datetime.fromisoformat(obj["__datetime__"])
    if "__date__" in obj:
        return date.fromisoformat(obj["__date__"])
    if "__time__" in obj:
        return time.fromisoformat(obj["__time__"])
    return obj


class StagingMap:
    """Ordered key -> TargetRecord map with merge-on-stage semantics."""

    def __init__(self, key_fields: Sequence[str]) -> None:
        self.key_fields = tuple(key_fields)
        self._records: dict[str, TargetRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def key_for(self, values: dict[str, Any]) -> str:
        return uniqueness_key(values, self.key_fields)

    def stage(self, record: TargetRecord) -> TargetRecord:
        """Merge ``record`` into the map and return the stored result."""
        # key は staged / incoming で同一計算
        key = self.key_for(record.values)
        incoming = record if record.key == key else TargetRecord(record.row_number, record.values, key)
        previous = self._records.get(key)
        stored = merge_records(previous, incoming) if previous is not None else incoming
        self._records[key] = stored
        return stored

    def stage_all(self, records: Iterable[TargetRecord]) -> list[str]:
        """Stage records; return touched keys in first-seen order."""
        touched: dict[str, None] = {}
        for record in records:
            touched[self.stage(record).key] = None
        return list(touched)

    def get(self, key: str) -> TargetRecord | None:
        return self._records.get(key)

    def records(self) -> list[TargetRecord]:
        return list(self._records.values())

    def save(self, path: Path) -> Path:
        payload = {
            "version": STAGING_FORMAT_VERSION,
            "key_fields": list(self.key_fields),
            "records": [
                {"row": r.row_number, "key": r.key, "values": r.values}
                for r in self._records.values()
            ],
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, default=_encode, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)
        return path

    @classmethod
    def load(cls, path: Path, key_fields: Sequence[str]) -> StagingMap:
        """Load a saved map; a missing file yields an empty map.

        Raises:
            ValueError: the file was saved with different key fields
        """
        staging = cls(key_fields)
        if not path.exists():
            return staging
        data = json.loads(path.read_text(encoding="utf-8"), object_hook=_decode)
        saved_fields = tuple(data.get("key_fields", ()))
        if saved_fields != staging.key_fields:
            raise ValueError(
                f"staging file {path} keyed by {list(saved_fields)}, expected {list(staging.key_fields)}"
            )
        for item in data.get("records", []):
            record = TargetRecord(row_number=item["row"], values=item["values"], key=item["key"])
            staging._records[record.key] = record
        logger.debug("loaded %d staged records from %s", len(staging), path)
        return staging
