from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from ..models.config_models import LookupSpec
from ..models.row_data import TargetRecord

"""Session-scoped lookup cache (natural name -> generated identifier).

Used for auxiliary tables such as categories: the spreadsheet carries a
category name, the target table wants category_id. Each import session owns
its own cache; nothing here is shared between concurrent imports.
"""

__all__ = [
    "LookupCache",
]

logger = logging.getLogger(__name__)

Resolve = Callable[[str, str, Any, Mapping[str, Any]], Any]


class LookupCache:
    """Resolve lookup values through ``resolve`` and remember the ids."""

    def __init__(self, resolve: Resolve) -> None:
        self._resolve = resolve
        self._ids: dict[tuple[str, str], Any] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def get_id(self, spec: LookupSpec, value: Any) -> Any:
        """Return the id for ``value``; None when blank or the lookup failed."""
        if value is None:
            return None
        name = str(value).strip()
        if not name:
            return None
        cache_key = (spec.table, name.lower())
        if cache_key in self._ids:
            return self._ids[cache_key]
        try:
            ident = self._resolve(spec.table, spec.column, name, spec.defaults)
        except Exception as e:
            # 失敗時は対象列 NULL のまま取り込み継続 (キャッシュしない)
            logger.error("lookup %s.%s=%r failed: %s", spec.table, spec.column, name, e)
            return None
        if ident is not None:
            self._ids[cache_key] = ident
        return ident

    def apply(self, specs: Sequence[LookupSpec], record: TargetRecord) -> TargetRecord:
        if not specs:
            return record
        values = dict(record.values)
        for spec in specs:
            if spec.field not in values:
                # 元列が無い行は対象列にも触れない
                continue
            values[spec.target] = self.get_id(spec, values.get(spec.field))
            if not spec.keep_source and spec.field != spec.target:
                values.pop(spec.field, None)
        return record.with_values(values)
