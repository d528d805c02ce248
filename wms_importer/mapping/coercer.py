from __future__ import annotations

import random
import re
import time
from collections.abc import Mapping, Sequence
from decimal import Decimal, InvalidOperation
from numbers import Real
from typing import Any

from ..models.config_models import Coercion, FieldSpec
from ..models.row_data import RawRow, TargetRecord
from .field_mapper import build_header_map

"""Row coercer: RawRow -> TargetRecord.

Rules:
- fields without a matching column are left out of the record
- numeric: keep digits, '.' and '-', parse; blank or unparseable -> field default
- string: trim; blank -> None when the field is null_if_blank
- null identifier fields get a synthesized placeholder id
- null mandatory fields raise RowCoercionError (row is excluded by the caller)

The transformation is pure apart from the placeholder id's clock/random parts.
"""

__all__ = [
    "RowCoercionError",
    "coerce_numeric",
    "coerce_row",
    "coerce_string",
    "coerce_value",
    "placeholder_identifier",
    "uniqueness_key",
]

_NUMERIC_JUNK = re.compile(r"[^0-9.\-]")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
KEY_SEPARATOR = "::"


class RowCoercionError(Exception):
    """Raised when a mandatory field of a row resolves to null."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, Real):
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            return None
        return d if d.is_finite() else None
    cleaned = _NUMERIC_JUNK.sub("", str(value))
    if not cleaned:
        return None
    try:
        d = Decimal(cleaned)
    except InvalidOperation:  # "1.2.3", "-", "5-" など
        return None
    return d if d.is_finite() else None


def coerce_numeric(value: Any, kind: Coercion, default: Any = None) -> Any:
    """Parse a numeric cell; integers truncate toward zero. Never raises."""
    if value is None:
        return default
    d = _to_decimal(value)
    if d is None:
        return default
    if kind == Coercion.INTEGER:
        return int(d)
    return d


def coerce_string(value: Any, null_if_blank: bool = True) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        # Excel は数値セルを float で返す (SKU 1001 -> 1001.0)
        text = str(int(value))
    else:
        text = str(value).strip()
    if text == "" and null_if_blank:
        return None
    return text


def coerce_value(spec: FieldSpec, value: Any) -> Any:
    """Apply the field's coercion rule, falling back to its default."""
    if spec.is_numeric:
        return coerce_numeric(value, spec.coerce, spec.default)
    if spec.coerce == Coercion.STRING:
        result = coerce_string(value, spec.null_if_blank)
    else:
        result = value
        if spec.null_if_blank and isinstance(value, str) and value.strip() == "":
            result = None
    return spec.default if result is None else result


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def placeholder_identifier(prefix: str) -> str:
    """Synthesize '<prefix>-<base36 millis>-<base36 random>'."""
    millis = int(time.time() * 1000)
    return f"{prefix}-{_base36(millis)}-{_base36(random.randrange(36 ** 6))}"


def uniqueness_key(values: Mapping[str, Any], key_fields: Sequence[str]) -> str:
    """Join key field values with '::' (None renders as ''), e.g. 'SKU-1::W1'."""
    return KEY_SEPARATOR.join(
        "" if values.get(f) is None else str(values.get(f)) for f in key_fields
    )


def coerce_row(
    raw_row: RawRow,
    specs: Sequence[FieldSpec],
    row_number: int,
    header_map: Mapping[str, str | None] | None = None,
    key_fields: Sequence[str] = (),
) -> TargetRecord:
    """Produce one TargetRecord from a RawRow.

    header_map (field -> header label) should be built once per sheet with
    ``build_header_map``; when omitted it is resolved from this row's keys.

    Raises:
        RowCoercionError: a mandatory field resolved to null
    """
    if header_map is None:
        header_map = build_header_map(specs, list(raw_row.keys()))

    values: dict[str, Any] = {}
    for spec in specs:
        header = header_map.get(spec.name)
        if header is None:
            # 対応列なし: 値は不在 (既定値は使わない)
            if spec.mandatory:
                raise RowCoercionError(
                    spec.name, f"missing mandatory field '{spec.name}' (no matching column)"
                )
            if spec.identifier:
                values[spec.name] = placeholder_identifier(spec.placeholder_prefix or spec.name)
            continue
        value = coerce_value(spec, raw_row.get(header))
        if value is None:
            if spec.mandatory:
                raise RowCoercionError(
                    spec.name, f"missing mandatory field '{spec.name}' (header '{header}')"
                )
            if spec.identifier:
                value = placeholder_identifier(spec.placeholder_prefix or spec.name)
        values[spec.name] = value

    return TargetRecord(
        row_number=row_number,
        values=values,
        key=uniqueness_key(values, key_fields),
    )
