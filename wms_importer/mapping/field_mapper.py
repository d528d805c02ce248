from __future__ import annotations

from collections.abc import Iterable, Sequence

from ..models.config_models import FieldSpec
from .headers import normalize_header

"""Field mapper: decide which spreadsheet header supplies a target field.

Resolution order (first match wins):
1. a normalized alias equals a normalized header
2. the raw field name equals a raw header
3. the field name with '_' -> ' ' is a substring of a header
4. no match (the field is absent for the sheet; not an error)
"""

__all__ = [
    "build_header_map",
    "resolve_header",
]


def resolve_header(spec: FieldSpec, headers: Sequence[str]) -> str | None:
    """Return the header label that feeds ``spec``, or None. Never raises."""
    labels = [h for h in headers if h is not None]
    normalized = [normalize_header(h) for h in labels]

    for alias in spec.aliases:
        key = normalize_header(alias)
        if not key:
            continue
        for label, norm in zip(labels, normalized):
            if norm == key:
                return label

    if spec.name in labels:
        return spec.name

    fragment = spec.name.replace("_", " ").lower()
    fragment_norm = normalize_header(fragment)
    if not fragment_norm:
        return None
    for label, norm in zip(labels, normalized):
        # 空白入りの断片は正規化後ヘッダにも一致させる ("stock on hand" -> "stockonhand")
        if fragment in str(label).strip().lower() or fragment_norm in norm:
            return label
    return None


def build_header_map(
    specs: Iterable[FieldSpec], headers: Sequence[str]
) -> dict[str, str | None]:
    """Resolve every field of a profile once per sheet."""
    return {spec.name: resolve_header(spec, headers) for spec in specs}
