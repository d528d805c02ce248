from __future__ import annotations

import re
from typing import Any

"""Header normalization for fuzzy spreadsheet column matching.

"Stock On Hand", " stock_on_hand " and "STOCK-ON-HAND" all normalize to
"stockonhand". The case helpers are used by the schema-drift retry to remove
the camelCase / snake_case variants of a rejected column.
"""

__all__ = [
    "camel_to_snake",
    "normalize_header",
    "snake_to_camel",
]

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_WHITESPACE = re.compile(r"\s+")
_UPPER = re.compile(r"[A-Z]")
_SNAKE_PART = re.compile(r"_([a-z])")


def normalize_header(value: Any) -> str:
    """Lower-case, drop whitespace, drop anything outside [a-z0-9].

    Total and idempotent: None and "" both map to "".
    """
    if value is None:
        return ""
    text = _WHITESPACE.sub("", str(value).lower())
    return _NON_ALNUM.sub("", text)


def camel_to_snake(name: str) -> str:
    return _UPPER.sub(lambda m: f"_{m.group(0).lower()}", name)


def snake_to_camel(name: str) -> str:
    return _SNAKE_PART.sub(lambda m: m.group(1).upper(), name)
