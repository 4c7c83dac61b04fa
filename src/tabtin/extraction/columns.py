"""Column lookup by id or by a loosely matched display name."""

from __future__ import annotations

import re
from collections.abc import Sequence

from tabtin.extraction.models import ColumnDefinition

_SEPARATORS = re.compile(r"[\s_\-]+")


def find_column(columns: Sequence[ColumnDefinition], key: str) -> ColumnDefinition | None:
    """Match `key` against column ids first, then names ignoring case and separators."""

    for column in columns:
        if column.id == key:
            return column

    lowered = key.strip().lower()
    for column in columns:
        if column.name.strip().lower() == lowered:
            return column

    folded = _fold(key)
    if not folded:
        return None
    for column in columns:
        if _fold(column.name) == folded or _fold(column.id) == folded:
            return column
    return None


def _fold(value: str) -> str:
    return _SEPARATORS.sub("", value.strip().lower())
