"""Bounding-box field order for each coordinate convention."""

from __future__ import annotations

from tabtin.extraction.models import CoordinateFormat

COORD_FIELDS_XYXY: tuple[str, ...] = ("x1", "y1", "x2", "y2")
COORD_FIELDS_YXYX: tuple[str, ...] = ("y_min", "x_min", "y_max", "x_max")


def coordinate_fields(coordinate_format: CoordinateFormat | str) -> tuple[str, ...]:
    """Flat field names a tabular reply uses for the four box coordinates."""

    if _is_yxyx(coordinate_format):
        return COORD_FIELDS_YXYX
    return COORD_FIELDS_XYXY


def bbox_order(coordinate_format: CoordinateFormat | str) -> str:
    """Human-readable coordinate order used in prompts, e.g. `[x1, y1, x2, y2]`."""

    return "[" + ", ".join(coordinate_fields(coordinate_format)) + "]"


def _is_yxyx(coordinate_format: CoordinateFormat | str) -> bool:
    value = coordinate_format.value if isinstance(coordinate_format, CoordinateFormat) else str(
        coordinate_format,
    )
    return "yxyx" in value
