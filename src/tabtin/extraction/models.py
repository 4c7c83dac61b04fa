"""Domain models for columns, feature flags and extraction results."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CoordinateFormat(str, Enum):
    """Coordinate conventions a tenant may ask the model to use for bounding boxes."""

    PIXELS = "pixels"
    NORMALIZED_1000 = "normalized_1000"
    NORMALIZED_1000_YXYX = "normalized_1000_yxyx"
    NORMALIZED_1024_YXYX = "normalized_1024_yxyx"
    NORMALIZED_1 = "normalized_1"
    YOLO = "yolo"

    @property
    def is_yxyx(self) -> bool:
        return "yxyx" in self.value


@dataclass(slots=True)
class ColumnDefinition:
    """One user-defined column of a tenant's extraction schema."""

    id: str
    name: str
    type: str = "text"
    description: str = ""
    allowed_values: str | None = None
    regex: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ColumnDefinition:
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            type=str(data.get("type") or "text"),
            description=str(data.get("description") or ""),
            allowed_values=data.get("allowed_values") or data.get("allowedValues") or None,
            regex=data.get("regex") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
        }
        if self.allowed_values:
            data["allowed_values"] = self.allowed_values
        if self.regex:
            data["regex"] = self.regex
        return data


@dataclass(slots=True)
class FeatureFlags:
    """Per-tenant switches that shape the prompt and the normalized output."""

    bounding_boxes: bool = True
    confidence_scores: bool = True
    multi_row_extraction: bool = False
    toon_output: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> FeatureFlags:
        data = data or {}
        defaults = cls()
        return cls(
            bounding_boxes=bool(data.get("bounding_boxes", defaults.bounding_boxes)),
            confidence_scores=bool(data.get("confidence_scores", defaults.confidence_scores)),
            multi_row_extraction=bool(
                data.get("multi_row_extraction", defaults.multi_row_extraction),
            ),
            toon_output=bool(data.get("toon_output", defaults.toon_output)),
        )

    def to_dict(self) -> dict[str, bool]:
        return {
            "bounding_boxes": self.bounding_boxes,
            "confidence_scores": self.confidence_scores,
            "multi_row_extraction": self.multi_row_extraction,
            "toon_output": self.toon_output,
        }


@dataclass(slots=True)
class ExtractionResult:
    """One column's extracted value for one row, with optional location and confidence."""

    column_id: str
    column_name: str
    value: Any
    image_index: int = 0
    bbox_2d: list[float] | None = None
    confidence: float | None = None
    row_index: int | None = None
    redone: bool | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], flags: FeatureFlags) -> ExtractionResult:
        """Build a result from a normalized reply item, keeping only flag-enabled metadata."""

        image_index = _as_int(raw.get("image_index"))
        row_index = _as_int(raw.get("row_index"))
        redone = raw.get("redone")
        return cls(
            column_id=str(raw.get("column_id", "")),
            column_name=str(raw.get("column_name") or ""),
            value=raw.get("value"),
            image_index=image_index if image_index is not None else 0,
            bbox_2d=_as_bbox(raw.get("bbox_2d")) if flags.bounding_boxes else None,
            confidence=_as_float(raw.get("confidence")) if flags.confidence_scores else None,
            row_index=row_index if flags.multi_row_extraction else None,
            redone=bool(redone) if redone is not None else None,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExtractionResult:
        """Load a result stored in an extraction row."""

        image_index = _as_int(data.get("image_index"))
        return cls(
            column_id=str(data.get("column_id", "")),
            column_name=str(data.get("column_name") or ""),
            value=data.get("value"),
            image_index=image_index if image_index is not None else 0,
            bbox_2d=_as_bbox(data.get("bbox_2d")),
            confidence=_as_float(data.get("confidence")),
            row_index=_as_int(data.get("row_index")),
            redone=data.get("redone"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "column_id": self.column_id,
            "column_name": self.column_name,
            "value": self.value,
            "image_index": self.image_index,
        }
        if self.bbox_2d is not None:
            data["bbox_2d"] = list(self.bbox_2d)
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.row_index is not None:
            data["row_index"] = self.row_index
        if self.redone is not None:
            data["redone"] = self.redone
        return data


@dataclass(slots=True)
class ExtractionSchema:
    """Columns plus the switches that apply to one normalization call."""

    columns: list[ColumnDefinition]
    flags: FeatureFlags = field(default_factory=FeatureFlags)
    coordinate_format: CoordinateFormat = CoordinateFormat.NORMALIZED_1000


def _as_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    number = _as_float(value)
    return None if number is None else int(number)


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            return None
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _as_bbox(value: Any) -> list[float] | None:
    if not isinstance(value, (list, tuple)) or len(value) != 4:  # noqa: PLR2004
        return None
    parts = [_as_float(part) for part in value]
    if any(part is None for part in parts):
        return None
    return [part for part in parts if part is not None]
