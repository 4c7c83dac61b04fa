"""Turn a raw model reply into canonical extraction rows.

Replies arrive as JSON or TOON in several shapes. Parsing produces a Python value, the
value is classified into one `ReplyShape` by a prioritized list of detectors, and each
shape knows how to flatten itself into reply items (`dict`s with `column_id`, `value`,
`image_index` and optional metadata). Items are finally grouped into rows.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import toon_format

from tabtin.errors import MalformedReplyError
from tabtin.extraction import toon
from tabtin.extraction.columns import find_column
from tabtin.extraction.coordinates import coordinate_fields
from tabtin.extraction.models import (
    ColumnDefinition,
    CoordinateFormat,
    ExtractionResult,
    ExtractionSchema,
    FeatureFlags,
)

logger = logging.getLogger(__name__)

METADATA_KEYS: frozenset[str] = frozenset({"bbox_2d", "confidence", "image_index", "row_index"})

_FENCE = re.compile(r"```(?:json|toon)?\n?")
_SNIPPET_CHARS = 500


@dataclass(slots=True, frozen=True)
class RowsWrapper:
    """`{"rows": [...]}`: one element per row."""

    rows: Any


@dataclass(slots=True, frozen=True)
class ExtractionArray:
    """A list of items; shaped items carry `column_id`, others are re-classified."""

    items: list[Any]


@dataclass(slots=True, frozen=True)
class FieldValuePair:
    """`{"field_name": ..., "value": ..., <metadata>}`."""

    data: Mapping[str, Any]


@dataclass(slots=True, frozen=True)
class SimpleMapping:
    """Plain `{key: scalar}` mapping without metadata."""

    data: Mapping[str, Any]


@dataclass(slots=True, frozen=True)
class FlatWithMetadata:
    """`{key: value, ..., bbox_2d/confidence/image_index/row_index}` sharing one metadata set."""

    data: Mapping[str, Any]


@dataclass(slots=True, frozen=True)
class Unrecognized:
    """Anything else. Normalizes to no items."""

    raw: Any


ReplyShape = (
    RowsWrapper | ExtractionArray | FieldValuePair | SimpleMapping | FlatWithMetadata | Unrecognized
)


def _detect_rows_wrapper(data: Any) -> ReplyShape | None:
    if isinstance(data, Mapping) and "rows" in data:
        return RowsWrapper(rows=data["rows"])
    return None


def _detect_array(data: Any) -> ReplyShape | None:
    if isinstance(data, list):
        return ExtractionArray(items=data)
    return None


def _detect_field_value(data: Any) -> ReplyShape | None:
    if isinstance(data, Mapping) and "field_name" in data and "value" in data:
        return FieldValuePair(data=data)
    return None


def _detect_simple_mapping(data: Any) -> ReplyShape | None:
    if not isinstance(data, Mapping):
        return None
    if METADATA_KEYS.intersection(data):
        return None
    if any(isinstance(value, (list, dict)) for value in data.values()):
        return None
    return SimpleMapping(data=data)


def _detect_flat_with_metadata(data: Any) -> ReplyShape | None:
    if isinstance(data, Mapping):
        return FlatWithMetadata(data=data)
    return None


_DETECTORS: tuple[Callable[[Any], ReplyShape | None], ...] = (
    _detect_rows_wrapper,
    _detect_array,
    _detect_field_value,
    _detect_simple_mapping,
    _detect_flat_with_metadata,
)


def detect_shape(data: Any) -> ReplyShape:
    """Classify a parsed reply value. The first matching detector wins."""

    for detector in _DETECTORS:
        shape = detector(data)
        if shape is not None:
            return shape
    return Unrecognized(raw=data)


class ResponseNormalizer:
    """Normalize replies for one column schema, flag set and coordinate convention."""

    def __init__(self, schema: ExtractionSchema) -> None:
        self.schema = schema

    @property
    def columns(self) -> list[ColumnDefinition]:
        return self.schema.columns

    @property
    def flags(self) -> FeatureFlags:
        return self.schema.flags

    def normalize(self, raw_text: str) -> list[list[ExtractionResult]]:
        """Parse, flatten and group a reply into rows of extraction results."""

        parsed = self.parse(raw_text)
        rows = self.group_rows(parsed)
        return [[ExtractionResult.from_raw(item, self.flags) for item in row] for row in rows]

    def parse(self, raw_text: str) -> Any:
        """Strip fences, decode JSON or TOON, and unwrap a top-level `extractions` key."""

        content = _FENCE.sub("", raw_text).strip()
        if self.flags.toon_output and toon.looks_like_toon(content):
            converted = toon.convert_tabs_to_commas(content)
            fixed = toon.fix_array_counts(converted)
            try:
                parsed = toon_format.decode(fixed, strict=False)
            except toon_format.ToonDecodeError as error:
                raise MalformedReplyError(
                    f"Failed to decode TOON reply: {error}. Reply: {_snippet(content)}",
                ) from error
        else:
            parsed = _parse_json(content)

        if isinstance(parsed, Mapping) and "extractions" in parsed:
            parsed = parsed["extractions"]
        return parsed

    def group_rows(self, parsed: Any) -> list[list[dict[str, Any]]]:
        """Split parsed reply data into rows of flattened items."""

        shape = detect_shape(parsed)
        if isinstance(shape, RowsWrapper):
            return self._rows_from_wrapper(shape)

        items = self.flatten(shape)
        indexed = [
            (index, item) for item in items if (index := _numeric_row_index(item)) is not None
        ]
        if items and len(indexed) == len(items):
            grouped: dict[int, list[dict[str, Any]]] = {}
            for index, item in indexed:
                grouped.setdefault(index, []).append(item)
            return [grouped[key] for key in sorted(grouped)]
        return [items]

    def flatten(self, shape: ReplyShape) -> list[dict[str, Any]]:
        """Flatten one classified shape into normalized reply items."""

        if isinstance(shape, ExtractionArray):
            items: list[dict[str, Any]] = []
            for element in shape.items:
                if isinstance(element, Mapping) and "column_id" in element:
                    items.append(self._finish_item(self._shaped_item(element)))
                else:
                    items.extend(self.flatten(detect_shape(element)))
            return items
        if isinstance(shape, FieldValuePair):
            return self._from_field_value(shape.data)
        if isinstance(shape, SimpleMapping):
            return self._from_mapping(shape.data, metadata={})
        if isinstance(shape, FlatWithMetadata):
            metadata = {key: shape.data[key] for key in METADATA_KEYS if key in shape.data}
            return self._from_mapping(shape.data, metadata=metadata)
        if isinstance(shape, RowsWrapper):
            return [item for row in self._rows_from_wrapper(shape) for item in row]
        logger.debug("Unrecognized reply shape %s; producing no items", type(shape.raw).__name__)
        return []

    def _rows_from_wrapper(self, shape: RowsWrapper) -> list[list[dict[str, Any]]]:
        if not isinstance(shape.rows, list):
            return [self.flatten(detect_shape(shape.rows))]
        rows: list[list[dict[str, Any]]] = []
        for element in shape.rows:
            if isinstance(element, Mapping) and isinstance(element.get("fields"), list):
                element = element["fields"]
            rows.append(self.flatten(detect_shape(element)))
        return rows

    def _from_field_value(self, data: Mapping[str, Any]) -> list[dict[str, Any]]:
        field_name = str(data.get("field_name"))
        column = find_column(self.columns, field_name)
        if column is None:
            logger.debug("No column matches field_name %r", field_name)
            return []
        item = {key: data[key] for key in METADATA_KEYS if key in data}
        item.update(column_id=column.id, column_name=column.name, value=data.get("value"))
        return [self._finish_item(item)]

    def _from_mapping(
        self,
        data: Mapping[str, Any],
        *,
        metadata: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for key, value in data.items():
            if key in METADATA_KEYS:
                continue
            column = find_column(self.columns, str(key))
            if column is None:
                logger.debug("No column matches key %r", key)
                continue
            item = dict(metadata)
            item.update(column_id=column.id, column_name=column.name, value=value)
            items.append(self._finish_item(item))
        return items

    def _shaped_item(self, element: Mapping[str, Any]) -> dict[str, Any]:
        item = dict(element)
        item["column_id"] = str(item.get("column_id"))
        if not item.get("column_name"):
            column = find_column(self.columns, item["column_id"])
            if column is not None:
                item["column_name"] = column.name
        return item

    def _finish_item(self, item: dict[str, Any]) -> dict[str, Any]:
        item["column_id"] = str(item.get("column_id"))
        if self.flags.toon_output and self.flags.bounding_boxes:
            _rebuild_bbox(item, self.schema.coordinate_format)
        return item


def normalize_reply(
    raw_text: str,
    *,
    columns: Sequence[ColumnDefinition],
    flags: FeatureFlags,
    coordinate_format: CoordinateFormat = CoordinateFormat.NORMALIZED_1000,
) -> list[list[ExtractionResult]]:
    """Normalize a reply without keeping a normalizer around."""

    schema = ExtractionSchema(
        columns=list(columns),
        flags=flags,
        coordinate_format=coordinate_format,
    )
    return ResponseNormalizer(schema).normalize(raw_text)


def _parse_json(content: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError as error:
        embedded = _embedded_json(content)
        if embedded is not None:
            return embedded
        raise MalformedReplyError(
            f"Failed to parse model reply as JSON: {error.msg}. Reply: {_snippet(content)}",
        ) from error


def _embedded_json(content: str) -> Any | None:
    starts = [index for index in (content.find("{"), content.find("[")) if index >= 0]
    if not starts:
        return None
    start = min(starts)
    end = max(content.rfind("}"), content.rfind("]"))
    if end <= start:
        return None
    try:
        return json.loads(content[start : end + 1])
    except json.JSONDecodeError:
        return None


def _rebuild_bbox(item: dict[str, Any], coordinate_format: CoordinateFormat) -> None:
    fields = coordinate_fields(coordinate_format)
    if not any(field in item for field in fields):
        return
    item["bbox_2d"] = [_coordinate(item.pop(field, None)) for field in fields]


def _coordinate(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return int(float(str(value).strip()))
    except (ValueError, OverflowError):
        return 0


def _numeric_row_index(item: Mapping[str, Any]) -> int | None:
    value = item.get("row_index")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _snippet(content: str) -> str:
    if len(content) <= _SNIPPET_CHARS:
        return content
    return content[:_SNIPPET_CHARS] + "..."
