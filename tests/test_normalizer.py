from __future__ import annotations

import json

import allure
import pytest

from tabtin.errors import MalformedReplyError
from tabtin.extraction.models import (
    ColumnDefinition,
    CoordinateFormat,
    ExtractionSchema,
    FeatureFlags,
)
from tabtin.extraction.normalizer import (
    ExtractionArray,
    FieldValuePair,
    FlatWithMetadata,
    ResponseNormalizer,
    RowsWrapper,
    SimpleMapping,
    Unrecognized,
    detect_shape,
    normalize_reply,
)

pytestmark = [
    allure.epic("Extraction"),
    allure.feature("Reply Normalization"),
]

COLUMNS = [
    ColumnDefinition(id="invoice_no", name="Invoice Number"),
    ColumnDefinition(id="date", name="Date"),
    ColumnDefinition(id="total", name="Total Amount"),
]

EXPECTED = {("invoice_no", "A-17"), ("date", "2026-10-01"), ("total", "99.50")}


def _normalizer(**flags: bool) -> ResponseNormalizer:
    return ResponseNormalizer(
        ExtractionSchema(columns=list(COLUMNS), flags=FeatureFlags(**flags)),
    )


def _pairs(rows) -> set[tuple[str, object]]:
    return {(result.column_id, result.value) for row in rows for result in row}


@pytest.mark.parametrize(
    "reply",
    [
        pytest.param(
            {
                "extractions": [
                    {"column_id": "invoice_no", "value": "A-17", "image_index": 0},
                    {"column_id": "date", "value": "2026-10-01", "image_index": 0},
                    {"column_id": "total", "value": "99.50", "image_index": 0},
                ],
            },
            id="extraction-array",
        ),
        pytest.param(
            [
                {"field_name": "Invoice Number", "value": "A-17"},
                {"field_name": "date", "value": "2026-10-01"},
                {"field_name": "total_amount", "value": "99.50"},
            ],
            id="field-value-pairs",
        ),
        pytest.param(
            {"Invoice Number": "A-17", "date": "2026-10-01", "TOTAL-AMOUNT": "99.50"},
            id="simple-mapping",
        ),
        pytest.param(
            {
                "invoice_no": "A-17",
                "date": "2026-10-01",
                "total": "99.50",
                "confidence": 0.9,
                "image_index": 1,
            },
            id="flat-with-metadata",
        ),
        pytest.param(
            {"rows": [{"invoice_no": "A-17", "date": "2026-10-01", "total": "99.50"}]},
            id="rows-wrapper",
        ),
        pytest.param(
            {
                "rows": [
                    {
                        "fields": [
                            {"column_id": "invoice_no", "value": "A-17"},
                            {"column_id": "date", "value": "2026-10-01"},
                            {"column_id": "total", "value": "99.50"},
                        ],
                    },
                ],
            },
            id="rows-with-fields",
        ),
    ],
)
def test_every_dialect_yields_the_same_pairs(reply: object) -> None:
    rows = _normalizer().normalize(json.dumps(reply))

    assert len(rows) == 1
    assert _pairs(rows) == EXPECTED


def test_flat_metadata_is_shared_by_all_items() -> None:
    reply = {"invoice_no": "A-17", "total": "99.50", "confidence": 0.8, "image_index": 2}

    [row] = _normalizer().normalize(json.dumps(reply))

    assert [(result.confidence, result.image_index) for result in row] == [(0.8, 2), (0.8, 2)]


def test_field_value_pair_keeps_its_metadata() -> None:
    reply = {"field_name": "Date", "value": "2026-10-01", "bbox_2d": [1, 2, 3, 4]}

    [[result]] = _normalizer().normalize(json.dumps(reply))

    assert result.column_id == "date"
    assert result.column_name == "Date"
    assert result.bbox_2d == [1.0, 2.0, 3.0, 4.0]


def test_multi_row_items_are_grouped_by_row_index() -> None:
    items = [
        {"row_index": index // 2, "column_id": column, "value": f"{column}-{index // 2}"}
        for index, column in enumerate(["invoice_no", "total"] * 3)
    ]

    rows = _normalizer(multi_row_extraction=True).normalize(json.dumps({"extractions": items}))

    assert [len(row) for row in rows] == [2, 2, 2]
    assert [row[0].row_index for row in rows] == [0, 1, 2]
    assert rows[2][1].value == "total-2"


def test_partial_row_index_keeps_a_single_row() -> None:
    items = [
        {"row_index": 1, "column_id": "invoice_no", "value": "A-17"},
        {"column_id": "date", "value": "2026-10-01"},
        {"row_index": "2", "column_id": "total", "value": "99.50"},
    ]

    rows = _normalizer(multi_row_extraction=True).normalize(json.dumps(items))

    assert len(rows) == 1
    assert _pairs(rows) == EXPECTED


@pytest.mark.parametrize("token", ["NaN", "Infinity", "-Infinity", '"Infinity"', "1e400"])
def test_non_finite_image_index_falls_back_to_first_image(token: str) -> None:
    item = f'"column_id": "total", "value": "x", "image_index": {token}, "confidence": {token}'
    reply = f"[{{{item}}}]"

    [[result]] = _normalizer().normalize(reply)

    assert result.image_index == 0
    assert result.confidence is None


def test_row_index_is_dropped_when_multi_row_is_off() -> None:
    items = [{"row_index": 4, "column_id": "total", "value": "1"}]

    [[result]] = _normalizer().normalize(json.dumps(items))

    assert result.row_index is None


def test_metadata_follows_feature_flags() -> None:
    items = [{"column_id": "total", "value": "1", "bbox_2d": [1, 2, 3, 4], "confidence": 0.5}]

    [[result]] = _normalizer(bounding_boxes=False, confidence_scores=False).normalize(
        json.dumps(items),
    )

    assert result.bbox_2d is None
    assert result.confidence is None


def test_fenced_json_is_accepted() -> None:
    reply = '```json\n{"invoice_no": "A-17"}\n```'

    [[result]] = _normalizer().normalize(reply)

    assert (result.column_id, result.value) == ("invoice_no", "A-17")


def test_json_embedded_in_prose_is_recovered() -> None:
    reply = 'Here is the data: [{"column_id": "total", "value": "5"}] Let me know!'

    [[result]] = _normalizer().normalize(reply)

    assert result.value == "5"


def test_unparseable_reply_raises() -> None:
    with pytest.raises(MalformedReplyError, match="Failed to parse"):
        _normalizer().normalize("I could not read the document.")


def test_unknown_keys_are_ignored() -> None:
    [row] = _normalizer().normalize(json.dumps({"vendor": "Globex", "date": "2026-10-01"}))

    assert [result.column_id for result in row] == ["date"]


def test_toon_reply_with_miscounted_header() -> None:
    lines = "\n".join(f"  total\tTotal Amount\t{value}\t0" for value in range(7))
    reply = f"extractions[3]{{column_id,column_name,value,image_index}}:\n{lines}"

    [row] = _normalizer(toon_output=True).normalize(reply)

    assert len(row) == 7
    assert [result.value for result in row] == list(range(7))


@pytest.mark.parametrize(
    ("coordinate_format", "header", "expected"),
    [
        (CoordinateFormat.NORMALIZED_1000, "x1,y1,x2,y2", [10, 20, 30, 40]),
        (CoordinateFormat.NORMALIZED_1000_YXYX, "y_min,x_min,y_max,x_max", [10, 20, 30, 40]),
    ],
)
def test_toon_coordinates_are_rebuilt_into_bbox(
    coordinate_format: CoordinateFormat,
    header: str,
    expected: list[int],
) -> None:
    reply = (
        f"extractions[1]{{column_id,column_name,value,image_index,{header},confidence}}:\n"
        "  total\tTotal Amount\t99.50\t0\t10\t20\t30\t40\t0.95"
    )

    [[result]] = normalize_reply(
        reply,
        columns=COLUMNS,
        flags=FeatureFlags(toon_output=True),
        coordinate_format=coordinate_format,
    )

    assert result.bbox_2d == expected
    assert result.confidence == 0.95
    assert result.value == 99.5


def test_toon_value_with_comma_survives_tab_conversion() -> None:
    reply = (
        "extractions[1]{column_id,column_name,value,image_index}:\n"
        "  invoice_no\tInvoice Number\tA-17, copy\t0"
    )

    [[result]] = _normalizer(toon_output=True).normalize(reply)

    assert result.value == "A-17, copy"


@pytest.mark.parametrize(
    ("data", "shape"),
    [
        ({"rows": []}, RowsWrapper),
        ([], ExtractionArray),
        ({"field_name": "Date", "value": "x"}, FieldValuePair),
        ({"a": "1", "b": 2}, SimpleMapping),
        ({"a": "1", "confidence": 0.5}, FlatWithMetadata),
        ({"a": {"nested": True}}, FlatWithMetadata),
        ("just text", Unrecognized),
    ],
)
def test_detect_shape(data: object, shape: type) -> None:
    assert isinstance(detect_shape(data), shape)


def test_unrecognized_reply_normalizes_to_an_empty_row() -> None:
    assert _normalizer().normalize('"nothing useful"') == [[]]
