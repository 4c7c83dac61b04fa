"""Extraction and redo prompt construction from a tenant's column schema and flags."""

from __future__ import annotations

from collections.abc import Sequence

from tabtin.extraction.coordinates import bbox_order, coordinate_fields
from tabtin.extraction.models import (
    ColumnDefinition,
    CoordinateFormat,
    ExtractionResult,
    FeatureFlags,
)

PAGE_TEXT_LABEL = "[Extracted text from page {page}]"

DEFAULT_REVIEW_TEMPLATE = """Re-extract selected fields from the cropped document regions.

Fields already confirmed by the reviewer:
{correct_extractions}

Fields to extract again:
{redo_columns}"""

CORE_CONTEXT = """Extract structured data from images into a table.
The user has defined a schema with columns and extraction instructions.
Your output will be DISCARDED if it does not match the required format."""

RULES_ALWAYS = """GENERAL RULES:
You are extracting data from real documents. A person reviews every extraction, so only
extract what is actually visible in the images.

DO:
- extract only data visible in the images
- use null for values that are missing or unreadable
- follow the user's column descriptions exactly
- copy column_id and column_name exactly as written in the schema

DO NOT:
- invent or guess values that are not visible
- copy example values from this prompt
- add explanations, markdown or any text outside the output format
- rename, abbreviate or paraphrase column identifiers"""

RULES_MULTI_ROW = """MULTI-ROW MODE:
The document contains several items (transactions, line items, records). Every field of
one item shares the same row_index.

DO:
- number items with row_index 0, 1, 2, ... in reading order
- extract every item from every page
- follow the column descriptions for what counts as an item

DO NOT:
- stop before the last item on the last page
- create separate rows for document-level fields unless a description asks for it
- skip items"""

RULES_TOON_OUTPUT = """OUTPUT FORMAT: TOON
Answer in TOON, a compact tabular format. The header declares the fields and each
indented line is one extraction with TAB-separated values.

DO:
- separate values with a TAB character
- give every line exactly as many values as the header has fields
- indent every line with two spaces

DO NOT:
- answer in JSON, markdown or any other format
- separate values with spaces or commas
- write anything outside the TOON block"""

RULES_JSON_OUTPUT = """OUTPUT FORMAT: JSON
Answer with a JSON object holding an "extractions" array. Every extraction is an object
with the required fields.

DO:
- output valid JSON in exactly the structure shown below
- include every required field in every extraction

DO NOT:
- wrap the JSON in markdown code fences
- add comments or explanations"""

RULES_BOUNDING_BOXES = """BOUNDING BOXES:
Give the location of every value in its image.

COORDINATES:
- normalized to 0-1000 (0 = top/left edge, 1000 = bottom/right edge)
- {layout}
- for values spanning several lines, cover all of them

DO:
- box the text that holds the value
- {missing}

DO NOT:
- guess coordinates for unclear locations
- use pixel values"""

RULES_CONFIDENCE = """CONFIDENCE SCORES:
Rate how certain you are about every value. Low scores are flagged for manual review.

- 0.9 or higher: clearly visible, unambiguous text
- 0.5 to 0.9: partially visible or ambiguous text
- 0.0: value not present
- never give a high score to a guessed value"""

RULES_IMAGE_INDEX = """IMAGE INDEX:
You may receive one or several images. image_index tells which image a value came from.

- use the 0-based position of the image where the value was found
- use 0 when there is a single image"""

RULES_OCR_GUIDANCE = """OCR TEXT:
Some images are followed by machine-extracted text labelled
"[Extracted text from page N]". Treat it as a helper only.

DO:
- rely on what you see in the images first
- use the text for small print, unclear characters or dense content
- prefer your own reading when the two disagree

DO NOT:
- copy the text without checking it against the image
- trust it for layout, table structure or reading order"""


def build_extraction_prompt(
    columns: Sequence[ColumnDefinition],
    flags: FeatureFlags,
    coordinate_format: CoordinateFormat = CoordinateFormat.NORMALIZED_1000,
) -> str:
    """Assemble the full extraction prompt for one batch request."""

    order = bbox_order(coordinate_format)
    fields = coordinate_fields(coordinate_format)
    sections = [CORE_CONTEXT, schema_section(columns), RULES_ALWAYS]
    if flags.multi_row_extraction:
        sections.append(RULES_MULTI_ROW)
    sections.append(RULES_TOON_OUTPUT if flags.toon_output else RULES_JSON_OUTPUT)
    if flags.bounding_boxes:
        if flags.toon_output:
            sections.append(
                RULES_BOUNDING_BOXES.format(
                    layout=f"output coordinates as separate fields: {', '.join(fields)}",
                    missing="set every coordinate field to 0 for values not present",
                ),
            )
        else:
            sections.append(
                RULES_BOUNDING_BOXES.format(
                    layout=f"format: {order}",
                    missing="use [0, 0, 0, 0] for values not present",
                ),
            )
    if flags.confidence_scores:
        sections.append(RULES_CONFIDENCE)
    sections.append(RULES_IMAGE_INDEX)
    sections.append(RULES_OCR_GUIDANCE)
    if flags.toon_output:
        sections.append(_toon_format_section(columns, flags, fields))
    else:
        sections.append(_json_format_section(columns, flags, order))
    return "\n\n".join(sections)


def schema_section(columns: Sequence[ColumnDefinition]) -> str:
    """Describe the user's columns; this section takes priority over every other rule."""

    lines = [
        "--- USER SCHEMA (ABSOLUTE PRIORITY) ---",
        "",
        "Follow the descriptions of these columns exactly. They define what to extract",
        "and any special handling.",
    ]
    for position, column in enumerate(columns, start=1):
        lines.append("")
        lines.append(f"Column {position}:")
        lines.append(f'  column_id: "{column.id}"')
        lines.append(f'  column_name: "{column.name}"')
        lines.append(f"  type: {column.type}")
        if column.description:
            lines.append(f"  description: {column.description}")
        if column.allowed_values:
            lines.append(f"  allowed_values: {column.allowed_values}")
            lines.append("  CONSTRAINT: value MUST be one of these exactly, or null if not found")
        if column.regex:
            lines.append(f"  validation_pattern: {column.regex}")
    return "\n".join(lines)


def build_redo_prompt(
    template: str | None,
    kept: Sequence[ExtractionResult],
    redo_columns: Sequence[ColumnDefinition],
    coordinate_format: CoordinateFormat = CoordinateFormat.NORMALIZED_1000,
) -> str:
    """Prompt for re-extracting `redo_columns` of one row from cropped region images."""

    kept_text = "\n".join(f"  - {result.column_name}: {result.value}" for result in kept)
    redo_text = "\n".join(
        f"- {column.name} ({column.type}): {column.description}" for column in redo_columns
    )
    prompt = (template or DEFAULT_REVIEW_TEMPLATE).replace(
        "{correct_extractions}",
        kept_text or "  (No correct extractions yet)",
    )
    prompt = prompt.replace("{redo_columns}", redo_text)

    count = len(redo_columns)
    lines = [
        prompt,
        "",
        "--- REDO EXTRACTION ---",
        "This document was processed before. Some values were confirmed and are kept.",
        f"The reviewer selected {count} field(s) to extract again and you receive {count}",
        "cropped image(s) showing the regions of interest, one per field in the order below.",
        "",
        "ALREADY EXTRACTED (do not extract again):",
        kept_text or "  (None)",
        "",
        "FIELDS TO EXTRACT AGAIN:",
    ]
    for position, column in enumerate(redo_columns, start=1):
        lines.append(f'{position}. "{column.name}"')
        lines.append(f'   column_id: "{column.id}"')
        lines.append(f"   type: {column.type}")
        lines.append(f"   description: {column.description or '(no description)'}")
        if column.allowed_values:
            lines.append(f"   allowed values: {column.allowed_values}")
        if column.regex:
            lines.append(f"   validation pattern: {column.regex}")

    lines.extend(
        [
            "",
            "INSTRUCTIONS:",
            f"1. Extract ONLY the {count} field(s) listed above.",
            "2. Use the exact column_id and column_name given for each field.",
            "3. image_index is the position of the cropped image the value was read from.",
            "4. Follow any formatting rules in the field descriptions.",
            "5. Use null if the value is not visible.",
            "",
            "Return ONLY a JSON array in this structure:",
            _redo_example(redo_columns, coordinate_format),
        ],
    )
    return "\n".join(lines)


def _toon_format_section(
    columns: Sequence[ColumnDefinition],
    flags: FeatureFlags,
    coordinate_names: tuple[str, ...],
) -> str:
    header_fields: list[str] = []
    if flags.multi_row_extraction:
        header_fields.append("row_index")
    header_fields.extend(["column_id", "column_name", "value", "image_index"])
    if flags.bounding_boxes:
        header_fields.extend(coordinate_names)
    if flags.confidence_scores:
        header_fields.append("confidence")

    def sample_row(column: ColumnDefinition, row_index: int) -> str:
        values: list[str] = []
        if flags.multi_row_extraction:
            values.append(str(row_index))
        values.extend([column.id, column.name, "<extracted_value>", "0"])
        if flags.bounding_boxes:
            values.extend(f"<{name}>" for name in coordinate_names)
        if flags.confidence_scores:
            values.append("<conf>")
        return "  " + "\t".join(values)

    rows = [sample_row(column, row) for column, row in _example_cells(columns, flags)]
    header = f"extractions[{len(rows)}]{{{','.join(header_fields)}}}:"
    return "\n".join(
        [
            "--- OUTPUT FORMAT ---",
            "",
            "FORMAT EXAMPLE (structure only, replace placeholders with extracted data):",
            "```",
            header,
            *rows,
            "```",
            "",
            "Replace:",
            "- <extracted_value> with the value from the images (or null)",
            "- coordinate placeholders with values 0-1000 (or 0 if not present)",
            "- <conf> with a confidence between 0.0 and 1.0",
            f"- [{len(rows)}] with the number of lines you actually output",
        ],
    )


def _json_format_section(
    columns: Sequence[ColumnDefinition],
    flags: FeatureFlags,
    order: str,
) -> str:
    cells = _example_cells(columns, flags)
    blocks: list[str] = []
    for position, (column, row_index) in enumerate(cells):
        fields: list[str] = []
        if flags.multi_row_extraction:
            fields.append(f'      "row_index": {row_index}')
        fields.append(f'      "column_id": "{column.id}"')
        fields.append(f'      "column_name": "{column.name}"')
        fields.append('      "value": "<extracted_value>"')
        fields.append('      "image_index": 0')
        if flags.bounding_boxes:
            fields.append(f'      "bbox_2d": {order}')
        if flags.confidence_scores:
            fields.append('      "confidence": <conf>')
        closing = "    }" if position == len(cells) - 1 else "    },"
        blocks.append("    {\n" + ",\n".join(fields) + "\n" + closing)
    return "\n".join(
        [
            "--- OUTPUT FORMAT ---",
            "",
            "FORMAT EXAMPLE (structure only, replace placeholders with extracted data):",
            "{",
            '  "extractions": [',
            *blocks,
            "  ]",
            "}",
            "",
            "Replace:",
            "- <extracted_value> with the value from the images (or null)",
            "- coordinate names with values 0-1000 (or 0 if not present)",
            "- <conf> with a confidence between 0.0 and 1.0",
        ],
    )


def _example_cells(
    columns: Sequence[ColumnDefinition],
    flags: FeatureFlags,
) -> list[tuple[ColumnDefinition, int]]:
    if flags.multi_row_extraction and len(columns) >= 2:  # noqa: PLR2004
        first, second = columns[0], columns[1]
        return [(first, 0), (second, 0), (first, 1), (second, 1)]
    return [(column, 0) for column in columns]


def _redo_example(
    redo_columns: Sequence[ColumnDefinition],
    coordinate_format: CoordinateFormat,
) -> str:
    order = bbox_order(coordinate_format)
    blocks = []
    for column in redo_columns:
        blocks.append(
            "  {\n"
            f'    "column_id": "{column.id}",\n'
            f'    "column_name": "{column.name}",\n'
            '    "value": "<extracted_value>",\n'
            '    "image_index": 0,\n'
            f'    "bbox_2d": {order},\n'
            '    "confidence": <conf>\n'
            "  }",
        )
    return "[\n" + ",\n".join(blocks) + "\n]"
