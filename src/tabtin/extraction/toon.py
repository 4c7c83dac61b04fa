"""Pre-passes for the compact tabular reply encoding (TOON) that models emit instead of JSON.

Models are prompted to write TAB-separated rows under a declared header such as
`extractions[3]{column_id,column_name,value,image_index}:`. Before decoding, rows are
rewritten to comma delimiters and the declared counts are corrected, because models
miscount long arrays. Decoding itself is left to `toon_format`.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

TOON_HEADER_PATTERN = re.compile(r"^\w+\[\d+\](\{[^}]+\})?:", re.MULTILINE)

_COUNT_HEADER = re.compile(r"^(\s*)(\w+)\[(\d+)\](\{[^}]+\})?:\s*$")
_ROW_INDENT = re.compile(r"^\s{2,}")
_NESTED_KEY = re.compile(r"^\s*\w+(\[|:)")
_LIST_ITEM = re.compile(r"^\s{2}-\s")


def looks_like_toon(text: str) -> bool:
    """Whether `text` contains an array declaration such as `name[3]{a,b}:` or `name[3]:`."""

    return TOON_HEADER_PATTERN.search(text) is not None


def convert_tabs_to_commas(text: str) -> str:
    """Rewrite TAB-delimited indented rows as comma-delimited, quoting values with commas."""

    converted: list[str] = []
    for line in text.split("\n"):
        if _ROW_INDENT.match(line) and "\t" in line:
            stripped = line.lstrip(" ")
            indent = line[: len(line) - len(stripped)]
            values = [_quote_if_needed(value) for value in stripped.split("\t")]
            converted.append(indent + ",".join(values))
        else:
            converted.append(line)
    return "\n".join(converted)


def fix_array_counts(text: str) -> str:
    """Rewrite declared array lengths to match the rows that actually follow them.

    Tabular arrays count every non-blank line indented by at least two spaces that does
    not look like a nested key. List arrays count lines starting with two spaces and `- `.
    A header is rewritten only when at least one row was found and the count differs.
    """

    lines = text.split("\n")
    fixed: list[str] = []
    for position, line in enumerate(lines):
        match = _COUNT_HEADER.match(line)
        if match is None:
            fixed.append(line)
            continue
        indent, name, declared, fields = match.groups()
        if fields:
            actual = _count_tabular_rows(lines, position + 1)
        else:
            actual = _count_list_items(lines, position + 1)
        if actual > 0 and actual != int(declared):
            logger.debug("Correcting TOON array %s: declared %s, found %s", name, declared, actual)
            fixed.append(f"{indent}{name}[{actual}]{fields or ''}:")
        else:
            fixed.append(line)
    return "\n".join(fixed)


def _quote_if_needed(value: str) -> str:
    if "," in value and not value.startswith('"'):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def _count_tabular_rows(lines: list[str], start: int) -> int:
    count = 0
    for line in lines[start:]:
        if _ROW_INDENT.match(line) and line.strip():
            if _NESTED_KEY.match(line):
                break
            count += 1
        elif line.strip() and not line.startswith(" "):
            break
    return count


def _count_list_items(lines: list[str], start: int) -> int:
    count = 0
    for line in lines[start:]:
        if _LIST_ITEM.match(line):
            count += 1
        elif line.strip() and not line.startswith(" "):
            break
    return count
