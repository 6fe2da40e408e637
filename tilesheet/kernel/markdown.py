"""
Tilesheet Kernel — Markdown Block Codec

The text-serialization collaborator: document text ⇄ blocks.

Document shape:

    # Optional title (kept, not a row)

    ## Task: Write docs          ← heading starts a block; first field is primary
    Status: doing
    Notes:
    ~~~                          ← multiline values use a tilde fence
    line one
    line two
    ~~~
    collapsed: Owner::Ann%20Lee  ← collapsed fields, percent-encoded names and values

    ```tlb
    Total (formula: {Price} * {Qty}) (width: 120)
    ```

Both ':' and the full-width '：' separate key from value.
serialize(parse(text)) keeps every field value; layout and whitespace may change.
"""

from __future__ import annotations

import re
from urllib.parse import quote, unquote

from tilesheet.kernel.types import (
    HIDDEN_SYSTEM_FIELDS,
    Block,
    ColumnConfig,
    ParseResult,
    Schema,
)

CONFIG_FENCE = "tlb"
COLLAPSED_KEY = "collapsed"

_LIST_OR_QUOTE_PREFIX = re.compile(r"^(?:[-*+]\s|\d+\.\s|>\s?)")
_HEADING_PREFIX = re.compile(r"^#{1,6}\s")
_H2_PREFIX = re.compile(r"^##(?!#)")
_H1_PREFIX = re.compile(r"^#\s")
_TILDE_FENCE = re.compile(r"^~{3,}$")
_CONFIG_FENCE_OPEN = re.compile(r"^```\s*(?:tlb|tilesheet)\s*$", re.IGNORECASE)
_COLLAPSED_LINE = re.compile(r"^collapsed\s*[:：]\s*(.*)$", re.IGNORECASE)
_COLLAPSED_ENTRY = re.compile(r"(\S+?)::")

_CONFIG_KEYS = {"formula", "width", "unit", "type", "format"}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def resolve_colon_index(text: str) -> int:
    """Index of the first ':' or '：', or -1."""
    indexes = [i for i in (text.find(":"), text.find("：")) if i != -1]
    return min(indexes) if indexes else -1


def extract_field(line: str) -> tuple[str, str] | None:
    """Split a `key: value` line. Lists, quotes, headings and tables are not fields."""
    if not line:
        return None
    if _LIST_OR_QUOTE_PREFIX.match(line) or _HEADING_PREFIX.match(line) or line.startswith("|"):
        return None
    colon = resolve_colon_index(line)
    if colon <= 0:
        return None
    comment = line.find("<!--")
    if comment >= 0 and colon > comment:
        return None
    key = line[:colon].strip()
    if not key:
        return None
    return key, line[colon + 1 :].strip()


def parse(text: str) -> ParseResult:
    """Parse document text into blocks plus column config. Never raises."""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    blocks: list[Block] = []
    stray: list[str] = []
    invalid: list[str] = []
    column_configs: list[ColumnConfig] | None = None
    leading_heading: str | None = None

    current: Block | None = None
    skipping_invalid = False
    index = 0

    while index < len(lines):
        line = lines[index]
        trimmed = line.strip()

        if trimmed.startswith("```"):
            end = _find_code_fence_end(lines, index)
            if _CONFIG_FENCE_OPEN.match(trimmed) and column_configs is None:
                configs = [
                    c
                    for c in (parse_column_definition(raw) for raw in lines[index + 1 : end])
                    if c is not None
                ]
                column_configs = configs or None
            elif current is None or skipping_invalid:
                stray.extend(lines[index : end + 1])
            index = end + 1
            continue

        if leading_heading is None and not blocks and current is None and _H1_PREFIX.match(trimmed):
            leading_heading = line
            index += 1
            continue

        if _H2_PREFIX.match(trimmed):
            if current is not None:
                blocks.append(current)
                current = None
            title = re.sub(r"^##\s*", "", trimmed).strip()
            colon = resolve_colon_index(title)
            if colon <= 0:
                invalid.append(line)
                skipping_invalid = True
                index += 1
                continue
            skipping_invalid = False
            key = title[:colon].strip()
            current = Block(title=title, data={key: title[colon + 1 :].strip()})
            index += 1
            continue

        if not trimmed:
            index += 1
            continue

        if current is None or skipping_invalid:
            stray.append(line)
            index += 1
            continue

        collapsed = _COLLAPSED_LINE.match(trimmed)
        if collapsed:
            _merge_collapsed(current, parse_collapsed_body(collapsed.group(1)))
            index += 1
            continue

        parsed = extract_field(trimmed)
        if parsed is None:
            stray.append(line)
            index += 1
            continue

        key, value = parsed
        if not value and index + 1 < len(lines) and _TILDE_FENCE.match(lines[index + 1].strip()):
            fence = lines[index + 1].strip()
            body, end = _consume_tilde_block(lines, index + 1, fence)
            if end is not None:
                current.data[key] = body
                index = end + 1
                continue
        current.data[key] = value
        index += 1

    if current is not None:
        blocks.append(current)

    return ParseResult(
        blocks=blocks,
        column_configs=column_configs,
        leading_heading=leading_heading,
        stray_lines=stray,
        invalid_sections=invalid,
    )


def _find_code_fence_end(lines: list[str], start: int) -> int:
    for i in range(start + 1, len(lines)):
        if lines[i].strip().startswith("```"):
            return i
    return len(lines) - 1


def _consume_tilde_block(lines: list[str], start: int, fence: str) -> tuple[str, int | None]:
    body: list[str] = []
    for i in range(start + 1, len(lines)):
        if lines[i].rstrip("\r") == fence:
            return "\n".join(body), i
        body.append(lines[i])
    return "", None


def parse_collapsed_body(body: str) -> list[tuple[str, str]]:
    matches = list(_COLLAPSED_ENTRY.finditer(body))
    entries: list[tuple[str, str]] = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        entries.append((unquote(match.group(1)), unquote(body[match.end() : end].strip())))
    return entries


def _merge_collapsed(block: Block, entries: list[tuple[str, str]]) -> None:
    for name, value in entries:
        block.data[name] = value
        if name not in block.collapsed:
            block.collapsed.append(name)


def parse_column_definition(line: str) -> ColumnConfig | None:
    """
    Parse one config line: `Name (formula: {A}+{B}) (width: 120) (hide)`.
    Parenthesised segments that are not config stay part of the name.
    """
    trimmed = line.strip()
    if not trimmed or trimmed.startswith("#"):
        return None

    config = ColumnConfig(name="")
    name_parts: list[str] = []
    index = 0
    while index < len(trimmed):
        char = trimmed[index]
        if char != "(":
            name_parts.append(char)
            index += 1
            continue
        closing = _matching_paren(trimmed, index)
        if closing == -1:
            name_parts.append(char)
            index += 1
            continue
        segment = trimmed[index + 1 : closing]
        if not _apply_config_segment(config, segment):
            name_parts.append(trimmed[index : closing + 1])
        index = closing + 1

    name = re.sub(r"\s+", " ", "".join(name_parts).strip())
    config.name = name or trimmed
    return config


def _matching_paren(source: str, start: int) -> int:
    depth = 0
    for i in range(start, len(source)):
        if source[i] == "(":
            depth += 1
        elif source[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _apply_config_segment(config: ColumnConfig, segment: str) -> bool:
    stripped = segment.strip()
    if stripped.lower() == "hide":
        config.hide = True
        return True
    colon = stripped.find(":")
    if colon == -1:
        return False
    key = stripped[:colon].strip().lower()
    if key not in _CONFIG_KEYS:
        return False
    value = stripped[colon + 1 :].strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    if key == "type":
        value = value.lower()
        if value not in ("text", "date", "time"):
            return True
    setattr(config, key, value)
    return True


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def build_schema(
    blocks: list[Block],
    column_configs: list[ColumnConfig] | None,
    hidden_fields: set[str] | None = None,
) -> tuple[Schema | None, set[str]]:
    """
    Derive the column order: first block's keys, then configured columns, then
    keys first seen in later blocks. Newly discovered columns are back-filled
    into the first block so the schema survives a round trip.
    """
    hidden = set(HIDDEN_SYSTEM_FIELDS if hidden_fields is None else hidden_fields)
    if not blocks:
        return None, hidden

    schema_block = blocks[0]
    names: list[str] = []
    found_hidden: set[str] = set()

    def append(key: str) -> bool:
        if key in hidden:
            found_hidden.add(key)
            return False
        if key in names:
            return False
        names.append(key)
        return True

    for key in list(schema_block.data):
        append(key)
    for config in column_configs or []:
        if append(config.name):
            schema_block.data.setdefault(config.name, "")
    for block in blocks[1:]:
        for key in list(block.data):
            if append(key):
                schema_block.data.setdefault(key, "")

    ordered = [c for name in names for c in (column_configs or []) if c.name == name]
    return Schema(column_names=names, column_configs=ordered or None), found_hidden | hidden


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize(
    schema: Schema | None,
    blocks: list[Block],
    hidden_fields: set[str] | None = None,
    leading_heading: str | None = None,
) -> str:
    """Deterministic: the same schema + blocks always produce the same text."""
    if schema is None:
        return f"{leading_heading}\n" if leading_heading else ""

    hidden = HIDDEN_SYSTEM_FIELDS if hidden_fields is None else hidden_fields
    lines: list[str] = []
    if leading_heading:
        lines.extend([leading_heading, ""])

    for block_index, block in enumerate(blocks):
        is_schema_block = block_index == 0
        collapsed = [name for name in block.collapsed if name in block.data]
        for position, key in enumerate(schema.column_names):
            value = block.data.get(key, "")
            if position == 0:
                lines.append(f"## {key}: {_single_line(value)}".rstrip())
                continue
            if key in collapsed:
                continue
            if value.strip():
                lines.extend(_field_lines(key, value))
            elif is_schema_block:
                lines.append(f"{key}:")
        for key in sorted(k for k in block.data if k in hidden):
            if block.data[key].strip() and key not in collapsed:
                lines.append(f"{key}: {_single_line(block.data[key])}")
        primary = schema.column_names[0] if schema.column_names else None
        entries = [
            f"{quote(name, safe='')}::{quote(block.data[name], safe='')}"
            for name in collapsed
            if name != primary
        ]
        if entries:
            lines.append(f"{COLLAPSED_KEY}: {' '.join(entries)}")
        lines.append("")

    config_lines = [serialize_column_config(c) for c in schema.column_configs or [] if c.has_content()]
    if config_lines:
        lines.extend([f"```{CONFIG_FENCE}", *config_lines, "```", ""])

    return "\n".join(lines)


def serialize_column_config(config: ColumnConfig) -> str:
    parts = [config.name]
    if config.formula:
        parts.append(f"(formula: {config.formula})")
    if config.width:
        parts.append(f"(width: {config.width})")
    if config.unit:
        parts.append(f"(unit: {config.unit})")
    if config.type:
        parts.append(f"(type: {config.type})")
    if config.format:
        parts.append(f"(format: {config.format})")
    if config.hide:
        parts.append("(hide)")
    return " ".join(parts)


def _single_line(value: str) -> str:
    return " ".join(value.replace("\r\n", "\n").split("\n")).strip()


def _field_lines(key: str, value: str) -> list[str]:
    normalized = value.replace("\r\n", "\n").replace("\r", "\n")
    if "\n" not in normalized:
        return [f"{key}: {normalized.strip()}"]
    body = normalized.split("\n")
    fence = "~~~"
    while fence in body:
        fence += "~"
    return [f"{key}:", fence, *body, fence]
