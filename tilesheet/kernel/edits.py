"""
Tilesheet Kernel — Edit Validation

Validates edit payloads before they reach the row store.
Every change a presentation makes goes through one of these edit types.
Validation is structural (well-formed?) not semantic (will it apply?).
The session handles semantic checks (does the row still exist? etc.).

Rows are referenced either by `row_id` (stable identity, preferred) or by
`row` (0-based index into the current block order).
"""

from __future__ import annotations

from typing import Any

from tilesheet.kernel.types import is_reserved_column, is_valid_column_name

EDIT_TYPES: set[str] = {
    "cell.set",
    "cells.set",
    "row.add",
    "row.delete",
    "row.duplicate",
    "row.move",
    "rows.reorder",
    "column.insert",
    "column.rename",
    "column.remove",
    "column.reorder",
    "column.duplicate",
    "column.config",
    "lane.assign",
}

COLUMN_CONFIG_KEYS = {"formula", "width", "unit", "hide", "type", "format"}

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_edit(type: str, payload: dict[str, Any]) -> list[str]:
    """
    Validate an edit's type and payload structure.
    Returns a list of error strings. Empty list = valid.
    """
    errors: list[str] = []

    if type not in EDIT_TYPES:
        errors.append(f"Unknown edit type: {type}")
        return errors

    if not isinstance(payload, dict):
        errors.append("Payload must be a non-null object")
        return errors

    validator = _VALIDATORS.get(type)
    if validator:
        errors.extend(validator(payload))

    return errors


# ---------------------------------------------------------------------------
# Shared checks
# ---------------------------------------------------------------------------


def _is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _validate_row_ref(p: dict, type: str) -> list[str]:
    if "row_id" in p:
        if not isinstance(p["row_id"], (str, int)) or isinstance(p["row_id"], bool) or str(p["row_id"]) == "":
            return [f"{type} has an invalid 'row_id'"]
        return []
    if "row" in p:
        return [] if _is_index(p["row"]) else [f"{type} has an invalid 'row': {p['row']}"]
    return [f"{type} requires 'row_id' or 'row'"]


def _validate_field_name(p: dict, key: str, type: str) -> list[str]:
    if key not in p:
        return [f"{type} requires '{key}'"]
    if not isinstance(p[key], str) or not p[key].strip():
        return [f"{type} '{key}' must be a non-empty string"]
    return []


def _validate_value(p: dict, type: str) -> list[str]:
    if "value" not in p:
        return [f"{type} requires 'value'"]
    if p["value"] is not None and not isinstance(p["value"], (str, int, float)):
        return [f"{type} 'value' must be text or a number"]
    return []


def _validate_row_list(p: dict, type: str) -> list[str]:
    if "rows" in p:
        rows = p["rows"]
        if not isinstance(rows, list) or not rows:
            return [f"{type} 'rows' must be a non-empty list"]
        if not all(_is_index(r) for r in rows):
            return [f"{type} 'rows' must contain row indexes"]
        return []
    if "row_ids" in p:
        ids = p["row_ids"]
        if not isinstance(ids, list) or not ids:
            return [f"{type} 'row_ids' must be a non-empty list"]
        return []
    return [f"{type} requires 'rows' or 'row_ids'"]


# ---------------------------------------------------------------------------
# Per-edit validators
# ---------------------------------------------------------------------------


def _validate_cell_set(p: dict) -> list[str]:
    errors = _validate_row_ref(p, "cell.set")
    errors.extend(_validate_field_name(p, "field", "cell.set"))
    if not errors and is_reserved_column(p["field"]):
        errors.append(f"cell.set cannot write reserved field: {p['field']}")
    errors.extend(_validate_value(p, "cell.set"))
    return errors


def _validate_cells_set(p: dict) -> list[str]:
    cells = p.get("cells")
    if not isinstance(cells, list) or not cells:
        return ["cells.set requires a non-empty 'cells' list"]
    errors: list[str] = []
    for i, cell in enumerate(cells):
        if not isinstance(cell, dict):
            errors.append(f"cells.set cell {i} must be an object")
            continue
        errors.extend(f"{e} (cell {i})" for e in _validate_cell_set(cell))
    return errors


def _validate_row_add(p: dict) -> list[str]:
    errors: list[str] = []
    if "before" in p and p["before"] is not None and not _is_index(p["before"]):
        errors.append(f"row.add has an invalid 'before': {p['before']}")
    if "values" in p and not isinstance(p["values"], dict):
        errors.append("row.add 'values' must be an object")
    return errors


def _validate_row_delete(p: dict) -> list[str]:
    return _validate_row_list(p, "row.delete")


def _validate_row_duplicate(p: dict) -> list[str]:
    return _validate_row_list(p, "row.duplicate")


def _validate_row_move(p: dict) -> list[str]:
    errors: list[str] = []
    if not _is_index(p.get("from")):
        errors.append("row.move requires a row index in 'from'")
    if not _is_index(p.get("to")):
        errors.append("row.move requires a row index in 'to'")
    return errors


def _validate_rows_reorder(p: dict) -> list[str]:
    order = p.get("order")
    if not isinstance(order, list) or not order:
        return ["rows.reorder requires a non-empty 'order' list of row ids"]
    if len(set(map(str, order))) != len(order):
        return ["rows.reorder 'order' contains duplicates"]
    return []


def _validate_column_insert(p: dict) -> list[str]:
    errors = _validate_field_name(p, "after", "column.insert")
    if "name" in p and p["name"] is not None:
        if not isinstance(p["name"], str) or not is_valid_column_name(p["name"]):
            errors.append(f"column.insert has an invalid 'name': {p['name']}")
    return errors


def _validate_column_rename(p: dict) -> list[str]:
    errors = _validate_field_name(p, "old", "column.rename")
    errors.extend(_validate_field_name(p, "new", "column.rename"))
    if not errors and not is_valid_column_name(p["new"]):
        errors.append(f"column.rename has an invalid 'new' name: {p['new']}")
    return errors


def _validate_column_remove(p: dict) -> list[str]:
    return _validate_field_name(p, "name", "column.remove")


def _validate_column_reorder(p: dict) -> list[str]:
    order = p.get("order")
    if not isinstance(order, list) or not order:
        return ["column.reorder requires a non-empty 'order' list"]
    if not all(isinstance(n, str) and n for n in order):
        return ["column.reorder 'order' must contain column names"]
    return []


def _validate_column_duplicate(p: dict) -> list[str]:
    return _validate_field_name(p, "name", "column.duplicate")


def _validate_column_config(p: dict) -> list[str]:
    errors = _validate_field_name(p, "name", "column.config")
    unknown = set(p) - COLUMN_CONFIG_KEYS - {"name"}
    if unknown:
        errors.append(f"column.config has unknown keys: {sorted(unknown)}")
    if "hide" in p and not isinstance(p["hide"], bool):
        errors.append("column.config 'hide' must be a boolean")
    if "type" in p and p["type"] not in (None, "text", "date", "time"):
        errors.append(f"column.config has an invalid 'type': {p['type']}")
    return errors


def _validate_lane_assign(p: dict) -> list[str]:
    errors = _validate_row_ref(p, "lane.assign")
    errors.extend(_validate_field_name(p, "lane_field", "lane.assign"))
    if "lane" not in p or not isinstance(p["lane"], str):
        errors.append("lane.assign requires 'lane'")
    return errors


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

_VALIDATORS: dict[str, Any] = {
    "cell.set": _validate_cell_set,
    "cells.set": _validate_cells_set,
    "row.add": _validate_row_add,
    "row.delete": _validate_row_delete,
    "row.duplicate": _validate_row_duplicate,
    "row.move": _validate_row_move,
    "rows.reorder": _validate_rows_reorder,
    "column.insert": _validate_column_insert,
    "column.rename": _validate_column_rename,
    "column.remove": _validate_column_remove,
    "column.reorder": _validate_column_reorder,
    "column.duplicate": _validate_column_duplicate,
    "column.config": _validate_column_config,
    "lane.assign": _validate_lane_assign,
}
