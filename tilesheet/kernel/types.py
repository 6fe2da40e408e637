"""
Tilesheet Kernel — Shared Types

Data classes used across the codec, row store, history, derivation and session.
These are the contracts that bind the kernel together.

Key ideas:
- A `Block` is one persisted row: ordered field → raw string value.
- Blocks get a process-local `uid` when they enter the store. The uid is the
  stable row identity and is never written to the document.
- A materialized `Row` keeps formula results tagged (`FormulaValue` /
  `FormulaError`); the error sentinel only appears at the presentation boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Union

# ---------------------------------------------------------------------------
# Reserved names
# ---------------------------------------------------------------------------

ROW_ID_FIELD = "__row_id"
POSITION_FIELD = "#"

RESERVED_COLUMNS: set[str] = {ROW_ID_FIELD, POSITION_FIELD}

# Fields kept on blocks and rows but never shown as columns
HIDDEN_SYSTEM_FIELDS: set[str] = {"statusChanged"}

DEFAULT_ERROR_VALUE = "#ERR"
DEFAULT_NEW_COLUMN_NAME = "New column"
DEFAULT_NEW_ROW_PREFIX = "Row"


# ---------------------------------------------------------------------------
# Persisted shapes
# ---------------------------------------------------------------------------


@dataclass
class ColumnConfig:
    """Per-column metadata stored in the ```tlb config block."""

    name: str
    formula: str | None = None
    width: str | None = None
    unit: str | None = None
    hide: bool = False
    type: str | None = None  # "text" | "date" | "time"
    format: str | None = None

    def has_content(self) -> bool:
        return bool(
            self.formula or self.width or self.unit or self.hide or self.type or self.format
        )

    def copy(self, **changes: Any) -> ColumnConfig:
        data = {
            "name": self.name,
            "formula": self.formula,
            "width": self.width,
            "unit": self.unit,
            "hide": self.hide,
            "type": self.type,
            "format": self.format,
        }
        data.update(changes)
        return ColumnConfig(**data)


@dataclass
class Block:
    """
    One logical row as persisted.

    `data` preserves insertion order; the first key of the first block is the
    primary column. `collapsed` lists fields written on the `collapsed:` line.
    """

    title: str = ""
    data: dict[str, str] = field(default_factory=dict)
    collapsed: list[str] = field(default_factory=list)
    uid: int = 0

    def clone(self) -> Block:
        """Copy without the uid; the store assigns a fresh one."""
        return Block(title=self.title, data=dict(self.data), collapsed=list(self.collapsed))


@dataclass
class Schema:
    """Ordered unique column names plus optional per-column config."""

    column_names: list[str] = field(default_factory=list)
    column_configs: list[ColumnConfig] | None = None

    def config_for(self, name: str) -> ColumnConfig | None:
        for config in self.column_configs or []:
            if config.name == name:
                return config
        return None


@dataclass
class ParseResult:
    """What the markdown codec hands to the row store."""

    blocks: list[Block]
    column_configs: list[ColumnConfig] | None = None
    leading_heading: str | None = None
    stray_lines: list[str] = field(default_factory=list)
    invalid_sections: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Formula results (tagged)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FormulaValue:
    """Successful formula evaluation."""

    value: str
    kind: str = "string"  # "number" | "string"
    numeric: float | None = None


@dataclass(frozen=True)
class FormulaError:
    """Failed (or disabled) formula evaluation. kind: compile | evaluate | disabled."""

    kind: str
    message: str


FormulaResult = Union[FormulaValue, FormulaError]


# ---------------------------------------------------------------------------
# Materialized rows
# ---------------------------------------------------------------------------


@dataclass
class Row:
    """
    Presentation-ready projection of a Block.

    `values` holds plain column text; `formulas` holds tagged results for
    formula columns. `text()` is the presentation boundary where a
    FormulaError turns into the error sentinel.
    """

    row_id: str
    position: int
    values: dict[str, str] = field(default_factory=dict)
    formulas: dict[str, FormulaResult] = field(default_factory=dict)
    error_value: str = DEFAULT_ERROR_VALUE

    def text(self, name: str) -> str:
        if name == ROW_ID_FIELD:
            return self.row_id
        if name == POSITION_FIELD:
            return str(self.position + 1)
        result = self.formulas.get(name)
        if result is not None:
            if isinstance(result, FormulaError):
                if result.kind == "disabled":
                    return self.values.get(name, "")
                return self.error_value
            return result.value
        return self.values.get(name, "")

    def get(self, name: str, default: str = "") -> str:
        if name in self.formulas or name in self.values or name in RESERVED_COLUMNS:
            return self.text(name)
        return default

    def __getitem__(self, name: str) -> str:
        return self.text(name)

    def __contains__(self, name: object) -> bool:
        return name in self.values or name in self.formulas or name in RESERVED_COLUMNS

    def is_error(self, name: str) -> bool:
        result = self.formulas.get(name)
        return isinstance(result, FormulaError) and result.kind != "disabled"

    def error_for(self, name: str) -> FormulaError | None:
        result = self.formulas.get(name)
        return result if isinstance(result, FormulaError) else None

    def to_display(self) -> dict[str, str]:
        """Flatten to the plain mapping a widget consumes."""
        display: dict[str, str] = {
            POSITION_FIELD: str(self.position + 1),
            ROW_ID_FIELD: self.row_id,
        }
        for name in self.values:
            display[name] = self.text(name)
        for name in self.formulas:
            display[name] = self.text(name)
        return display


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@dataclass
class FocusTarget:
    """Cell a presentation should re-focus after undo/redo."""

    row_index: int | None = None
    field: str | None = None


@dataclass
class HistoryFocus:
    undo: FocusTarget | None = None
    redo: FocusTarget | None = None


@dataclass
class CellChange:
    """One (row, field) that actually changed inside a transaction."""

    block: Block | None
    index: int
    field: str
    old_value: str
    new_value: str


@dataclass
class HistoryEntry:
    """
    One undoable transaction.
    `undo`/`redo` apply the reverse/forward mutation and return the focus hint.
    """

    label: str
    undo: Callable[[], FocusTarget | None]
    redo: Callable[[], FocusTarget | None]
    targets: list[tuple[str, str]] = field(default_factory=list)  # (row identity, field)


# ---------------------------------------------------------------------------
# Session results
# ---------------------------------------------------------------------------


@dataclass
class Warning:
    """A non-fatal issue encountered while applying an edit."""

    code: str
    message: str
    details: dict[str, Any] | None = None


@dataclass
class EditResult:
    """
    Result of submitting one edit through the session.
    Expected failures are reported in `rejected`, never raised.
    """

    applied: bool
    rejected: list[str] = field(default_factory=list)
    warnings: list[Warning] = field(default_factory=list)
    value: Any = None
    focus: FocusTarget | None = None


@dataclass(frozen=True)
class RowsChanged:
    """Published once per committed transaction, after the store is consistent."""

    revision: int
    reason: str
    identity: str | None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_reserved_column(name: str) -> bool:
    return name.strip() in RESERVED_COLUMNS


def is_valid_column_name(name: str) -> bool:
    """Column names must be non-empty, unreserved, and free of colons (they key `name: value` lines)."""
    trimmed = name.strip()
    if not trimmed or is_reserved_column(trimmed):
        return False
    return ":" not in trimmed and "：" not in trimmed and "\n" not in trimmed


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
