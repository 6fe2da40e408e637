"""
Tilesheet Kernel — Row Store

Authoritative in-memory mirror of the document: the ordered blocks plus the
schema. Answers identity lookups, applies row and column operations, and
evaluates formula columns when rows are materialized.

The store has no side effects beyond its own blocks and schema. It never
renders, publishes, or persists; the session does that.

Row identity is the block uid, assigned when a block enters the store and
exposed on materialized rows as `__row_id`. The 1-based `#` position is only
a fallback for rows that carry no identity.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from tilesheet.kernel.formula import (
    CompiledFormula,
    FormulaCompileError,
    compile_formula,
    evaluate_formula,
)
from tilesheet.kernel.markdown import build_schema, serialize
from tilesheet.kernel.types import (
    DEFAULT_ERROR_VALUE,
    DEFAULT_NEW_COLUMN_NAME,
    DEFAULT_NEW_ROW_PREFIX,
    HIDDEN_SYSTEM_FIELDS,
    POSITION_FIELD,
    ROW_ID_FIELD,
    Block,
    ColumnConfig,
    FormulaError,
    FormulaResult,
    FormulaValue,
    ParseResult,
    Row,
    Schema,
    is_valid_column_name,
)

logger = logging.getLogger(__name__)

DEFAULT_ROW_CAP = 5000
DEFAULT_FORMULA_ROW_LIMIT = 5000


@dataclass
class StructureSnapshot:
    schema: Schema | None
    blocks: list[tuple[Block, dict[str, str], list[str], str]] = field(default_factory=list)


class RowStore:
    """Blocks + schema for one open document."""

    def __init__(
        self,
        *,
        row_cap: int = DEFAULT_ROW_CAP,
        formula_row_limit: int = DEFAULT_FORMULA_ROW_LIMIT,
        error_value: str = DEFAULT_ERROR_VALUE,
        hidden_fields: Iterable[str] | None = None,
    ) -> None:
        self.row_cap = row_cap
        self.formula_row_limit = formula_row_limit
        self.error_value = error_value
        self._base_hidden = set(HIDDEN_SYSTEM_FIELDS if hidden_fields is None else hidden_fields)

        self.blocks: list[Block] = []
        self.schema: Schema | None = None
        self.hidden_fields: set[str] = set(self._base_hidden)
        self.leading_heading: str | None = None

        self._next_uid = 1
        self._compiled: dict[str, CompiledFormula | FormulaCompileError] = {}
        self._formula_notice_key: tuple[str, ...] | None = None

    # -----------------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------------

    def load(self, parse_result: ParseResult) -> None:
        self.initialise(
            parse_result.blocks,
            parse_result.column_configs,
            leading_heading=parse_result.leading_heading,
        )

    def initialise(
        self,
        blocks: list[Block],
        column_configs: list[ColumnConfig] | None = None,
        *,
        leading_heading: str | None = None,
    ) -> None:
        """Replace all state wholesale. Every block receives a fresh uid."""
        self.blocks = list(blocks)
        for block in self.blocks:
            self._assign_uid(block)
        self.schema, self.hidden_fields = build_schema(
            self.blocks, column_configs, self._base_hidden
        )
        self.leading_heading = leading_heading
        self._compiled.clear()
        self._formula_notice_key = None

    def _assign_uid(self, block: Block) -> Block:
        block.uid = self._next_uid
        self._next_uid += 1
        return block

    # -----------------------------------------------------------------------
    # Schema accessors
    # -----------------------------------------------------------------------

    @property
    def column_names(self) -> list[str]:
        return list(self.schema.column_names) if self.schema else []

    @property
    def primary_field(self) -> str | None:
        return self.schema.column_names[0] if self.schema and self.schema.column_names else None

    def config_for(self, name: str) -> ColumnConfig | None:
        return self.schema.config_for(name) if self.schema else None

    def is_formula_column(self, name: str) -> bool:
        config = self.config_for(name)
        return bool(config and config.formula and config.formula.strip())

    def visible_columns(self) -> list[str]:
        return [n for n in self.column_names if not (self.config_for(n) and self.config_for(n).hide)]

    # -----------------------------------------------------------------------
    # Materialization
    # -----------------------------------------------------------------------

    def materialize_rows(self) -> list[Row]:
        """Project blocks into rows. Never raises; formula failures become cell errors."""
        if self.schema is None:
            return []

        formulas_enabled = len(self.blocks) <= self.formula_row_limit
        if not formulas_enabled:
            self._notice_formulas_disabled()

        formula_columns = [
            (name, self.schema.config_for(name).formula)
            for name in self.schema.column_names
            if self.is_formula_column(name)
        ]

        rows: list[Row] = []
        for position, block in enumerate(self.blocks[: self.row_cap]):
            values = {name: block.data.get(name, "") for name in self.schema.column_names}
            for name in self.hidden_fields:
                if name in block.data:
                    values[name] = block.data[name]
            row = Row(
                row_id=str(block.uid),
                position=position,
                values=values,
                error_value=self.error_value,
            )
            for name, formula in formula_columns:
                if formulas_enabled:
                    row.formulas[name] = self._evaluate(formula, row)
                else:
                    row.formulas[name] = FormulaError(
                        kind="disabled", message="Formulas disabled above the row limit"
                    )
            rows.append(row)
        return rows

    def _evaluate(self, formula: str, row: Row) -> FormulaResult:
        compiled = self._compile(formula)
        if isinstance(compiled, FormulaCompileError):
            return FormulaError(kind="compile", message=str(compiled))

        def resolve(name: str) -> Any:
            if name == POSITION_FIELD:
                return row.position + 1
            if name == ROW_ID_FIELD:
                return row.row_id
            earlier = row.formulas.get(name)
            if isinstance(earlier, FormulaValue):
                return earlier.numeric if earlier.numeric is not None else earlier.value
            if isinstance(earlier, FormulaError):
                return None
            return row.values.get(name)

        try:
            return evaluate_formula(compiled, resolve)
        except Exception as e:
            logger.warning("store: formula %r failed unexpectedly: %s", formula, e)
            return FormulaError(kind="evaluate", message=str(e))

    def _compile(self, formula: str) -> CompiledFormula | FormulaCompileError:
        cached = self._compiled.get(formula)
        if cached is not None:
            return cached
        try:
            compiled: CompiledFormula | FormulaCompileError = compile_formula(formula)
        except FormulaCompileError as e:
            logger.debug("store: formula %r does not compile: %s", formula, e)
            compiled = e
        self._compiled[formula] = compiled
        return compiled

    def _notice_formulas_disabled(self) -> None:
        key = tuple(self.column_names)
        if self._formula_notice_key == key:
            return
        self._formula_notice_key = key
        logger.warning(
            "store: %s rows exceed the formula limit of %s; formula columns show raw values",
            len(self.blocks),
            self.formula_row_limit,
        )

    # -----------------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------------

    def get_row_identity(self, index: int) -> str | None:
        if 0 <= index < len(self.blocks):
            return str(self.blocks[index].uid)
        return None

    def find_block_index(self, identity: str | int | None) -> int | None:
        if identity is None:
            return None
        try:
            uid = int(identity)
        except (TypeError, ValueError):
            return None
        for index, block in enumerate(self.blocks):
            if block.uid == uid:
                return index
        return None

    def index_of_block(self, block: Block) -> int | None:
        for index, candidate in enumerate(self.blocks):
            if candidate is block:
                return index
        return self.find_block_index(block.uid) if block.uid else None

    def get_block_index_from_row(self, row: Row | Mapping[str, Any]) -> int | None:
        """
        Resolve a row (materialized or a plain mapping) to its block index.
        Identity wins; `#` is consulted only when no identity is present.
        """
        if isinstance(row, Row):
            identity: Any = row.row_id
            position: Any = row.position + 1
        else:
            identity = row.get(ROW_ID_FIELD)
            position = row.get(POSITION_FIELD)

        if identity not in (None, ""):
            return self.find_block_index(identity)

        try:
            index = int(str(position).strip()) - 1
        except (TypeError, ValueError):
            return None
        return index if 0 <= index < len(self.blocks) else None

    # -----------------------------------------------------------------------
    # Cell and row operations
    # -----------------------------------------------------------------------

    def get_value(self, index: int, field: str) -> str | None:
        if not 0 <= index < len(self.blocks):
            return None
        return self.blocks[index].data.get(field, "")

    def can_write_field(self, field: str) -> bool:
        if field in self.hidden_fields:
            return True
        return field in self.column_names and not self.is_formula_column(field)

    def accepts_value(self, field: str, value: Any) -> bool:
        """The primary value is written on the heading line, so it cannot span lines."""
        if field != self.primary_field or value is None:
            return True
        return not _has_line_break(str(value))

    def update_cell(self, index: int, field: str, value: Any) -> bool:
        if not 0 <= index < len(self.blocks) or not self.can_write_field(field):
            return False
        if not self.accepts_value(field, value):
            return False
        text = "" if value is None else str(value)
        block = self.blocks[index]
        block.data[field] = text
        if field == self.primary_field:
            block.title = f"{field}: {text}"
        return True

    def set_raw_value(self, index: int, field: str, value: str | None) -> bool:
        """Write (or with None, drop) a field without column checks. Used by history replay."""
        if not 0 <= index < len(self.blocks):
            return False
        block = self.blocks[index]
        if value is None:
            block.data.pop(field, None)
        else:
            block.data[field] = value
            if field == self.primary_field:
                block.title = f"{field}: {value}"
        return True

    def add_row(
        self,
        before: int | None = None,
        prefills: Mapping[str, Any] | None = None,
    ) -> int | None:
        """Insert a new block and return its index. None when there is no schema."""
        if self.schema is None or not self.schema.column_names:
            return None
        primary = self.schema.column_names[0]
        data = {name: "" for name in self.schema.column_names}
        data[primary] = f"{DEFAULT_NEW_ROW_PREFIX} {len(self.blocks) + 1}"
        for name, value in (prefills or {}).items():
            if self.can_write_field(name) and self.accepts_value(name, value):
                data[name] = "" if value is None else str(value)
        block = self._assign_uid(Block(title=f"{primary}: {data[primary]}", data=data))

        index = len(self.blocks) if before is None else max(0, min(before, len(self.blocks)))
        self.blocks.insert(index, block)
        return index

    def delete_rows(self, indexes: Iterable[int]) -> list[tuple[int, Block]]:
        """Remove blocks. Returns (original index, block) pairs in ascending order."""
        valid = sorted({i for i in indexes if 0 <= i < len(self.blocks)})
        removed = [(i, self.blocks[i]) for i in valid]
        for i in reversed(valid):
            del self.blocks[i]
        return removed

    def duplicate_rows(self, indexes: Iterable[int]) -> list[tuple[int, Block]]:
        """Insert a copy of each block right after it. Returns (new index, block) pairs."""
        valid = sorted({i for i in indexes if 0 <= i < len(self.blocks)})
        inserted: list[tuple[int, Block]] = []
        for offset, index in enumerate(valid):
            source_index = index + offset
            copy = self._assign_uid(self.blocks[source_index].clone())
            self.blocks.insert(source_index + 1, copy)
            inserted.append((source_index + 1, copy))
        return inserted

    def move_row(self, from_index: int, to_index: int) -> bool:
        if not 0 <= from_index < len(self.blocks) or not 0 <= to_index < len(self.blocks):
            return False
        if from_index == to_index:
            return False
        block = self.blocks.pop(from_index)
        self.blocks.insert(to_index, block)
        return True

    def insert_blocks(self, entries: Iterable[tuple[int, Block]]) -> None:
        """Re-insert known blocks (keeping their uid) at ascending target indexes."""
        for index, block in sorted(entries, key=lambda e: e[0]):
            self.blocks.insert(max(0, min(index, len(self.blocks))), block)

    def remove_blocks(self, blocks: Iterable[Block]) -> list[tuple[int, Block]]:
        indexes = [i for i in (self.index_of_block(b) for b in blocks) if i is not None]
        return self.delete_rows(indexes)

    def set_block_order(self, order: list[Block]) -> bool:
        """Reorder to `order`. Blocks not mentioned keep their relative order at the end."""
        known = [b for b in order if self.index_of_block(b) is not None]
        remaining = [b for b in self.blocks if all(b is not k for k in known)]
        new_order = known + remaining
        if all(a is b for a, b in zip(new_order, self.blocks)):
            return False
        self.blocks = new_order
        return True

    # -----------------------------------------------------------------------
    # Column operations
    # -----------------------------------------------------------------------

    def _taken_names(self) -> set[str]:
        return set(self.column_names) | self.hidden_fields

    def generate_unique_column_name(self, base: str) -> str:
        name = base.strip() or DEFAULT_NEW_COLUMN_NAME
        taken = self._taken_names()
        if name not in taken:
            return name
        suffix = 2
        while f"{name} {suffix}" in taken:
            suffix += 1
        return f"{name} {suffix}"

    def insert_column_after(self, existing: str, new_name: str) -> str | None:
        """
        Insert a column right after `existing`, uniquifying the name. Every block
        gains the field with an empty value. Returns the final name or None.
        """
        if self.schema is None or existing not in self.schema.column_names:
            return None
        name = self.generate_unique_column_name(new_name)
        if not is_valid_column_name(name):
            return None

        position = self.schema.column_names.index(existing) + 1
        self.schema.column_names.insert(position, name)
        for block in self.blocks:
            block.data = _insert_key_after(block.data, existing, name, "")
        return name

    def duplicate_column(self, name: str) -> str | None:
        if self.schema is None or name not in self.schema.column_names:
            return None
        if name == self.primary_field:
            return None
        new_name = self.insert_column_after(name, name)
        if new_name is None:
            return None
        for block in self.blocks:
            block.data[new_name] = block.data.get(name, "")
        config = self.schema.config_for(name)
        if config is not None:
            self._set_config(config.copy(name=new_name))
        return new_name

    def rename_column(self, old: str, new: str) -> bool:
        if self.schema is None or old not in self.schema.column_names:
            return False
        target = new.strip()
        if target == old:
            return True
        if not is_valid_column_name(target) or target in self._taken_names():
            return False

        names = self.schema.column_names
        names[names.index(old)] = target
        for block in self.blocks:
            if old in block.data:
                block.data = _rename_key(block.data, old, target)
            block.collapsed = [target if c == old else c for c in block.collapsed]
            if target == names[0]:
                block.title = f"{target}: {block.data.get(target, '')}"

        reference = "{" + old + "}"
        for config in self.schema.column_configs or []:
            if config.name == old:
                config.name = target
            if config.formula and reference in config.formula:
                config.formula = config.formula.replace(reference, "{" + target + "}")
        self._compiled.clear()
        return True

    def remove_column(self, name: str) -> bool:
        """Drop a column and its values. The primary column cannot be removed."""
        if self.schema is None or name not in self.schema.column_names:
            return False
        if name == self.primary_field:
            return False
        self.schema.column_names.remove(name)
        for block in self.blocks:
            block.data.pop(name, None)
            if name in block.collapsed:
                block.collapsed.remove(name)
        if self.schema.column_configs:
            self.schema.column_configs = [
                c for c in self.schema.column_configs if c.name != name
            ] or None
        return True

    def reorder_columns(self, order: list[str]) -> bool:
        """
        Apply a new column order. The primary column stays first; names not in
        `order` keep their relative order after the ones that are.
        """
        if self.schema is None:
            return False
        names = self.schema.column_names
        if any(n not in names for n in order):
            return False
        primary = names[0]
        rest = [n for n in dict.fromkeys(order) if n != primary]
        rest += [n for n in names[1:] if n not in rest]
        new_order = [primary, *rest]
        if new_order == names:
            return False
        self.schema.column_names = new_order
        for block in self.blocks:
            ordered = {n: block.data[n] for n in new_order if n in block.data}
            ordered.update({k: v for k, v in block.data.items() if k not in ordered})
            block.data = ordered
        if self.schema.column_configs:
            self.schema.column_configs.sort(
                key=lambda c: new_order.index(c.name) if c.name in new_order else len(new_order)
            )
        return True

    def update_column_config(self, name: str, **changes: Any) -> bool:
        if self.schema is None or name not in self.schema.column_names:
            return False
        current = self.schema.config_for(name) or ColumnConfig(name=name)
        updated = current.copy(**changes)
        if updated == current:
            return False
        self._set_config(updated)
        self._compiled.clear()
        self._formula_notice_key = None
        return True

    def snapshot_structure(self) -> StructureSnapshot:
        """Copy of the schema and every block's fields, for undoing column operations."""
        schema = None
        if self.schema is not None:
            schema = Schema(
                column_names=list(self.schema.column_names),
                column_configs=[c.copy() for c in self.schema.column_configs]
                if self.schema.column_configs
                else None,
            )
        return StructureSnapshot(
            schema=schema,
            blocks=[(b, dict(b.data), list(b.collapsed), b.title) for b in self.blocks],
        )

    def restore_structure(self, snapshot: StructureSnapshot) -> None:
        if snapshot.schema is not None:
            self.schema = Schema(
                column_names=list(snapshot.schema.column_names),
                column_configs=[c.copy() for c in snapshot.schema.column_configs]
                if snapshot.schema.column_configs
                else None,
            )
        for block, data, collapsed, title in snapshot.blocks:
            block.data = dict(data)
            block.collapsed = list(collapsed)
            block.title = title
        self._compiled.clear()

    def _set_config(self, config: ColumnConfig) -> None:
        assert self.schema is not None
        configs = [c for c in self.schema.column_configs or [] if c.name != config.name]
        if config.has_content():
            configs.append(config)
        order = self.schema.column_names
        configs.sort(key=lambda c: order.index(c.name) if c.name in order else len(order))
        self.schema.column_configs = configs or None

    # -----------------------------------------------------------------------
    # Serialization
    # -----------------------------------------------------------------------

    def blocks_to_markdown(self) -> str:
        text = serialize(self.schema, self.blocks, self.hidden_fields, self.leading_heading)
        return text.rstrip() + "\n" if text.strip() else ""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _has_line_break(text: str) -> bool:
    return "\n" in text or "\r" in text


def _insert_key_after(data: dict[str, str], anchor: str, key: str, value: str) -> dict[str, str]:
    if key in data:
        return data
    result: dict[str, str] = {}
    inserted = False
    for existing_key, existing_value in data.items():
        result[existing_key] = existing_value
        if existing_key == anchor:
            result[key] = value
            inserted = True
    if not inserted:
        result[key] = value
    return result


def _rename_key(data: dict[str, str], old: str, new: str) -> dict[str, str]:
    return {(new if k == old else k): v for k, v in data.items()}
