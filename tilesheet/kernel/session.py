"""
Tilesheet Kernel — Document Session

Sits between the synchronous core (row store, history, derivation) and the
outside world (storage, backups, presentations). One session owns one open
document; switching documents is a single open() call.

Edit lifecycle:

    apply_edit(type, payload)
        validate ─► history transaction over the store
                 ─► conversion guard: first user mutation
                 ─► publish RowsChanged (in subscription order)
                 ─► debounced save
                 ─► coalesced render

Presentations read through rows() / derive_*() and write only through
apply_edit(), undo() and redo(). Expected failures come back as EditResult
rejections; contract violations raise.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from tilesheet.kernel.conversion import ConversionSessionGuard
from tilesheet.kernel.derive import LaneSet, Page, build_board, build_gallery, build_table
from tilesheet.kernel.edits import validate_edit
from tilesheet.kernel.history import DEFAULT_HISTORY_LIMIT, HistoryManager
from tilesheet.kernel.markdown import parse
from tilesheet.kernel.persistence import DEFAULT_SAVE_DEBOUNCE_MS, PersistenceService
from tilesheet.kernel.rules import BoardDefinition, GalleryDefinition, TableDefinition
from tilesheet.kernel.scheduler import RenderScheduler
from tilesheet.kernel.storage import BackupStore, DocumentStorage, MemoryBackupStore
from tilesheet.kernel.store import DEFAULT_FORMULA_ROW_LIMIT, DEFAULT_ROW_CAP, RowStore
from tilesheet.kernel.types import (
    DEFAULT_ERROR_VALUE,
    DEFAULT_NEW_COLUMN_NAME,
    HIDDEN_SYSTEM_FIELDS,
    EditResult,
    FocusTarget,
    Row,
    RowsChanged,
    Warning,
    now_iso,
)

logger = logging.getLogger(__name__)

STATUS_CHANGED_FIELD = "statusChanged"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SessionNotOpen(Exception):
    """Session used before open()."""
    pass


class DocumentNotFound(Exception):
    """Document does not exist in storage."""
    pass


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass
class SessionOptions:
    row_cap: int = DEFAULT_ROW_CAP
    formula_row_limit: int = DEFAULT_FORMULA_ROW_LIMIT
    error_value: str = DEFAULT_ERROR_VALUE
    history_limit: int = DEFAULT_HISTORY_LIMIT
    save_debounce_ms: int = DEFAULT_SAVE_DEBOUNCE_MS
    hidden_fields: set[str] = field(default_factory=lambda: set(HIDDEN_SYSTEM_FIELDS))

    @classmethod
    def from_settings(cls) -> SessionOptions:
        from tilesheet.config import settings

        return cls(
            row_cap=settings.ROW_CAP,
            formula_row_limit=settings.FORMULA_ROW_LIMIT,
            error_value=settings.ERROR_VALUE,
            history_limit=settings.HISTORY_LIMIT,
            save_debounce_ms=settings.SAVE_DEBOUNCE_MS,
        )


Subscriber = Callable[[RowsChanged], None]
Renderer = Callable[["DocumentSession"], Awaitable[None]]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class DocumentSession:
    """
    The explicitly owned state for one open document.
    Coordinates store + history + guard + persistence + scheduler.
    """

    def __init__(
        self,
        storage: DocumentStorage,
        backups: BackupStore | None = None,
        options: SessionOptions | None = None,
    ) -> None:
        self.options = options or SessionOptions()
        self.storage = storage
        self.store = RowStore(
            row_cap=self.options.row_cap,
            formula_row_limit=self.options.formula_row_limit,
            error_value=self.options.error_value,
            hidden_fields=self.options.hidden_fields,
        )
        self.history = HistoryManager(self.store, limit=self.options.history_limit)
        self.persistence = PersistenceService(
            storage, self.store.blocks_to_markdown, debounce_ms=self.options.save_debounce_ms
        )
        self.guard = ConversionSessionGuard(
            storage,
            backups or MemoryBackupStore(),
            cancel_scheduled_save=self.persistence.cancel_scheduled_save,
        )
        self.scheduler = RenderScheduler(self._render_pass)

        self.identity: str | None = None
        self.revision = 0
        self.render_count = 0
        self.stray_lines: list[str] = []
        self._subscribers: list[Subscriber] = []
        self._renderers: list[Renderer] = []
        self._lock = asyncio.Lock()

    # -- lifecycle --

    @property
    def is_open(self) -> bool:
        return self.identity is not None

    def _require_open(self) -> str:
        if self.identity is None:
            raise SessionNotOpen("No document is open")
        return self.identity

    async def open(self, identity: str, *, convert: bool = False) -> list[Row]:
        """
        Load a document, replacing store, history, guard state and pending saves.
        With `convert`, the raw text is kept as the conversion baseline and the
        block form is scheduled for saving.
        """
        if self.identity == identity:
            await self.persistence.flush()
        text = await self.storage.read(identity)
        if text is None:
            raise DocumentNotFound(identity)

        if self.identity is not None and self.identity != identity:
            await self.close()

        async with self._lock:
            self.persistence.bind(identity)
            self.guard.prepare(identity)
            parsed = parse(text)
            self.store.load(parsed)
            self.history.reset()
            self.stray_lines = parsed.stray_lines
            self.identity = identity
            if parsed.invalid_sections:
                logger.info(
                    "session: %s has %s heading(s) without a field, skipped",
                    identity,
                    len(parsed.invalid_sections),
                )
            if convert:
                self.guard.capture_baseline(text)
                self.persistence.schedule_save()
            self._publish("open", identity)

        await self.render()
        return self.store.materialize_rows()

    async def close(self) -> bool:
        """
        Leave the current document. An untouched conversion is reverted;
        otherwise pending edits are flushed. Returns True if the baseline was restored.
        """
        if self.identity is None:
            return False
        async with self._lock:
            restored = await self.guard.restore_baseline_if_eligible(self.identity)
            if not restored:
                await self.persistence.flush()
            self.persistence.bind(None)
            self.guard.prepare(None)
            self.history.reset()
            self.identity = None
        return restored

    async def save(self) -> None:
        self._require_open()
        self.persistence.cancel_scheduled_save()
        await self.persistence.save()

    # -- subscribers and renderers --

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register for RowsChanged. Returns an unsubscribe callable."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def add_renderer(self, renderer: Renderer) -> None:
        self._renderers.append(renderer)

    def _publish(self, reason: str, identity: str | None = None) -> None:
        self.revision += 1
        event = RowsChanged(revision=self.revision, reason=reason, identity=identity)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("session: subscriber failed on revision %s", self.revision)

    async def render(self) -> None:
        """Request a coalesced render. Renderer failures are logged, not raised."""
        try:
            await self.scheduler.run()
        except Exception:
            logger.exception("session: render failed")

    async def _render_pass(self) -> None:
        self.render_count += 1
        for renderer in list(self._renderers):
            await renderer(self)

    # -- reads --

    def rows(self) -> list[Row]:
        self._require_open()
        return self.store.materialize_rows()

    def derive_table(self, table: TableDefinition | None = None) -> list[Row]:
        return build_table(self.rows(), table or TableDefinition())

    def derive_board(self, board: BoardDefinition, quick_filter: str | None = None) -> LaneSet:
        return build_board(
            self.rows(),
            board,
            resolve_index=self.store.get_block_index_from_row,
            primary_field=self.store.primary_field,
            quick_filter=quick_filter,
        )

    def derive_gallery(self, gallery: GalleryDefinition | None = None, page: int = 0) -> Page:
        return build_gallery(
            self.rows(),
            gallery or GalleryDefinition(),
            page,
            primary_field=self.store.primary_field,
        )

    # -- writes --

    async def apply_edit(self, type: str, payload: dict[str, Any]) -> EditResult:
        """
        Validate → apply as one transaction → publish → save → render.
        Rejected edits change nothing and publish nothing.
        """
        identity = self._require_open()
        errors = validate_edit(type, payload)
        if errors:
            return EditResult(applied=False, rejected=errors)

        async with self._lock:
            handler = _HANDLERS[type]
            result = handler(self, payload)
            if result.applied:
                await self._commit(type, identity)

        if result.applied:
            await self.render()
        return result

    async def undo(self) -> EditResult:
        return await self._replay("undo")

    async def redo(self) -> EditResult:
        return await self._replay("redo")

    async def _replay(self, direction: str) -> EditResult:
        identity = self._require_open()
        async with self._lock:
            entry = self.history.undo() if direction == "undo" else self.history.redo()
            if entry is None:
                return EditResult(applied=False, rejected=[f"Nothing to {direction}"])
            await self._commit(direction, identity)
            result = EditResult(applied=True, value=entry.label, focus=self.history.last_focus)
        await self.render()
        return result

    async def _commit(self, reason: str, identity: str) -> None:
        await self.guard.mark_user_mutation(reason)
        self._publish(reason, identity)
        self.persistence.schedule_save()

    # -- edit handlers (synchronous: a transaction never spans an await) --

    def _resolve_row(self, payload: dict[str, Any]) -> int | None:
        if "row_id" in payload:
            return self.store.find_block_index(payload["row_id"])
        index = payload.get("row")
        return index if isinstance(index, int) and 0 <= index < len(self.store.blocks) else None

    def _resolve_rows(self, payload: dict[str, Any]) -> tuple[list[int], list[Warning]]:
        warnings: list[Warning] = []
        if "row_ids" in payload:
            indexes = []
            for row_id in payload["row_ids"]:
                index = self.store.find_block_index(row_id)
                if index is None:
                    warnings.append(Warning("row_not_found", f"Row {row_id} no longer exists"))
                else:
                    indexes.append(index)
            return indexes, warnings
        indexes = [i for i in payload["rows"] if 0 <= i < len(self.store.blocks)]
        if len(indexes) != len(payload["rows"]):
            warnings.append(Warning("row_not_found", "Some row indexes are out of range"))
        return indexes, warnings

    def _set_cell(self, payload: dict[str, Any]) -> EditResult:
        return self._set_cells({"cells": [payload]}, label="Edit cell")

    def _set_cells(self, payload: dict[str, Any], label: str = "Edit cells") -> EditResult:
        writes: list[tuple[int, str, Any]] = []
        for cell in payload["cells"]:
            index = self._resolve_row(cell)
            if index is None:
                return EditResult(applied=False, rejected=["Row not found"])
            if not self.store.can_write_field(cell["field"]):
                return EditResult(applied=False, rejected=[f"Cannot write field: {cell['field']}"])
            if not self.store.accepts_value(cell["field"], cell["value"]):
                return EditResult(applied=False, rejected=[f"{cell['field']} must be a single line"])
            writes.append((index, cell["field"], cell["value"]))

        def mutate() -> None:
            for index, name, value in writes:
                self.store.update_cell(index, name, value)

        changed = self.history.capture_cell_changes(
            [(index, [name]) for index, name, _ in writes], mutate, label=label
        )
        first_index, first_field, _ = writes[0]
        focus = FocusTarget(row_index=first_index, field=first_field)
        if not changed:
            return EditResult(
                applied=False,
                warnings=[Warning("no_change", "Values already match")],
                focus=focus,
            )
        return EditResult(applied=True, focus=focus)

    def _add_row(self, payload: dict[str, Any]) -> EditResult:
        index = self.store.add_row(payload.get("before"), payload.get("values"))
        if index is None:
            return EditResult(applied=False, rejected=["Document has no columns"])
        self.history.record_row_insertions([(index, self.store.blocks[index])], label="Add row")
        return EditResult(
            applied=True,
            value=self.store.get_row_identity(index),
            focus=FocusTarget(row_index=index, field=self.store.primary_field),
        )

    def _delete_rows(self, payload: dict[str, Any]) -> EditResult:
        indexes, warnings = self._resolve_rows(payload)
        removed = self.store.delete_rows(indexes)
        if not removed:
            return EditResult(applied=False, rejected=["No rows to delete"], warnings=warnings)
        self.history.record_row_deletions(removed)
        return EditResult(applied=True, warnings=warnings, value=len(removed))

    def _duplicate_rows(self, payload: dict[str, Any]) -> EditResult:
        indexes, warnings = self._resolve_rows(payload)
        inserted = self.store.duplicate_rows(indexes)
        if not inserted:
            return EditResult(applied=False, rejected=["No rows to duplicate"], warnings=warnings)
        self.history.record_row_insertions(inserted, label="Duplicate rows")
        return EditResult(
            applied=True,
            warnings=warnings,
            value=[str(block.uid) for _, block in inserted],
        )

    def _move_row(self, payload: dict[str, Any]) -> EditResult:
        from_index, to_index = payload["from"], payload["to"]
        if from_index >= len(self.store.blocks):
            return EditResult(applied=False, rejected=["Row not found"])
        block = self.store.blocks[from_index]
        if not self.store.move_row(from_index, to_index):
            return EditResult(applied=False, rejected=["Row cannot move there"])
        self.history.record_row_move(block, from_index, to_index)
        return EditResult(applied=True, focus=FocusTarget(row_index=to_index))

    def _reorder_rows(self, payload: dict[str, Any]) -> EditResult:
        warnings: list[Warning] = []
        ordered = []
        for row_id in payload["order"]:
            index = self.store.find_block_index(row_id)
            if index is None:
                warnings.append(Warning("row_not_found", f"Row {row_id} no longer exists"))
                continue
            ordered.append(self.store.blocks[index])
        before = list(self.store.blocks)
        after = ordered + [b for b in before if all(b is not o for o in ordered)]
        if not self.history.apply_row_order_change(before, after):
            return EditResult(applied=False, warnings=warnings + [Warning("no_change", "Order unchanged")])
        return EditResult(applied=True, warnings=warnings)

    def _column_edit(self, label: str, mutate: Callable[[], Any], failure: str) -> EditResult:
        result = self.history.capture_structure_change(mutate, label=label)
        if not result:
            return EditResult(applied=False, rejected=[failure])
        return EditResult(applied=True, value=result)

    def _insert_column(self, payload: dict[str, Any]) -> EditResult:
        after, name = payload["after"], payload.get("name") or DEFAULT_NEW_COLUMN_NAME
        return self._column_edit(
            "Insert column",
            lambda: self.store.insert_column_after(after, name),
            f"Cannot insert a column after {after}",
        )

    def _rename_column(self, payload: dict[str, Any]) -> EditResult:
        old, new = payload["old"], payload["new"]
        if old == new.strip():
            return EditResult(applied=False, warnings=[Warning("no_change", "Name unchanged")])
        return self._column_edit(
            "Rename column",
            lambda: self.store.rename_column(old, new),
            f"Cannot rename {old} to {new}",
        )

    def _remove_column(self, payload: dict[str, Any]) -> EditResult:
        name = payload["name"]
        return self._column_edit(
            "Remove column",
            lambda: self.store.remove_column(name),
            f"Cannot remove column {name}",
        )

    def _reorder_columns(self, payload: dict[str, Any]) -> EditResult:
        order = payload["order"]
        return self._column_edit(
            "Reorder columns",
            lambda: self.store.reorder_columns(order),
            "Column order unchanged or invalid",
        )

    def _duplicate_column(self, payload: dict[str, Any]) -> EditResult:
        name = payload["name"]
        return self._column_edit(
            "Duplicate column",
            lambda: self.store.duplicate_column(name),
            f"Cannot duplicate column {name}",
        )

    def _configure_column(self, payload: dict[str, Any]) -> EditResult:
        name = payload["name"]
        changes = {k: v for k, v in payload.items() if k != "name"}
        result = self._column_edit(
            "Configure column",
            lambda: self.store.update_column_config(name, **changes),
            f"Unknown column {name}",
        )
        if not result.applied and name in self.store.column_names:
            return EditResult(applied=False, warnings=[Warning("no_change", "Column settings unchanged")])
        return result

    def _assign_lane(self, payload: dict[str, Any]) -> EditResult:
        index = self._resolve_row(payload)
        lane_field, lane = payload["lane_field"], payload["lane"]
        if index is None:
            return EditResult(applied=False, rejected=["Row not found"])
        if not self.store.can_write_field(lane_field):
            return EditResult(applied=False, rejected=[f"Cannot write field: {lane_field}"])

        stamp = STATUS_CHANGED_FIELD in self.store.hidden_fields
        fields = [lane_field, STATUS_CHANGED_FIELD] if stamp else [lane_field]

        def mutate() -> None:
            if self.store.get_value(index, lane_field) == lane:
                return
            self.store.update_cell(index, lane_field, lane)
            if stamp:
                self.store.update_cell(index, STATUS_CHANGED_FIELD, now_iso())

        changed = self.history.capture_cell_changes([(index, fields)], mutate, label="Move card")
        focus = FocusTarget(row_index=index, field=lane_field)
        if not changed:
            return EditResult(applied=False, warnings=[Warning("no_change", "Card already in lane")], focus=focus)
        return EditResult(applied=True, focus=focus)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

_HANDLERS: dict[str, Callable[[DocumentSession, dict[str, Any]], EditResult]] = {
    "cell.set": DocumentSession._set_cell,
    "cells.set": DocumentSession._set_cells,
    "row.add": DocumentSession._add_row,
    "row.delete": DocumentSession._delete_rows,
    "row.duplicate": DocumentSession._duplicate_rows,
    "row.move": DocumentSession._move_row,
    "rows.reorder": DocumentSession._reorder_rows,
    "column.insert": DocumentSession._insert_column,
    "column.rename": DocumentSession._rename_column,
    "column.remove": DocumentSession._remove_column,
    "column.reorder": DocumentSession._reorder_columns,
    "column.duplicate": DocumentSession._duplicate_column,
    "column.config": DocumentSession._configure_column,
    "lane.assign": DocumentSession._assign_lane,
}
