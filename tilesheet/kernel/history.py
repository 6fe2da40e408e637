"""
Tilesheet Kernel — History Manager

Bounded undo/redo over the row store. Every user edit is one transaction:

    capture_cell_changes(targets, mutate)
        snapshot old values ─► mutate() ─► diff ─► push (or nothing)

If `mutate` raises, the declared targets are restored and the exception
propagates; nothing is pushed. Row insertions, deletions, moves and whole
order changes are recorded through the same stacks.

Replay resolves a row by block reference first and by index second; rows that
resolve to neither are skipped. Recording is suppressed while replaying.
The manager never renders or publishes; the session does that afterwards.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Union

from tilesheet.kernel.store import RowStore, StructureSnapshot
from tilesheet.kernel.types import (
    Block,
    CellChange,
    FocusTarget,
    HistoryEntry,
    HistoryFocus,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100

FocusSpec = Union[HistoryFocus, Callable[[list[CellChange]], HistoryFocus], None]


class HistoryManager:
    def __init__(self, store: RowStore, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.store = store
        self.limit = max(1, limit)
        self.undo_stack: list[HistoryEntry] = []
        self.redo_stack: list[HistoryEntry] = []
        self.last_focus: FocusTarget | None = None
        self._replaying = False

    # -----------------------------------------------------------------------
    # Stack state
    # -----------------------------------------------------------------------

    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    def can_redo(self) -> bool:
        return bool(self.redo_stack)

    def reset(self) -> None:
        self.undo_stack.clear()
        self.redo_stack.clear()
        self.last_focus = None

    def _push(self, entry: HistoryEntry) -> None:
        if self._replaying:
            return
        self.undo_stack.append(entry)
        if len(self.undo_stack) > self.limit:
            self.undo_stack.pop(0)
        self.redo_stack.clear()

    # -----------------------------------------------------------------------
    # Cell transactions
    # -----------------------------------------------------------------------

    def capture_cell_changes(
        self,
        targets: Iterable[tuple[int, Iterable[str]]],
        mutate: Callable[[], object],
        focus: FocusSpec = None,
        label: str = "Edit cells",
    ) -> bool:
        """
        Run `mutate` as one undoable transaction over `targets` (row index, fields).
        Returns True when something changed and a transaction was pushed.
        """
        normalized = self._normalize_targets(targets)
        if not normalized:
            mutate()
            return False

        snapshots: list[tuple[Block, int, str, str | None]] = []
        for index, fields in normalized:
            block = self.store.blocks[index]
            for name in fields:
                snapshots.append((block, index, name, block.data.get(name)))

        try:
            mutate()
        except Exception:
            for block, index, name, old in snapshots:
                self._write(block, index, name, old)
            logger.debug("history: mutation failed, %s cells rolled back", len(snapshots))
            raise

        changes: list[CellChange] = []
        for block, index, name, old in snapshots:
            if self.store.index_of_block(block) is None:
                continue
            new = block.data.get(name)
            if new != old:
                changes.append(
                    CellChange(
                        block=block,
                        index=index,
                        field=name,
                        old_value=old if old is not None else "",
                        new_value=new if new is not None else "",
                    )
                )
        if not changes:
            return False

        hints = self._resolve_focus(focus, changes)

        def undo() -> FocusTarget | None:
            for change in changes:
                self._write(change.block, change.index, change.field, change.old_value)
            return self._refocus(hints.undo, changes)

        def redo() -> FocusTarget | None:
            for change in changes:
                self._write(change.block, change.index, change.field, change.new_value)
            return self._refocus(hints.redo, changes)

        self._push(
            HistoryEntry(
                label=label,
                undo=undo,
                redo=redo,
                targets=[(str(c.block.uid), c.field) for c in changes if c.block is not None],
            )
        )
        return True

    def _normalize_targets(
        self, targets: Iterable[tuple[int, Iterable[str]]]
    ) -> list[tuple[int, list[str]]]:
        merged: dict[int, list[str]] = {}
        for index, fields in targets:
            if not isinstance(index, int) or not 0 <= index < len(self.store.blocks):
                continue
            names = [f for f in fields if isinstance(f, str) and f]
            if not names:
                continue
            bucket = merged.setdefault(index, [])
            bucket.extend(n for n in names if n not in bucket)
        return list(merged.items())

    def _resolve_index(self, block: Block | None, index: int) -> int | None:
        if block is not None:
            found = self.store.index_of_block(block)
            if found is not None:
                return found
            return None
        return index if 0 <= index < len(self.store.blocks) else None

    def _write(self, block: Block | None, index: int, name: str, value: str | None) -> None:
        resolved = self._resolve_index(block, index)
        if resolved is None:
            logger.debug("history: row for %r no longer exists, skipped", name)
            return
        self.store.set_raw_value(resolved, name, value)

    def _resolve_focus(self, focus: FocusSpec, changes: list[CellChange]) -> HistoryFocus:
        if callable(focus):
            return focus(changes)
        if focus is not None:
            return focus
        first = changes[0]
        target = FocusTarget(row_index=first.index, field=first.field)
        return HistoryFocus(undo=target, redo=target)

    def _refocus(self, hint: FocusTarget | None, changes: list[CellChange]) -> FocusTarget | None:
        if hint is None:
            return None
        for change in changes:
            if change.index == hint.row_index and change.block is not None:
                current = self.store.index_of_block(change.block)
                return FocusTarget(row_index=current, field=hint.field)
        return hint

    # -----------------------------------------------------------------------
    # Row transactions
    # -----------------------------------------------------------------------

    def record_row_insertions(self, inserted: list[tuple[int, Block]], label: str = "Insert rows") -> None:
        """Record blocks the store already inserted, as (index, block) pairs."""
        if not inserted:
            return
        entries = sorted(inserted, key=lambda e: e[0])
        first_index = entries[0][0]

        def undo() -> FocusTarget | None:
            self.store.remove_blocks([block for _, block in entries])
            return FocusTarget(row_index=max(0, min(first_index, len(self.store.blocks) - 1)))

        def redo() -> FocusTarget | None:
            self.store.insert_blocks(entries)
            return FocusTarget(row_index=first_index)

        self._push(HistoryEntry(label=label, undo=undo, redo=redo, targets=self._row_targets(entries)))

    def record_row_deletions(self, deleted: list[tuple[int, Block]], label: str = "Delete rows") -> None:
        """Record blocks the store already removed, as (original index, block) pairs."""
        if not deleted:
            return
        entries = sorted(deleted, key=lambda e: e[0])
        first_index = entries[0][0]

        def undo() -> FocusTarget | None:
            self.store.insert_blocks(entries)
            return FocusTarget(row_index=first_index)

        def redo() -> FocusTarget | None:
            self.store.remove_blocks([block for _, block in entries])
            return FocusTarget(row_index=max(0, min(first_index, len(self.store.blocks) - 1)))

        self._push(HistoryEntry(label=label, undo=undo, redo=redo, targets=self._row_targets(entries)))

    def record_row_move(self, block: Block, from_index: int, to_index: int, label: str = "Move row") -> None:
        if from_index == to_index:
            return

        def move_to(target: int) -> FocusTarget | None:
            current = self.store.index_of_block(block)
            if current is None:
                return None
            self.store.move_row(current, max(0, min(target, len(self.store.blocks) - 1)))
            return FocusTarget(row_index=self.store.index_of_block(block))

        self._push(
            HistoryEntry(
                label=label,
                undo=lambda: move_to(from_index),
                redo=lambda: move_to(to_index),
                targets=[(str(block.uid), "")],
            )
        )

    def apply_row_order_change(
        self,
        before: list[Block],
        after: list[Block],
        label: str = "Reorder rows",
    ) -> bool:
        """Apply `after` as the new block order and record it. False when nothing moved."""
        if len(before) == len(after) and all(a is b for a, b in zip(before, after)):
            return False
        if not self.store.set_block_order(after):
            return False
        before, after = list(before), list(after)

        self._push(
            HistoryEntry(
                label=label,
                undo=lambda: self._set_order(before),
                redo=lambda: self._set_order(after),
                targets=[(str(b.uid), "") for b in after],
            )
        )
        return True

    def capture_structure_change(
        self,
        mutate: Callable[[], object],
        label: str = "Change columns",
    ) -> object:
        """
        Run a column operation as one transaction. The whole schema and block
        field maps are snapshotted around it; a falsy result pushes nothing.
        """
        before = self.store.snapshot_structure()
        try:
            result = mutate()
        except Exception:
            self.store.restore_structure(before)
            raise
        if not result:
            return result
        after = self.store.snapshot_structure()

        def apply(snapshot: StructureSnapshot) -> FocusTarget | None:
            self.store.restore_structure(snapshot)
            return None

        self._push(
            HistoryEntry(
                label=label,
                undo=lambda: apply(before),
                redo=lambda: apply(after),
            )
        )
        return result

    def _set_order(self, order: list[Block]) -> FocusTarget | None:
        self.store.set_block_order(order)
        return None

    @staticmethod
    def _row_targets(entries: list[tuple[int, Block]]) -> list[tuple[str, str]]:
        return [(str(block.uid), "") for _, block in entries]

    # -----------------------------------------------------------------------
    # Replay
    # -----------------------------------------------------------------------

    def undo(self) -> HistoryEntry | None:
        if not self.undo_stack:
            return None
        entry = self.undo_stack.pop()
        self.last_focus = self._replay(entry, entry.undo)
        self.redo_stack.append(entry)
        logger.debug("history: undo applied %r", entry.label)
        return entry

    def redo(self) -> HistoryEntry | None:
        if not self.redo_stack:
            return None
        entry = self.redo_stack.pop()
        self.last_focus = self._replay(entry, entry.redo)
        self.undo_stack.append(entry)
        logger.debug("history: redo applied %r", entry.label)
        return entry

    def _replay(self, entry: HistoryEntry, action: Callable[[], FocusTarget | None]) -> FocusTarget | None:
        self._replaying = True
        try:
            return action()
        except Exception:
            logger.exception("history: replay of %r failed", entry.label)
            raise
        finally:
            self._replaying = False
