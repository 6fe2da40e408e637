"""
Tilesheet History -- Cell Transaction Tests

One capture_cell_changes() call is one undo step, however many cells it
touches. A transaction that changes nothing pushes nothing; one that raises
leaves the store as it was.
"""

import pytest

from tilesheet.kernel.history import HistoryManager
from tilesheet.kernel.types import FocusTarget, HistoryFocus


def make_history(store, limit: int = 100) -> HistoryManager:
    return HistoryManager(store, limit=limit)


def statuses(store) -> list[str]:
    return [block.data.get("Status", "") for block in store.blocks]


# ============================================================================
# Capture
# ============================================================================


class TestCapture:
    def test_single_cell(self, store):
        history = make_history(store)

        changed = history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "done"))

        assert changed is True
        assert history.can_undo()
        assert history.undo_stack[0].targets == [(str(store.blocks[0].uid), "Status")]

    def test_no_op_pushes_nothing(self, store):
        history = make_history(store)

        changed = history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "todo"))

        assert changed is False
        assert not history.can_undo()

    def test_invalid_targets_still_run_mutation(self, store):
        history = make_history(store)
        calls = []

        changed = history.capture_cell_changes([(99, ["Status"]), (0, [])], lambda: calls.append(1))

        assert changed is False
        assert calls == [1]
        assert not history.can_undo()

    def test_only_changed_cells_are_recorded(self, store):
        history = make_history(store)

        def mutate():
            store.update_cell(0, "Status", "doing")
            store.update_cell(0, "Estimate", "3")

        history.capture_cell_changes([(0, ["Status", "Estimate"])], mutate)

        assert history.undo_stack[0].targets == [(str(store.blocks[0].uid), "Status")]

    def test_raising_mutation_rolls_back(self, store):
        history = make_history(store)

        def mutate():
            store.update_cell(0, "Status", "done")
            store.update_cell(1, "Status", "todo")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            history.capture_cell_changes([(0, ["Status"]), (1, ["Status"])], mutate)

        assert statuses(store) == ["todo", "done", ""]
        assert not history.can_undo()

    def test_rollback_drops_fields_that_did_not_exist(self, store):
        history = make_history(store)

        def mutate():
            store.update_cell(1, "statusChanged", "2024-01-01T00:00:00Z")
            raise ValueError("boom")

        with pytest.raises(ValueError):
            history.capture_cell_changes([(1, ["statusChanged"])], mutate)

        assert "statusChanged" not in store.blocks[1].data


# ============================================================================
# Undo / redo
# ============================================================================


class TestUndoRedo:
    def test_multi_cell_transaction_is_one_step(self, store):
        history = make_history(store)

        def mutate():
            store.update_cell(0, "Status", "a")
            store.update_cell(0, "Estimate", "b")
            store.update_cell(1, "Status", "c")

        history.capture_cell_changes([(0, ["Status", "Estimate"]), (1, ["Status"])], mutate)

        history.undo()
        assert statuses(store) == ["todo", "done", ""]
        assert store.blocks[0].data["Estimate"] == "3"
        assert not history.can_undo()

        history.redo()
        assert statuses(store) == ["a", "c", ""]
        assert store.blocks[0].data["Estimate"] == "b"

    def test_new_edit_clears_redo(self, store):
        history = make_history(store)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"))
        history.undo()

        history.capture_cell_changes([(1, ["Status"])], lambda: store.update_cell(1, "Status", "y"))

        assert not history.can_redo()

    def test_empty_stacks(self, store):
        history = make_history(store)

        assert history.undo() is None
        assert history.redo() is None

    def test_limit_drops_oldest(self, store):
        history = make_history(store, limit=2)
        for value in ["a", "b", "c"]:
            history.capture_cell_changes([(0, ["Status"])], lambda v=value: store.update_cell(0, "Status", v))

        history.undo()
        history.undo()

        assert history.undo() is None
        assert store.blocks[0].data["Status"] == "a"

    def test_undo_follows_moved_row(self, store):
        history = make_history(store)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"))
        store.move_row(0, 2)

        history.undo()

        assert store.blocks[2].data["Status"] == "todo"
        assert store.blocks[0].data["Status"] == "done"

    def test_undo_skips_deleted_row(self, store):
        history = make_history(store)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"))
        store.delete_rows([0])

        history.undo()

        assert statuses(store) == ["done", ""]

    def test_replay_is_not_recorded(self, store):
        history = make_history(store)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"))

        history.undo()

        assert len(history.undo_stack) == 0
        assert len(history.redo_stack) == 1

    def test_reset(self, store):
        history = make_history(store)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"))

        history.reset()

        assert not history.can_undo()
        assert history.last_focus is None


# ============================================================================
# Focus
# ============================================================================


class TestFocus:
    def test_default_focus_is_first_changed_cell(self, store):
        history = make_history(store)
        history.capture_cell_changes([(1, ["Status"])], lambda: store.update_cell(1, "Status", "x"))

        history.undo()

        assert history.last_focus == FocusTarget(row_index=1, field="Status")

    def test_focus_tracks_row_after_move(self, store):
        history = make_history(store)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"))
        store.move_row(0, 2)

        history.undo()

        assert history.last_focus == FocusTarget(row_index=2, field="Status")

    def test_explicit_focus(self, store):
        history = make_history(store)
        hint = HistoryFocus(undo=FocusTarget(row_index=5, field="Estimate"), redo=None)
        history.capture_cell_changes([(0, ["Status"])], lambda: store.update_cell(0, "Status", "x"), focus=hint)

        history.undo()
        assert history.last_focus == FocusTarget(row_index=5, field="Estimate")

        history.redo()
        assert history.last_focus is None
