"""
Tilesheet Row Store -- Materialization Tests

materialize_rows() never raises. Formula results stay tagged on the row and
only turn into the error sentinel at Row.text().
"""

import logging

from tilesheet.kernel.markdown import parse
from tilesheet.kernel.store import RowStore
from tilesheet.kernel.types import POSITION_FIELD, ROW_ID_FIELD, FormulaError


def make_store(text: str, **options) -> RowStore:
    store = RowStore(**options)
    store.load(parse(text))
    return store


def make_numbers_doc(count: int, formula: str = "{A} * 2") -> str:
    blocks = "\n".join(f"## Name: item {i}\nA: {i}\n" for i in range(count))
    return f"{blocks}\n```tlb\nDouble (formula: {formula})\n```\n"


# ============================================================================
# Rows
# ============================================================================


class TestMaterialize:
    def test_one_row_per_block(self, store):
        rows = store.materialize_rows()

        assert [r["Task"] for r in rows] == ["Write docs", "Ship release", "Fix bug"]

    def test_identity_and_position_fields(self, store):
        rows = store.materialize_rows()

        assert rows[0][ROW_ID_FIELD] == str(store.blocks[0].uid)
        assert rows[2][POSITION_FIELD] == "3"

    def test_missing_fields_read_as_empty(self, store):
        rows = store.materialize_rows()

        assert rows[1]["Price"] == ""

    def test_no_schema_no_rows(self):
        assert RowStore().materialize_rows() == []

    def test_row_cap_limits_rows(self, tasks_doc):
        store = make_store(tasks_doc, row_cap=2)

        assert len(store.materialize_rows()) == 2
        assert len(store.blocks) == 3

    def test_to_display_flattens(self, store):
        display = store.materialize_rows()[0].to_display()

        assert display["Total"] == "10"
        assert display["#"] == "1"


# ============================================================================
# Formulas
# ============================================================================


class TestFormulas:
    def test_formula_column_is_evaluated(self, store):
        rows = store.materialize_rows()

        assert rows[0]["Total"] == "10"
        assert rows[1]["Total"] == "0"

    def test_division_by_zero_shows_sentinel_but_stays_distinguishable(self):
        store = make_store("## Name: x\nA: 1\nB: 0\n\n```tlb\nRatio (formula: {A} / {B})\n```\n")
        row = store.materialize_rows()[0]

        assert row["Ratio"] == "#ERR"
        assert row.is_error("Ratio")
        assert row.error_for("Ratio").kind == "evaluate"

    def test_literal_sentinel_text_is_not_an_error(self):
        store = make_store("## Name: #ERR\n")
        row = store.materialize_rows()[0]

        assert row["Name"] == "#ERR"
        assert not row.is_error("Name")

    def test_custom_error_value(self):
        store = make_store(
            "## Name: x\nA: 1\n\n```tlb\nBad (formula: {A} / 0)\n```\n",
            error_value="N/A",
        )

        assert store.materialize_rows()[0]["Bad"] == "N/A"

    def test_compile_error_is_a_cell_error(self):
        store = make_store("## Name: x\n\n```tlb\nBad (formula: {A} $ 1)\n```\n")
        row = store.materialize_rows()[0]

        assert row.error_for("Bad").kind == "compile"
        assert row["Bad"] == "#ERR"

    def test_formula_can_use_earlier_formula(self):
        store = make_store(
            "## Name: x\nA: 2\n\n```tlb\nB (formula: {A} * 2)\nC (formula: {B} + 1)\n```\n"
        )

        assert store.materialize_rows()[0]["C"] == "5"

    def test_formulas_disabled_above_row_limit(self):
        store = make_store(make_numbers_doc(3), formula_row_limit=2)
        rows = store.materialize_rows()

        assert all(r.error_for("Double").kind == "disabled" for r in rows)
        assert not rows[0].is_error("Double")
        assert rows[0]["Double"] == ""

    def test_row_limit_notice_logged_once(self, caplog):
        store = make_store(make_numbers_doc(3), formula_row_limit=2)

        with caplog.at_level(logging.WARNING, logger="tilesheet.kernel.store"):
            store.materialize_rows()
            store.materialize_rows()

        notices = [r for r in caplog.records if "formula limit" in r.getMessage()]
        assert len(notices) == 1

    def test_formulas_enabled_at_limit(self):
        store = make_store(make_numbers_doc(2), formula_row_limit=2)
        rows = store.materialize_rows()

        assert rows[1]["Double"] == "2"
        assert not isinstance(rows[1].formulas["Double"], FormulaError)
