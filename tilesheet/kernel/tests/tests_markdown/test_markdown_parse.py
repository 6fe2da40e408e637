"""
Tilesheet Markdown -- Parse Tests

Blocks start at H2 headings whose text is `primary: value`. Field lines use
ASCII or full-width colons. Code fences and the leading H1 are not rows; the
```tlb fence carries column config.
"""

from tilesheet.kernel.markdown import (
    build_schema,
    extract_field,
    parse,
    parse_column_definition,
)

# ============================================================================
# Blocks and fields
# ============================================================================


class TestParseBlocks:
    def test_headings_start_blocks(self, tasks_doc):
        result = parse(tasks_doc)

        assert len(result.blocks) == 3
        assert result.blocks[0].data["Task"] == "Write docs"
        assert result.blocks[0].data["Status"] == "todo"
        assert result.blocks[1].data == {"Task": "Ship release", "Status": "done", "Estimate": "10"}

    def test_leading_h1_is_kept_not_a_row(self, tasks_doc):
        result = parse(tasks_doc)

        assert result.leading_heading == "# Tasks"
        assert all("Tasks" not in b.title for b in result.blocks)

    def test_empty_value_is_recorded(self, tasks_doc):
        result = parse(tasks_doc)

        assert result.blocks[2].data["Status"] == ""

    def test_full_width_colon(self):
        result = parse("## 名称：苹果\n数量：3\n")

        assert result.blocks[0].data == {"名称": "苹果", "数量": "3"}

    def test_heading_without_field_is_invalid(self):
        result = parse("## Just a heading\nStatus: x\n\n## Task: Real\n")

        assert result.invalid_sections == ["## Just a heading"]
        assert len(result.blocks) == 1
        assert result.blocks[0].data == {"Task": "Real"}

    def test_code_fence_content_is_not_parsed(self):
        text = "## Task: A\n```\nStatus: hidden\n```\nStatus: shown\n"
        result = parse(text)

        assert result.blocks[0].data["Status"] == "shown"

    def test_list_lines_are_not_fields(self):
        result = parse("## Task: A\n- note: not a field\nStatus: ok\n")

        assert "- note" not in result.blocks[0].data
        assert result.blocks[0].data["Status"] == "ok"

    def test_text_before_first_block_is_stray(self):
        result = parse("some intro\n\n## Task: A\n")

        assert result.stray_lines == ["some intro"]

    def test_empty_document(self):
        result = parse("")

        assert result.blocks == []
        assert result.column_configs is None


class TestExtractField:
    def test_key_value(self):
        assert extract_field("Status: done") == ("Status", "done")

    def test_value_with_colon(self):
        assert extract_field("Time: 10:30") == ("Time", "10:30")

    def test_no_colon(self):
        assert extract_field("plain text") is None

    def test_quote_line(self):
        assert extract_field("> Status: x") is None


# ============================================================================
# Multiline and collapsed values
# ============================================================================


class TestSpecialValues:
    def test_tilde_fenced_multiline_value(self):
        text = "## Task: A\nNotes:\n~~~\nline one\n  line two\n~~~\nStatus: ok\n"
        block = parse(text).blocks[0]

        assert block.data["Notes"] == "line one\n  line two"
        assert block.data["Status"] == "ok"

    def test_collapsed_line(self):
        text = "## Task: A\ncollapsed: Owner::Ann%20Lee Due::2024-01-02\n"
        block = parse(text).blocks[0]

        assert block.data["Owner"] == "Ann Lee"
        assert block.data["Due"] == "2024-01-02"
        assert block.collapsed == ["Owner", "Due"]


# ============================================================================
# Column config
# ============================================================================


class TestColumnConfig:
    def test_config_block(self, tasks_doc):
        configs = parse(tasks_doc).column_configs

        assert configs is not None
        assert configs[0].name == "Total"
        assert configs[0].formula == "{Price} * {Qty}"
        assert configs[0].width == "120"

    def test_definition_with_flags(self):
        config = parse_column_definition("Due (type: date) (hide) (unit: days)")

        assert config.name == "Due"
        assert config.type == "date"
        assert config.hide is True
        assert config.unit == "days"

    def test_nested_parentheses_in_formula(self):
        config = parse_column_definition("Avg (formula: ({A} + {B}) / 2)")

        assert config.name == "Avg"
        assert config.formula == "({A} + {B}) / 2"

    def test_unknown_segment_stays_in_name(self):
        config = parse_column_definition("Cost (EUR)")

        assert config.name == "Cost (EUR)"
        assert not config.has_content()


class TestBuildSchema:
    def test_column_order(self, tasks_doc):
        result = parse(tasks_doc)
        schema, _ = build_schema(result.blocks, result.column_configs)

        assert schema.column_names == ["Task", "Status", "Estimate", "Price", "Qty", "Total"]

    def test_new_columns_backfilled_into_first_block(self):
        result = parse("## Task: A\n\n## Task: B\nOwner: Ann\n")
        schema, _ = build_schema(result.blocks, None)

        assert schema.column_names == ["Task", "Owner"]
        assert result.blocks[0].data["Owner"] == ""

    def test_hidden_fields_are_not_columns(self):
        result = parse("## Task: A\nstatusChanged: 2024-01-01T00:00:00Z\n")
        schema, hidden = build_schema(result.blocks, None)

        assert "statusChanged" not in schema.column_names
        assert "statusChanged" in hidden

    def test_no_blocks_no_schema(self):
        schema, _ = build_schema([], None)

        assert schema is None
