"""
Tilesheet Kernel — Derivation Pipeline

Pure functions: rows in, presentation structures out.

    rows ─► resolve identity ─► quick filter ─► lane rules ─► lane sort ─► LaneSet
    rows ─► filter rules ─► quick filter ─► sort rules ─► table / gallery page

Nothing here mutates the store or raises on bad data: blank cells, unparseable
values and unresolvable rows degrade to "no match" or silent exclusion.
Card text is rendered with chevron (mustache) templates.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Callable, Iterable

import chevron

from tilesheet.kernel.rules import (
    NEGATED_OPERATORS,
    BoardDefinition,
    FilterCondition,
    FilterOperator,
    FilterRule,
    GalleryDefinition,
    LaneSource,
    SortRule,
    TableDefinition,
)
from tilesheet.kernel.types import POSITION_FIELD, ROW_ID_FIELD, Row
from tilesheet.kernel.values import (
    try_parse_date,
    try_parse_number,
    try_parse_time,
    try_parse_timestamp,
)

logger = logging.getLogger(__name__)

ResolveIndex = Callable[[Row], "int | None"]


# ---------------------------------------------------------------------------
# Result shapes
# ---------------------------------------------------------------------------


@dataclass
class Card:
    row_id: str
    title: str
    body: str
    row: Row


@dataclass
class Lane:
    id: str
    name: str
    rows: list[Row] = field(default_factory=list)
    cards: list[Card] = field(default_factory=list)


@dataclass
class LaneSet:
    lanes: list[Lane] = field(default_factory=list)
    total_rows: int = 0

    def lane(self, name: str) -> Lane | None:
        for lane in self.lanes:
            if lane.name == name:
                return lane
        return None


@dataclass
class Page:
    items: list[Any] = field(default_factory=list)
    page: int = 0
    page_count: int = 1
    total: int = 0

    @property
    def has_next(self) -> bool:
        return self.page + 1 < self.page_count

    @property
    def has_previous(self) -> bool:
        return self.page > 0


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def _cell(row: Row, name: str) -> str:
    return row.get(name, "")


def _values_equal(cell: str, target: str) -> bool:
    left_number, right_number = try_parse_number(cell), try_parse_number(target)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    left_time, right_time = try_parse_time(cell), try_parse_time(target)
    if left_time is not None and right_time is not None:
        return left_time == right_time
    left_date, right_date = try_parse_date(cell), try_parse_date(target)
    if left_date is not None and right_date is not None:
        return left_date == right_date
    return cell.strip().casefold() == target.strip().casefold()


def _compare_values(cell: str, target: str) -> int:
    for parse in (try_parse_number, try_parse_time, try_parse_date):
        left, right = parse(cell), parse(target)
        if left is not None and right is not None:
            return (left > right) - (left < right)
    a, b = cell.strip().casefold(), target.strip().casefold()
    return (a > b) - (a < b)


def matches_condition(row: Row, condition: FilterCondition) -> bool:
    value = _cell(row, condition.field)
    target = condition.value or ""
    op = condition.operator

    blank = not value.strip()
    if op == FilterOperator.IS_EMPTY:
        return blank
    if op == FilterOperator.IS_NOT_EMPTY:
        return not blank
    if blank:
        return condition.allow_blank and op in NEGATED_OPERATORS

    folded, folded_target = value.casefold(), target.strip().casefold()
    if op == FilterOperator.EQUALS:
        return _values_equal(value, target)
    if op == FilterOperator.NOT_EQUALS:
        return not _values_equal(value, target)
    if op == FilterOperator.CONTAINS:
        return folded_target in folded
    if op == FilterOperator.NOT_CONTAINS:
        return folded_target not in folded
    if op == FilterOperator.STARTS_WITH:
        return folded.strip().startswith(folded_target)
    if op == FilterOperator.ENDS_WITH:
        return folded.strip().endswith(folded_target)
    if not target.strip():
        return False
    comparison = _compare_values(value, target)
    if op == FilterOperator.GREATER_THAN:
        return comparison > 0
    if op == FilterOperator.LESS_THAN:
        return comparison < 0
    if op == FilterOperator.GREATER_OR_EQUAL:
        return comparison >= 0
    if op == FilterOperator.LESS_OR_EQUAL:
        return comparison <= 0
    return False


def matches_rule(row: Row, rule: FilterRule | None) -> bool:
    """An absent rule, or one without conditions, passes every row."""
    if rule is None or not rule.conditions:
        return True
    results = (matches_condition(row, c) for c in rule.conditions)
    if rule.combine_mode == "OR":
        return any(results)
    return all(results)


def apply_filter(rows: Iterable[Row], rule: FilterRule | None) -> list[Row]:
    return [row for row in rows if matches_rule(row, rule)]


def apply_filters(rows: Iterable[Row], rules: Iterable[FilterRule]) -> list[Row]:
    """Multiple rules compose by AND."""
    rules = list(rules)
    return [row for row in rows if all(matches_rule(row, r) for r in rules)]


def apply_quick_filter(rows: Iterable[Row], needle: str | None, fields: Iterable[str] = ()) -> list[Row]:
    """Case-insensitive substring match over `fields` plus the row identity."""
    query = (needle or "").strip().casefold()
    rows = list(rows)
    if not query:
        return rows
    fields = list(fields)
    matched = []
    for row in rows:
        names = [*fields, ROW_ID_FIELD] if fields else [n for n in row.to_display() if n != POSITION_FIELD]
        if any(query in row.get(name, "").casefold() for name in names):
            matched.append(row)
    return matched


# ---------------------------------------------------------------------------
# Table sort
# ---------------------------------------------------------------------------


def _sort_key(value: str) -> tuple[int, Any]:
    text = value.strip()
    if not text:
        return 0, ""
    number = try_parse_number(text)
    if number is not None:
        return 2, number
    moment = try_parse_time(text)
    if moment is None:
        moment = try_parse_date(text)
    if moment is not None:
        return 3, moment
    return 1, text.casefold()


def compare_cells(a: str, b: str) -> int:
    """Rank empty < text < number < date/time, then compare within the rank."""
    left, right = _sort_key(a), _sort_key(b)
    return (left > right) - (left < right)


def sort_rows(
    rows: Iterable[Row],
    sort_rules: Iterable[SortRule],
    order_field: str | None = None,
) -> list[Row]:
    """
    Stable multi-column sort; the first rule is the primary key. Rows that tie
    on every rule fall back to the manual order field, then original position.
    """
    rules = list(sort_rules)
    rows = list(rows)
    if not rules and not order_field:
        return rows

    def compare(a: Row, b: Row) -> int:
        for rule in rules:
            result = compare_cells(_cell(a, rule.field), _cell(b, rule.field))
            if result:
                return -result if rule.direction == "desc" else result
        return _compare_manual_order(a, b, order_field)

    return sorted(rows, key=cmp_to_key(compare))


def _compare_manual_order(a: Row, b: Row, order_field: str | None) -> int:
    """Numeric values of `order_field` ascending; rows without one go last."""
    if not order_field:
        return 0
    order_a = try_parse_number(_cell(a, order_field))
    order_b = try_parse_number(_cell(b, order_field))
    if order_a is not None and order_b is not None and order_a != order_b:
        return -1 if order_a < order_b else 1
    if order_a is not None and order_b is None:
        return -1
    if order_b is not None and order_a is None:
        return 1
    return 0


# ---------------------------------------------------------------------------
# Lane sort
# ---------------------------------------------------------------------------


def compare_lane_rows(
    a: Row,
    b: Row,
    sort_field: str | None,
    direction: str = "asc",
    order_field: str | None = None,
) -> int:
    """
    Board comparator:
    numeric/timestamp keys first (direction applies), always ahead of
    non-numeric keys; then case-folded text (direction applies) ahead of blank;
    then the manual order field; then original position.
    """
    sign = -1 if direction == "desc" else 1

    if sort_field:
        text_a, text_b = _cell(a, sort_field).strip(), _cell(b, sort_field).strip()
        number_a = try_parse_timestamp(text_a) if text_a else None
        number_b = try_parse_timestamp(text_b) if text_b else None

        if number_a is not None and number_b is not None:
            if number_a != number_b:
                return sign * (-1 if number_a < number_b else 1)
        elif number_a is not None:
            return -1
        elif number_b is not None:
            return 1
        elif text_a and text_b:
            folded_a, folded_b = text_a.casefold(), text_b.casefold()
            if folded_a != folded_b:
                return sign * (-1 if folded_a < folded_b else 1)
        elif text_a:
            return -1
        elif text_b:
            return 1

    manual = _compare_manual_order(a, b, order_field)
    if manual:
        return manual
    return (a.position > b.position) - (a.position < b.position)


# ---------------------------------------------------------------------------
# Lanes
# ---------------------------------------------------------------------------


def slugify(name: str) -> str:
    slug = re.sub(r"[^\w]+", "-", name.strip().casefold()).strip("-_")
    return slug or "lane"


def _unique_id(base: str, taken: set[str]) -> str:
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


def build_lanes(
    rows: Iterable[Row],
    sources: Iterable[LaneSource],
    *,
    lane_field: str | None = None,
    fallback_lane: str | None = None,
    resolve_index: ResolveIndex | None = None,
    quick_filter: str | None = None,
    quick_filter_fields: Iterable[str] = (),
    sort_field: str | None = None,
    sort_direction: str = "asc",
    order_field: str | None = None,
) -> LaneSet:
    """
    Group rows into lanes. Each source's filter selects its candidates (ANDed
    with the quick filter); with `lane_field` set a row also has to carry the
    lane's name there, blank values going to `fallback_lane`. Lanes with zero
    rows are kept. Rows whose identity no longer resolves are left out.
    """
    candidates = list(rows)
    if resolve_index is not None:
        candidates = [row for row in candidates if resolve_index(row) is not None]
    candidates = apply_quick_filter(candidates, quick_filter, quick_filter_fields)

    comparator = cmp_to_key(
        lambda a, b: compare_lane_rows(a, b, sort_field, sort_direction, order_field)
    )

    sources = list(sources)
    named = {s.name.strip().casefold() for s in sources}
    taken: set[str] = set()
    lanes: list[Lane] = []

    for source in sources:
        selected = [row for row in candidates if matches_rule(row, source.filter_rule)]
        if lane_field:
            selected = [
                row for row in selected
                if _lane_name_for(row, lane_field, fallback_lane, named) == source.name.strip().casefold()
            ]
        lanes.append(
            Lane(
                id=_unique_id(slugify(source.name), taken),
                name=source.name,
                rows=sorted(selected, key=comparator),
            )
        )

    return LaneSet(lanes=lanes, total_rows=len(candidates))


def _lane_name_for(row: Row, lane_field: str, fallback_lane: str | None, named: set[str]) -> str | None:
    value = _cell(row, lane_field).strip().casefold()
    if not value:
        return fallback_lane.strip().casefold() if fallback_lane else None
    return value if value in named else (fallback_lane.strip().casefold() if fallback_lane else None)


def lane_names_for_board(rows: Iterable[Row], board: BoardDefinition) -> list[str]:
    """Declared lanes first, then values seen in the data, then the fallback if used."""
    names: list[str] = []
    seen: set[str] = set()

    def add(name: str) -> None:
        key = name.strip().casefold()
        if key and key not in seen:
            seen.add(key)
            names.append(name.strip())

    for name in board.lanes:
        add(name)
    needs_fallback = False
    for row in rows:
        value = _cell(row, board.lane_field).strip()
        if value:
            add(value)
        else:
            needs_fallback = True
    if needs_fallback:
        add(board.fallback_lane)
    return names


def build_board(
    rows: Iterable[Row],
    board: BoardDefinition,
    *,
    resolve_index: ResolveIndex | None = None,
    primary_field: str | None = None,
    quick_filter: str | None = None,
) -> LaneSet:
    """One lane per distinct `lane_field` value, each card rendered from the templates."""
    filtered = apply_filter(rows, board.filter_rule)
    sources = [LaneSource(name=name) for name in lane_names_for_board(filtered, board)]
    lane_set = build_lanes(
        filtered,
        sources,
        lane_field=board.lane_field,
        fallback_lane=board.fallback_lane,
        resolve_index=resolve_index,
        quick_filter=quick_filter if quick_filter is not None else board.quick_filter,
        quick_filter_fields=board.quick_filter_fields,
        sort_field=board.sort_field,
        sort_direction=board.sort_direction,
        order_field=board.order_field,
    )
    for lane in lane_set.lanes:
        lane.cards = [
            render_card(row, board.card_title_template, board.card_body_template, primary_field)
            for row in lane.rows
        ]
    return lane_set


# ---------------------------------------------------------------------------
# Cards and pages
# ---------------------------------------------------------------------------


def render_card(
    row: Row,
    title_template: str | None,
    body_template: str | None,
    primary_field: str | None = None,
) -> Card:
    context = row.to_display()
    default_title = row.text(primary_field) if primary_field else next(
        (v for k, v in context.items() if k != ROW_ID_FIELD and k != "#"), ""
    )
    return Card(
        row_id=row.row_id,
        title=_render_template(title_template, context, default_title),
        body=_render_template(body_template, context, ""),
        row=row,
    )


def _render_template(template: str | None, context: dict[str, str], default: str) -> str:
    if not template:
        return default
    try:
        return chevron.render(template, context).strip()
    except Exception as e:
        logger.debug("derive: card template failed, using default: %s", e)
        return default


def paginate(items: Iterable[Any], page: int, page_size: int) -> Page:
    """Out-of-range pages clamp; an empty input is one empty page."""
    items = list(items)
    size = max(1, page_size)
    page_count = max(1, math.ceil(len(items) / size))
    current = max(0, min(page, page_count - 1))
    start = current * size
    return Page(
        items=items[start : start + size],
        page=current,
        page_count=page_count,
        total=len(items),
    )


def build_table(rows: Iterable[Row], table: TableDefinition) -> list[Row]:
    filtered = apply_filters(rows, table.filter_rules)
    filtered = apply_quick_filter(filtered, table.quick_filter, table.quick_filter_fields)
    return sort_rows(filtered, table.sort_rules, table.order_field)


def build_gallery(
    rows: Iterable[Row],
    gallery: GalleryDefinition,
    page: int = 0,
    *,
    primary_field: str | None = None,
) -> Page:
    selected = sort_rows(apply_filter(rows, gallery.filter_rule), gallery.sort_rules, gallery.order_field)
    cards = [
        render_card(row, gallery.card_title_template, gallery.card_body_template, primary_field)
        for row in selected
    ]
    return paginate(cards, page, gallery.page_size)
