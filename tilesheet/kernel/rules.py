"""
Tilesheet Kernel — View Rules

Declarative, serializable definitions for the derived presentations:
filters, sorts, board lanes and gallery pages. Hosts persist these as JSON
(`model_dump()` / `model_validate()`); the derivation functions only read them.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_FALLBACK_LANE = "Uncategorized"


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"


# Operators that take no comparison value
VALUELESS_OPERATORS = {FilterOperator.IS_EMPTY, FilterOperator.IS_NOT_EMPTY}

# Operators that may match a blank cell when allow_blank is set
NEGATED_OPERATORS = {FilterOperator.NOT_EQUALS, FilterOperator.NOT_CONTAINS}


class FilterCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1)
    operator: FilterOperator
    value: str | None = None
    allow_blank: bool = False


class FilterRule(BaseModel):
    """Conditions combined with AND (default) or OR. No conditions passes every row."""

    model_config = ConfigDict(extra="forbid")

    conditions: list[FilterCondition] = Field(default_factory=list)
    combine_mode: Literal["AND", "OR"] = "AND"


class SortRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1)
    direction: Literal["asc", "desc"] = "asc"


class LaneSource(BaseModel):
    """One lane: a display name plus the rule selecting its rows."""

    model_config = ConfigDict(extra="forbid")

    name: str
    filter_rule: FilterRule | None = None


class TableDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filter_rules: list[FilterRule] = Field(default_factory=list)
    sort_rules: list[SortRule] = Field(default_factory=list)
    quick_filter: str | None = None
    quick_filter_fields: list[str] = Field(default_factory=list)
    order_field: str | None = None


class BoardDefinition(BaseModel):
    """
    A kanban-style board: one lane per distinct value of `lane_field`.

    Declared `lanes` come first (and stay even when empty); values seen in the
    data follow in first-seen order. Blank values land in `fallback_lane`.
    Card text comes from mustache templates rendered against the row.
    """

    model_config = ConfigDict(extra="forbid")

    lane_field: str = Field(..., min_length=1)
    lanes: list[str] = Field(default_factory=list)
    fallback_lane: str = DEFAULT_FALLBACK_LANE
    filter_rule: FilterRule | None = None
    quick_filter: str | None = None
    quick_filter_fields: list[str] = Field(default_factory=list)
    sort_field: str | None = None
    sort_direction: Literal["asc", "desc"] = "asc"
    order_field: str | None = None
    card_title_template: str | None = None
    card_body_template: str | None = None


class GalleryDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filter_rule: FilterRule | None = None
    sort_rules: list[SortRule] = Field(default_factory=list)
    order_field: str | None = None
    page_size: int = Field(24, ge=1)
    card_title_template: str | None = None
    card_body_template: str | None = None
