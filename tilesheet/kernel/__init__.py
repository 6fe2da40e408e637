"""
Tilesheet Kernel — the document sync engine.

Core components:
  store      — blocks + schema, identity lookups, formula evaluation
  derive     — filter / sort / lanes / pages (pure)
  history    — bounded undo/redo transactions over the store
  scheduler  — coalesced async re-renders
  conversion — silent revert of untouched conversions
  session    — coordinates the above + storage + persistence

Collaborators:
  markdown (parse / serialize), storage, persistence, edits (validation)
"""

from tilesheet.kernel.conversion import ConversionSessionGuard
from tilesheet.kernel.derive import (
    apply_filter,
    apply_quick_filter,
    build_board,
    build_lanes,
    compare_lane_rows,
    matches_rule,
    paginate,
    sort_rows,
)
from tilesheet.kernel.edits import validate_edit
from tilesheet.kernel.history import HistoryManager
from tilesheet.kernel.markdown import parse, serialize
from tilesheet.kernel.scheduler import RenderScheduler
from tilesheet.kernel.session import (
    DocumentNotFound,
    DocumentSession,
    SessionNotOpen,
    SessionOptions,
)
from tilesheet.kernel.store import RowStore

__all__ = [
    "parse",
    "serialize",
    "RowStore",
    "apply_filter",
    "apply_quick_filter",
    "matches_rule",
    "sort_rows",
    "compare_lane_rows",
    "build_lanes",
    "build_board",
    "paginate",
    "HistoryManager",
    "RenderScheduler",
    "ConversionSessionGuard",
    "validate_edit",
    "DocumentSession",
    "SessionOptions",
    "SessionNotOpen",
    "DocumentNotFound",
]
