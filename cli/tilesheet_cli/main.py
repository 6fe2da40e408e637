"""Main entry point for Tilesheet CLI."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from tilesheet.config import configure_logging, settings
from tilesheet.kernel.derive import LaneSet
from tilesheet.kernel.markdown import parse, serialize
from tilesheet.kernel.rules import BoardDefinition
from tilesheet.kernel.session import DocumentNotFound, DocumentSession, SessionOptions
from tilesheet.kernel.storage import FileBackupStore, FileStorage
from tilesheet.kernel.store import RowStore
from tilesheet.kernel.types import Row
from tilesheet_cli import __version__

COMMANDS = ("rows", "board", "check", "add-column")


def print_help():
    """Print help message."""
    print(f"""
Tilesheet CLI v{__version__}

Usage:
  tilesheet [options] <command> FILE [args]

Commands:
  rows FILE                     Print the materialized rows
  board FILE --lane FIELD       Print rows grouped into lanes by FIELD
  check FILE                    Round-trip FILE and report field mismatches
  add-column FILE AFTER NAME    Insert column NAME after AFTER and save

Options:
  --lane FIELD      Lane field for 'board'
  --filter TEXT     Quick filter for 'board'
  --log-level LVL   Logging level (default: TILESHEET_LOG_LEVEL or WARNING)
  -h, --help        Show this help
  -v, --version     Show version

Environment:
  TILESHEET_ROW_CAP, TILESHEET_FORMULA_ROW_LIMIT, TILESHEET_ERROR_VALUE,
  TILESHEET_HISTORY_LIMIT, TILESHEET_SAVE_DEBOUNCE_MS, TILESHEET_BACKUP_DIR,
  TILESHEET_LOG_LEVEL

Examples:
  tilesheet rows tasks.md
  tilesheet board tasks.md --lane Status --filter docs
  tilesheet add-column tasks.md Status Priority
""")


def parse_args(args: list[str]) -> dict:
    """
    Parse command line arguments.

    Returns dict with:
        command: str | None
        positionals: list[str]   (FILE and command arguments)
        lane: str | None
        filter: str | None
        log_level: str | None
        show_help: bool
        show_version: bool
    """
    result = {
        "command": None,
        "positionals": [],
        "lane": None,
        "filter": None,
        "log_level": None,
        "show_help": False,
        "show_version": False,
    }

    i = 0
    while i < len(args):
        arg = args[i]

        if arg in ("--lane", "--filter", "--log-level"):
            if i + 1 < len(args):
                result[arg[2:].replace("-", "_")] = args[i + 1]
                i += 1
            else:
                print(f"Error: {arg} requires a value")
                sys.exit(1)
        elif arg in ("--help", "-h"):
            result["show_help"] = True
        elif arg in ("--version", "-v"):
            result["show_version"] = True
        elif arg.startswith("-"):
            print(f"Unknown option: {arg}")
            print("Run 'tilesheet --help' for usage.")
            sys.exit(1)
        elif result["command"] is None:
            if arg not in COMMANDS:
                print(f"Unknown command: {arg}")
                print("Run 'tilesheet --help' for usage.")
                sys.exit(1)
            result["command"] = arg
        else:
            result["positionals"].append(arg)

        i += 1

    return result


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def format_rows(rows: list[Row], columns: list[str]) -> str:
    lines = []
    for row in rows:
        cells = [f"{name}={row.text(name)}" for name in columns]
        lines.append(f"{row.position + 1:>4}  " + "  ".join(cells))
    return "\n".join(lines)


def format_lanes(lane_set: LaneSet) -> str:
    lines = []
    for lane in lane_set.lanes:
        lines.append(f"[{lane.name}] ({len(lane.cards)})")
        for card in lane.cards:
            lines.append(f"  - {card.title}" + (f": {card.body}" if card.body else ""))
    lines.append(f"{lane_set.total_rows} row(s)")
    return "\n".join(lines)


def check_round_trip(text: str) -> list[str]:
    """Field values that do not survive parse → serialize → parse."""
    first = parse(text)
    store = RowStore()
    store.load(first)
    second = parse(serialize(store.schema, store.blocks, store.hidden_fields, store.leading_heading))

    mismatches = []
    if len(first.blocks) != len(second.blocks):
        mismatches.append(f"block count {len(first.blocks)} != {len(second.blocks)}")
    for index, (a, b) in enumerate(zip(first.blocks, second.blocks)):
        for key in set(a.data) | set(b.data):
            if a.data.get(key, "") != b.data.get(key, ""):
                mismatches.append(f"block {index + 1} field {key!r}: {a.data.get(key, '')!r} != {b.data.get(key, '')!r}")
    return mismatches


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def make_session(path: Path) -> DocumentSession:
    storage = FileStorage()
    backups = FileBackupStore(path.parent / settings.BACKUP_DIR)
    return DocumentSession(storage, backups, SessionOptions.from_settings())


async def run_command(args: dict) -> int:
    positionals = args["positionals"]
    if not positionals:
        print(f"Error: {args['command']} requires FILE")
        return 1
    path = Path(positionals[0])

    if args["command"] == "check":
        if not path.exists():
            print(f"Not found: {path}")
            return 1
        mismatches = check_round_trip(path.read_text(encoding="utf-8"))
        for mismatch in mismatches:
            print(mismatch)
        print("ok" if not mismatches else f"{len(mismatches)} mismatch(es)")
        return 1 if mismatches else 0

    session = make_session(path)
    try:
        rows = await session.open(str(path))
    except DocumentNotFound:
        print(f"Not found: {path}")
        return 1

    try:
        return await _run_open_command(args, session, rows)
    finally:
        await session.close()


async def _run_open_command(args: dict, session: DocumentSession, rows: list[Row]) -> int:
    positionals = args["positionals"]

    if args["command"] == "rows":
        print(format_rows(rows, session.store.visible_columns()))
        return 0

    if args["command"] == "board":
        if not args["lane"]:
            print("Error: board requires --lane FIELD")
            return 1
        board = BoardDefinition(lane_field=args["lane"])
        print(format_lanes(session.derive_board(board, quick_filter=args["filter"])))
        return 0

    if args["command"] == "add-column":
        if len(positionals) < 3:
            print("Error: add-column requires FILE AFTER NAME")
            return 1
        result = await session.apply_edit(
            "column.insert", {"after": positionals[1], "name": positionals[2]}
        )
        if not result.applied:
            print("; ".join(result.rejected) or "No change")
            return 1
        await session.save()
        print(f"Added column {result.value}")
        return 0

    return 1


def main():
    """Main entry point."""
    args = parse_args(sys.argv[1:])

    if args["show_help"]:
        print_help()
        return

    if args["show_version"]:
        print(f"tilesheet {__version__}")
        return

    if args["command"] is None:
        print_help()
        sys.exit(1)

    configure_logging(args["log_level"])
    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
