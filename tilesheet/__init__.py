"""Tilesheet — markdown-backed tables with boards, galleries and undo."""

__version__ = "0.1.0"
