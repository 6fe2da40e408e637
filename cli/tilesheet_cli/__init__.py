"""Tilesheet CLI - inspect and edit markdown tables from the terminal."""

__version__ = "0.1.0"
